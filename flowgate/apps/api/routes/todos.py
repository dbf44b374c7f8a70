from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.apps.api.deps import Principal, get_db, require_role
from flowgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from flowgate.apps.api.response import SuccessEnvelope, success_response
from flowgate.core.errors import NotFoundError, ValidationFailedError
from flowgate.domain.models import ROLE_ADMIN, ROLE_USER
from flowgate.persistence.repos import todos as todos_repo


router = APIRouter(prefix="/todos", tags=["todos"], responses=DEFAULT_ERROR_RESPONSES)

Priority = Literal["low", "medium", "high"]

# Columns that are NOT NULL in the store; an explicit null in a patch is a client error.
_NON_NULLABLE = ("title", "completed", "priority")


class TodoCreate(BaseModel):
    # Unknown keys (including timestamps) are rejected rather than silently dropped.
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    completed: bool = False
    due_date: date | None = None
    priority: Priority = "medium"


class TodoUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    completed: bool | None = None
    due_date: date | None = None
    priority: Priority | None = None


class TodoResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str | None
    completed: bool
    due_date: date | None
    priority: str
    user_id: int | None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TodoListResponse(BaseModel):
    items: list[TodoResponse]
    offset: int
    limit: int


def _owner_scope(principal: Principal) -> int | None:
    # Admins operate on every todo; users only on their own.
    return None if principal.role == ROLE_ADMIN else principal.user_id


@router.get("", response_model=SuccessEnvelope[TodoListResponse])
async def list_todos(
    request: Request,
    completed: bool | None = Query(default=None),
    priority: Priority | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=100),
    principal: Principal = Depends(require_role(ROLE_USER)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await todos_repo.list_todos(
        db,
        owner_id=_owner_scope(principal),
        completed=completed,
        priority=priority,
        offset=offset,
        limit=limit,
    )
    items = [TodoResponse.model_validate(row) for row in rows]
    return success_response(
        request=request,
        data=TodoListResponse(items=items, offset=offset, limit=limit),
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[TodoResponse])
async def create_todo(
    payload: TodoCreate,
    request: Request,
    principal: Principal = Depends(require_role(ROLE_USER)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    todo = await todos_repo.create_todo(db, user_id=principal.user_id, values=payload.model_dump())
    return success_response(request=request, data=TodoResponse.model_validate(todo))


@router.get("/{todo_id}", response_model=SuccessEnvelope[TodoResponse])
async def get_todo(
    todo_id: int,
    request: Request,
    principal: Principal = Depends(require_role(ROLE_USER)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    todo = await todos_repo.get_todo(db, todo_id=todo_id, owner_id=_owner_scope(principal))
    if todo is None:
        raise NotFoundError("todo")
    return success_response(request=request, data=TodoResponse.model_validate(todo))


@router.patch("/{todo_id}", response_model=SuccessEnvelope[TodoResponse])
async def update_todo(
    todo_id: int,
    payload: TodoUpdate,
    request: Request,
    principal: Principal = Depends(require_role(ROLE_USER)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    values = payload.model_dump(exclude_unset=True)
    for field in _NON_NULLABLE:
        if field in values and values[field] is None:
            raise ValidationFailedError(field, "must not be null")
    todo = await todos_repo.get_todo(db, todo_id=todo_id, owner_id=_owner_scope(principal))
    if todo is None:
        raise NotFoundError("todo")
    todo = await todos_repo.update_todo(db, todo, values=values)
    return success_response(request=request, data=TodoResponse.model_validate(todo))


@router.delete("/{todo_id}", response_model=SuccessEnvelope[TodoResponse])
async def delete_todo(
    todo_id: int,
    request: Request,
    principal: Principal = Depends(require_role(ROLE_USER)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    todo = await todos_repo.get_todo(db, todo_id=todo_id, owner_id=_owner_scope(principal))
    if todo is None:
        raise NotFoundError("todo")
    deleted = TodoResponse.model_validate(todo)
    await todos_repo.delete_todo(db, todo)
    return success_response(request=request, data=deleted)
