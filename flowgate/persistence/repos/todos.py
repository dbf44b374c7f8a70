from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.domain.models import Todo


async def list_todos(
    session: AsyncSession,
    *,
    owner_id: int | None,
    completed: bool | None = None,
    priority: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Todo]:
    # owner_id=None lists every user's todos (admin view).
    stmt = select(Todo)
    if owner_id is not None:
        stmt = stmt.where(Todo.user_id == owner_id)
    if completed is not None:
        stmt = stmt.where(Todo.completed.is_(completed))
    if priority:
        stmt = stmt.where(Todo.priority == priority)
    stmt = stmt.order_by(Todo.created_at.desc(), Todo.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_todo(session: AsyncSession, *, todo_id: int, owner_id: int | None) -> Todo | None:
    # Other users' todos are reported as missing rather than forbidden.
    stmt = select(Todo).where(Todo.id == todo_id)
    if owner_id is not None:
        stmt = stmt.where(Todo.user_id == owner_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_todo(session: AsyncSession, *, user_id: int, values: dict[str, Any]) -> Todo:
    todo = Todo(user_id=user_id, **values)
    session.add(todo)
    await session.commit()
    await session.refresh(todo)
    return todo


async def update_todo(session: AsyncSession, todo: Todo, *, values: dict[str, Any]) -> Todo:
    for key, value in values.items():
        setattr(todo, key, value)
    await session.commit()
    await session.refresh(todo)
    return todo


async def delete_todo(session: AsyncSession, todo: Todo) -> None:
    await session.delete(todo)
    await session.commit()
