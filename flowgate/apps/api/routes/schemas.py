from __future__ import annotations

from datetime import datetime
import re
from typing import Any, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.apps.api.deps import Principal, get_db, require_role
from flowgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from flowgate.apps.api.response import SuccessEnvelope, success_response
from flowgate.domain.models import ROLE_ADMIN
from flowgate.persistence.repos import schemas as schemas_repo


router = APIRouter(prefix="/schemas", tags=["schemas"], responses=DEFAULT_ERROR_RESPONSES)

FieldType = Literal["string", "text", "integer", "number", "boolean", "date", "datetime"]

_IDENTIFIER = r"^[A-Za-z][A-Za-z0-9_]*$"


class FieldSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    type: FieldType
    required: bool = False
    max_length: int | None = Field(default=None, alias="maxLength", gt=0)
    enum: list[Any] | None = Field(default=None, min_length=1)
    default: Any = None

    @model_validator(mode="after")
    def _check_constraints(self) -> FieldSpec:
        if self.max_length is not None and self.type not in {"string", "text"}:
            raise ValueError("maxLength only applies to string and text fields")
        if self.enum is not None and self.default is not None and self.default not in self.enum:
            raise ValueError("default must be one of enum")
        return self


class SchemaDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    fields: dict[str, FieldSpec] = Field(min_length=1)

    @field_validator("fields")
    @classmethod
    def _check_field_names(cls, value: dict[str, FieldSpec]) -> dict[str, FieldSpec]:
        for name in value:
            if not re.match(_IDENTIFIER, name):
                raise ValueError(f"invalid field name: {name}")
        return value


class SchemaCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", protected_namespaces=())

    model_name: str = Field(min_length=1, max_length=255, pattern=_IDENTIFIER)
    schema_definition: SchemaDefinition


class SchemaResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, protected_namespaces=())

    id: int
    model_name: str
    schema_definition: dict[str, Any]
    table_created: bool
    endpoints_created: bool
    created_by: int | None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@router.get("", response_model=SuccessEnvelope[list[SchemaResponse]])
async def list_schemas(
    request: Request,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await schemas_repo.list_schemas(db)
    return success_response(request=request, data=[SchemaResponse.model_validate(row) for row in rows])


@router.post("", status_code=201, response_model=SuccessEnvelope[SchemaResponse])
async def create_schema(
    payload: SchemaCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Metadata only: the definition is stored, no table or endpoint is generated from it.
    schema = await schemas_repo.create_schema(
        db,
        model_name=payload.model_name,
        definition=payload.schema_definition.model_dump(by_alias=True, exclude_none=True),
        created_by=principal.user_id,
    )
    return success_response(request=request, data=SchemaResponse.model_validate(schema))
