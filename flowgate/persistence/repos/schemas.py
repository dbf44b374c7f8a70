from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.core.errors import ConflictError
from flowgate.domain.models import Schema


async def list_schemas(session: AsyncSession) -> list[Schema]:
    result = await session.execute(select(Schema).order_by(Schema.model_name))
    return list(result.scalars().all())


async def create_schema(
    session: AsyncSession,
    *,
    model_name: str,
    definition: dict[str, Any],
    created_by: int | None,
) -> Schema:
    schema = Schema(model_name=model_name, schema_definition=definition, created_by=created_by)
    session.add(schema)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(f"schema {model_name} already exists") from exc
    await session.refresh(schema)
    return schema
