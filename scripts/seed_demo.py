from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date
import sys

from sqlalchemy import func, select

from flowgate.domain.models import ROLE_ADMIN, ROLE_USER, Schema, Todo, User
from flowgate.persistence.db import SessionLocal
from flowgate.services.auth.passwords import hash_password


DEMO_PASSWORD = "demo123"


@dataclass(frozen=True)
class DemoUser:
    username: str
    email: str
    role: str


@dataclass(frozen=True)
class DemoTodo:
    owner: str
    title: str
    description: str
    completed: bool
    due_date: date
    priority: str


DEMO_USERS = (
    DemoUser("demo", "demo@example.com", ROLE_ADMIN),
    DemoUser("john", "john@example.com", ROLE_USER),
    DemoUser("jane", "jane@example.com", ROLE_USER),
)

DEMO_TODOS = (
    DemoTodo("demo", "Set up the backend", "Configure the API with PostgreSQL and Docker", True, date(2026, 1, 20), "high"),
    DemoTodo("demo", "Build authentication", "Implement JWT-based authentication", True, date(2026, 1, 21), "high"),
    DemoTodo("demo", "Create CRUD endpoints", "Build create, read, update and delete routes", False, date(2026, 1, 25), "medium"),
    DemoTodo("demo", "Add rate limiting", "Limit requests per client and endpoint", False, date(2026, 1, 28), "medium"),
    DemoTodo("demo", "Write documentation", "Create a README and API docs", False, date(2026, 1, 30), "low"),
    DemoTodo("john", "Learn the basics", "Walk through the API tutorial", False, date(2026, 1, 23), "medium"),
    DemoTodo("john", "Test API endpoints", "Exercise every endpoint with an HTTP client", False, date(2026, 1, 26), "high"),
)

DEMO_SCHEMA = {
    "fields": {
        "title": {"type": "string", "required": True, "maxLength": 255},
        "description": {"type": "text", "required": False},
        "completed": {"type": "boolean", "required": False, "default": False},
        "due_date": {"type": "date", "required": False},
        "priority": {"type": "string", "required": False, "enum": ["low", "medium", "high"], "default": "medium"},
    }
}


async def seed_demo() -> int:
    # Idempotent: existing users, todos and schemas are left untouched.
    async with SessionLocal() as session:
        password_hash = hash_password(DEMO_PASSWORD)
        users: dict[str, User] = {}
        for demo_user in DEMO_USERS:
            user = (
                await session.execute(select(User).where(User.username == demo_user.username))
            ).scalar_one_or_none()
            if user is None:
                user = User(
                    username=demo_user.username,
                    email=demo_user.email,
                    password_hash=password_hash,
                    role=demo_user.role,
                )
                session.add(user)
            users[demo_user.username] = user
        await session.flush()

        existing_todos = (await session.execute(select(func.count(Todo.id)))).scalar_one()
        if not existing_todos:
            session.add_all(
                Todo(
                    title=todo.title,
                    description=todo.description,
                    completed=todo.completed,
                    due_date=todo.due_date,
                    priority=todo.priority,
                    user_id=users[todo.owner].id,
                )
                for todo in DEMO_TODOS
            )

        schema = (
            await session.execute(select(Schema).where(Schema.model_name == "Todo"))
        ).scalar_one_or_none()
        if schema is None:
            session.add(
                Schema(
                    model_name="Todo",
                    schema_definition=DEMO_SCHEMA,
                    table_created=True,
                    created_by=users["demo"].id,
                )
            )
        await session.commit()

    print(f"Seeded demo data; log in as demo/{DEMO_PASSWORD} (admin).")
    return 0


def main() -> int:
    # Surface clear failures and exit non-zero so CI/dev scripts can detect issues.
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
