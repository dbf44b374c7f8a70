from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
import sys

from flowgate.persistence.db import SessionLocal
from flowgate.persistence.repos.api_keys import list_api_keys
from flowgate.persistence.repos.users import get_user_by_username


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="List API keys")
    parser.add_argument("--username", default=None, help="Only keys owned by this user")
    parser.add_argument("--active-only", action="store_true", help="Hide deactivated keys")
    return parser


async def _list_keys(args: argparse.Namespace) -> int:
    # Print key metadata only; raw keys are never recoverable.
    async with SessionLocal() as session:
        user_id = None
        if args.username:
            user = await get_user_by_username(session, args.username)
            if user is None:
                raise ValueError(f"user {args.username} not found")
            user_id = user.id
        rows = await list_api_keys(session, user_id=user_id, include_inactive=not args.active_only)

    now = datetime.now(timezone.utc)
    print("key_id\tkey_prefix\tname\tusername\tcreated_at\tlast_used_at\texpires_at\tis_active\tis_expired")
    for api_key, user in rows:
        is_expired = api_key.expires_at is not None and _as_utc(api_key.expires_at) <= now
        print(
            f"{api_key.id}\t{api_key.key_prefix}\t{api_key.name or ''}\t{user.username}\t"
            f"{api_key.created_at.isoformat() if api_key.created_at else ''}\t"
            f"{api_key.last_used_at.isoformat() if api_key.last_used_at else ''}\t"
            f"{api_key.expires_at.isoformat() if api_key.expires_at else ''}\t"
            f"{api_key.is_active}\t{is_expired}"
        )
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_list_keys(args))
    except Exception as exc:  # noqa: BLE001 - show full operator-facing error context.
        print(f"list_api_keys failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
