from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone
import sys

from flowgate.persistence.db import SessionLocal
from flowgate.persistence.repos.api_keys import create_api_key
from flowgate.persistence.repos.users import get_user_by_username


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create an API key for an existing user")
    parser.add_argument("--username", required=True, help="Owner of the key")
    parser.add_argument("--name", required=True, help="Key label shown in listings")
    parser.add_argument("--expires-in-days", type=int, default=None, help="Optional lifetime in days")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    expires_at = None
    if args.expires_in_days is not None:
        expires_at = datetime.now(timezone.utc) + timedelta(days=args.expires_in_days)
    async with SessionLocal() as session:
        user = await get_user_by_username(session, args.username)
        if user is None:
            raise ValueError(f"user {args.username} not found")
        if not user.is_active:
            raise ValueError(f"user {args.username} is inactive")
        api_key, raw_key = await create_api_key(
            session,
            user_id=user.id,
            name=args.name,
            expires_at=expires_at,
        )

    print("API key created:")
    print(f"  key_id: {api_key.id}")
    print(f"  key_prefix: {api_key.key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
