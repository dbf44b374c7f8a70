from __future__ import annotations

import argparse
import asyncio
import sys

from flowgate.persistence.db import SessionLocal
from flowgate.persistence.repos.api_keys import deactivate_api_key, get_api_key


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Deactivate an API key by id")
    parser.add_argument("key_id", type=int, help="API key id to deactivate")
    return parser


async def _revoke_key(key_id: int) -> int:
    # Deactivate rather than delete so request logs keep pointing at a real key owner.
    async with SessionLocal() as session:
        api_key = await get_api_key(session, key_id=key_id)
        if api_key is None:
            raise ValueError("API key not found")
        await deactivate_api_key(session, api_key)
    print(f"Deactivated API key {key_id}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_revoke_key(args.key_id))
    except Exception as exc:  # noqa: BLE001 - surface operator errors clearly
        print(f"revoke_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
