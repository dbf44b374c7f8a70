from __future__ import annotations

import asyncio

from flowgate.persistence.db import SessionLocal
from flowgate.services.maintenance import prune_request_logs


async def prune() -> None:
    async with SessionLocal() as session:
        deleted = await prune_request_logs(session)
        print(f"pruned_request_logs={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
