from __future__ import annotations

import asyncio

from flowgate.persistence.db import SessionLocal
from flowgate.services.maintenance import prune_rate_limits


async def prune() -> None:
    async with SessionLocal() as session:
        deleted = await prune_rate_limits(session)
        print(f"pruned_rate_limits={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
