from __future__ import annotations

import asyncio
import sys

from sqlalchemy import text

from chatgate.domain.models import Base
from chatgate.persistence.db import engine


async def create_schema() -> int:
    # Local bootstrap only; production schemas are managed outside this repo.
    async with engine.begin() as conn:
        if conn.dialect.name == "postgresql":
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    print("Schema is up to date.")
    return 0


def main() -> int:
    try:
        return asyncio.run(create_schema())
    except Exception as exc:  # noqa: BLE001 - surface connection errors clearly
        print(f"create_schema failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
