from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone

from approvalgate.core.logging import configure_logging
from approvalgate.persistence.db import SessionLocal
from approvalgate.services.security.admin import unblock_address


async def _unblock(address: str, actor_id: str | None) -> int:
    async with SessionLocal() as session:
        result = await unblock_address(
            session,
            address=address,
            actor_id=actor_id,
            now=datetime.now(timezone.utc),
        )
    if result is None:
        print(f"no_block_record address={address}")
        return 1
    print(f"address={result.address}")
    print(f"previous_tier={result.previous_tier.value}")
    print(f"previous_failure_count={result.previous_failure_count}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Clear an address block and reset its failure count")
    parser.add_argument("address")
    parser.add_argument("--actor-id", default="cli")
    args = parser.parse_args()
    configure_logging()
    raise SystemExit(asyncio.run(_unblock(args.address, args.actor_id)))


if __name__ == "__main__":
    main()
