from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone

from approvalgate.core.logging import configure_logging
from approvalgate.persistence.db import SessionLocal
from approvalgate.services.subscription_enforcement import run_enforcement


async def _run() -> None:
    # Run one enforcement pass; schedule this daily from cron or the platform scheduler.
    async with SessionLocal() as session:
        summary = await run_enforcement(session, now=datetime.now(timezone.utc))
    for key, value in summary.to_dict().items():
        print(f"{key}={value}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Downgrade lapsed subscriptions to the free plan")
    parser.parse_args()
    configure_logging()
    asyncio.run(_run())


if __name__ == "__main__":
    main()
