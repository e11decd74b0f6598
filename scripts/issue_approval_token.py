from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone

from approvalgate.core.logging import configure_logging
from approvalgate.persistence.db import SessionLocal
from approvalgate.services.security.credentials import issue_approval_token


async def _issue(client_id: str, month: str, actor_id: str | None) -> None:
    async with SessionLocal() as session:
        issued = await issue_approval_token(
            session,
            client_id=client_id,
            month=month,
            now=datetime.now(timezone.utc),
            created_by=actor_id,
        )
        await session.commit()
    # Print the raw token once; only its hash is stored.
    print(f"token={issued.token}")
    print(f"approval_url={issued.approval_url}")
    print(f"expires_at={issued.record.expires_at.isoformat()}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue a monthly approval link for a client")
    parser.add_argument("client_id")
    parser.add_argument("month", help="YYYY-MM")
    parser.add_argument("--actor-id", default="cli")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_issue(args.client_id, args.month, args.actor_id))


if __name__ == "__main__":
    main()
