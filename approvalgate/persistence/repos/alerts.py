from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from approvalgate.domain.models import SecurityAlert
from approvalgate.domain.state import AlertType


async def insert_alert(
    session: AsyncSession,
    *,
    address: str,
    alert_type: AlertType,
    triggering_count: int,
    created_at: datetime,
    generation: int = 0,
    metadata: dict[str, Any] | None = None,
) -> SecurityAlert | None:
    # Savepoint keeps the outer transaction usable when the unique key already exists.
    alert = SecurityAlert(
        address=address,
        alert_type=alert_type.value,
        triggering_count=triggering_count,
        generation=generation,
        metadata_json=metadata or {},
        created_at=created_at,
    )
    try:
        async with session.begin_nested():
            session.add(alert)
    except IntegrityError:
        return None
    return alert


async def list_alerts(
    session: AsyncSession,
    *,
    since: datetime | None = None,
    address: str | None = None,
    limit: int = 50,
) -> list[SecurityAlert]:
    stmt = select(SecurityAlert)
    if since is not None:
        stmt = stmt.where(SecurityAlert.created_at >= since)
    if address:
        stmt = stmt.where(SecurityAlert.address == address)
    stmt = stmt.order_by(SecurityAlert.created_at.desc(), SecurityAlert.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
