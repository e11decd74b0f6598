from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import math
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from approvalgate.domain.models import SecurityAlert, TrustedAddress
from approvalgate.domain.state import AlertType, BlockTier
from approvalgate.persistence.repos import alerts as alerts_repo
from approvalgate.persistence.repos import attempts as attempts_repo
from approvalgate.persistence.repos import blocks as blocks_repo
from approvalgate.services.audit import record_event
from approvalgate.services.security.alerts import AlertDispatcher
from approvalgate.services.security.block_policy import BlockThresholds


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlockedAddress:
    address: str
    tier: BlockTier
    failure_count: int
    blocked_until: datetime | None
    last_failure_at: datetime | None
    remaining_seconds: int | None


@dataclass(frozen=True)
class UnblockResult:
    address: str
    previous_tier: BlockTier
    previous_failure_count: int
    alert: SecurityAlert | None


@dataclass(frozen=True)
class SecuritySummary:
    tier_buckets: dict[str, int]
    blocked: list[BlockedAddress]
    credential_failures: list[tuple[str, int]]
    recent_alerts: list[SecurityAlert]


async def list_blocked_addresses(session: AsyncSession, *, now: datetime) -> list[BlockedAddress]:
    records = await blocks_repo.list_blocked(session, now=now)
    blocked: list[BlockedAddress] = []
    for record in records:
        remaining: int | None = None
        if record.blocked_until is not None:
            remaining = max(0, int(math.ceil((record.blocked_until - now).total_seconds())))
        blocked.append(
            BlockedAddress(
                address=record.address,
                tier=BlockTier(record.tier),
                failure_count=record.failure_count,
                blocked_until=record.blocked_until,
                last_failure_at=record.last_failure_at,
                remaining_seconds=remaining,
            )
        )
    return blocked


async def unblock_address(
    session: AsyncSession,
    *,
    address: str,
    actor_id: str | None,
    now: datetime,
    dispatcher: AlertDispatcher | None = None,
    request_id: str | None = None,
) -> UnblockResult | None:
    """Clear an address block, permanent included, and reset its failure count."""
    previous = await blocks_repo.reset_block(session, address=address, now=now)
    if previous is None:
        return None
    previous_tier = BlockTier(previous.tier)
    previous_count = previous.failure_count

    dispatcher = dispatcher or AlertDispatcher()
    alert = await dispatcher.record(
        session,
        address=address,
        alert_type=AlertType.IP_UNBLOCKED,
        # Keyed on the generation being closed; the reset opened the next one.
        triggering_count=previous_count,
        now=now,
        generation=previous.generation,
        metadata={"previous_tier": previous_tier.value, "actor_id": actor_id},
    )
    await record_event(
        session=session,
        occurred_at=now,
        actor_type="operator",
        actor_id=actor_id,
        event_type="security.address.unblocked",
        outcome="success",
        resource_type="address",
        resource_id=address,
        request_id=request_id,
        metadata={"previous_tier": previous_tier.value, "previous_failure_count": previous_count},
    )
    await session.commit()
    logger.info(
        "address_unblocked address=%s previous_tier=%s previous_count=%s",
        address,
        previous_tier.value,
        previous_count,
    )
    if alert is not None:
        await dispatcher.deliver([alert])
    return UnblockResult(
        address=address,
        previous_tier=previous_tier,
        previous_failure_count=previous_count,
        alert=alert,
    )


async def trust_address(
    session: AsyncSession,
    *,
    address: str,
    label: str | None,
    actor_id: str | None,
    request_id: str | None = None,
) -> TrustedAddress:
    trusted = await blocks_repo.add_trusted(session, address=address, label=label, added_by=actor_id)
    await record_event(
        session=session,
        actor_type="operator",
        actor_id=actor_id,
        event_type="security.address.trusted",
        outcome="success",
        resource_type="address",
        resource_id=address,
        request_id=request_id,
        metadata={"label": label},
    )
    await session.commit()
    logger.info("address_trusted address=%s", address)
    return trusted


async def untrust_address(
    session: AsyncSession,
    *,
    address: str,
    actor_id: str | None,
    request_id: str | None = None,
) -> bool:
    removed = await blocks_repo.remove_trusted(session, address)
    if not removed:
        return False
    await record_event(
        session=session,
        actor_type="operator",
        actor_id=actor_id,
        event_type="security.address.untrusted",
        outcome="success",
        resource_type="address",
        resource_id=address,
        request_id=request_id,
    )
    await session.commit()
    logger.info("address_untrusted address=%s", address)
    return True


async def security_summary(
    session: AsyncSession,
    *,
    now: datetime,
    window: timedelta = timedelta(hours=24),
    thresholds: BlockThresholds | None = None,
) -> SecuritySummary:
    thresholds = thresholds or BlockThresholds.from_settings()
    since = now - window
    buckets: dict[str, int] = {}
    for threshold in (thresholds.warn, thresholds.temporary, thresholds.permanent):
        buckets[f"{threshold}+"] = await blocks_repo.count_addresses_at_least(
            session, failure_count=threshold
        )
    return SecuritySummary(
        tier_buckets=buckets,
        blocked=await list_blocked_addresses(session, now=now),
        credential_failures=await attempts_repo.failure_counts_by_credential(session, since=since),
        recent_alerts=await alerts_repo.list_alerts(session, since=since),
    )


def summary_to_dict(summary: SecuritySummary) -> dict[str, Any]:
    return {
        "tier_buckets": summary.tier_buckets,
        "blocked": [blocked_to_dict(item) for item in summary.blocked],
        "credential_failures": [
            {"credential_identifier": identifier, "failures": count}
            for identifier, count in summary.credential_failures
        ],
        "recent_alerts": [
            {
                "id": alert.id,
                "address": alert.address,
                "alert_type": alert.alert_type,
                "triggering_count": alert.triggering_count,
                "created_at": alert.created_at.isoformat(),
            }
            for alert in summary.recent_alerts
        ],
    }


def blocked_to_dict(item: BlockedAddress) -> dict[str, Any]:
    return {
        "address": item.address,
        "tier": item.tier.value,
        "failure_count": item.failure_count,
        "blocked_until": item.blocked_until.isoformat() if item.blocked_until else None,
        "last_failure_at": item.last_failure_at.isoformat() if item.last_failure_at else None,
        "remaining_seconds": item.remaining_seconds,
    }
