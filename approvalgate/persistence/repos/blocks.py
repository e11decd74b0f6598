from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from approvalgate.domain.models import BlockRecord, TrustedAddress
from approvalgate.domain.state import BlockTier
from approvalgate.persistence.db import dialect_insert


async def get_block_record(session: AsyncSession, address: str) -> BlockRecord | None:
    # Refresh identity-mapped rows; upserts and conditional updates bypass the session.
    result = await session.execute(
        select(BlockRecord)
        .where(BlockRecord.address == address)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


@dataclass(frozen=True)
class FailureTally:
    failure_count: int
    generation: int


async def increment_failures(session: AsyncSession, *, address: str, now: datetime) -> FailureTally:
    # Atomic upsert so concurrent failures from one address never lose an increment.
    stmt = dialect_insert(session, BlockRecord).values(
        address=address,
        failure_count=1,
        tier=BlockTier.NONE.value,
        last_failure_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[BlockRecord.address],
        set_={
            "failure_count": BlockRecord.failure_count + 1,
            "last_failure_at": now,
            "updated_at": now,
        },
    ).returning(BlockRecord.failure_count, BlockRecord.generation)
    row = (await session.execute(stmt)).one()
    return FailureTally(failure_count=int(row[0]), generation=int(row[1]))


async def transition_tier(
    session: AsyncSession,
    *,
    address: str,
    tier: BlockTier,
    blocked_until: datetime | None,
    now: datetime,
) -> bool:
    # Conditional update: only the request that moves the tier upward sees rowcount 1.
    stmt = (
        update(BlockRecord)
        .where(
            BlockRecord.address == address,
            BlockRecord.tier.in_([lower.value for lower in tier.lower_tiers()]),
        )
        .values(tier=tier.value, blocked_until=blocked_until, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def expire_temporary_block(session: AsyncSession, *, address: str, now: datetime) -> bool:
    # Lazy expiry keeps failure_count; only the tier and deadline are cleared.
    stmt = (
        update(BlockRecord)
        .where(
            BlockRecord.address == address,
            BlockRecord.tier == BlockTier.TEMPORARY.value,
            BlockRecord.blocked_until <= now,
        )
        .values(tier=BlockTier.NONE.value, blocked_until=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def reset_block(session: AsyncSession, *, address: str, now: datetime) -> BlockRecord | None:
    # Operator unblock is the only path that lowers a permanent tier; it opens a new generation.
    record = await get_block_record(session, address)
    if record is None:
        return None
    await session.execute(
        update(BlockRecord)
        .where(BlockRecord.address == address)
        .values(
            tier=BlockTier.NONE.value,
            failure_count=0,
            blocked_until=None,
            updated_at=now,
            generation=BlockRecord.generation + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return record


async def list_blocked(session: AsyncSession, *, now: datetime) -> list[BlockRecord]:
    stmt = (
        select(BlockRecord)
        .where(
            or_(
                BlockRecord.tier == BlockTier.PERMANENT.value,
                (BlockRecord.tier == BlockTier.TEMPORARY.value) & (BlockRecord.blocked_until > now),
            )
        )
        .order_by(BlockRecord.last_failure_at.desc(), BlockRecord.address)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_addresses_at_least(session: AsyncSession, *, failure_count: int) -> int:
    result = await session.execute(
        select(func.count(BlockRecord.address)).where(BlockRecord.failure_count >= failure_count)
    )
    return int(result.scalar_one())


async def is_trusted(session: AsyncSession, address: str) -> bool:
    result = await session.execute(
        select(TrustedAddress.address).where(TrustedAddress.address == address)
    )
    return result.scalar_one_or_none() is not None


async def add_trusted(
    session: AsyncSession,
    *,
    address: str,
    label: str | None,
    added_by: str | None,
) -> TrustedAddress:
    # Re-registering an address refreshes its label instead of failing.
    stmt = dialect_insert(session, TrustedAddress).values(
        address=address,
        label=label,
        added_by=added_by,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[TrustedAddress.address],
        set_={"label": label, "added_by": added_by},
    )
    await session.execute(stmt)
    result = await session.execute(
        select(TrustedAddress)
        .where(TrustedAddress.address == address)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def remove_trusted(session: AsyncSession, address: str) -> bool:
    result = await session.execute(delete(TrustedAddress).where(TrustedAddress.address == address))
    return result.rowcount == 1


async def list_trusted(session: AsyncSession) -> list[TrustedAddress]:
    result = await session.execute(select(TrustedAddress).order_by(TrustedAddress.address))
    return list(result.scalars().all())
