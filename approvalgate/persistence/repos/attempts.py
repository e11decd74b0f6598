from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from approvalgate.domain.models import AccessAttempt
from approvalgate.domain.state import AttemptOutcome, CredentialKind


_FAILED_OUTCOMES = (AttemptOutcome.FAILURE.value, AttemptOutcome.EXPIRED.value)


async def record_attempt(
    session: AsyncSession,
    *,
    address: str,
    credential_identifier: str,
    credential_kind: CredentialKind,
    outcome: AttemptOutcome,
    attempted_at: datetime,
    target_entity_id: str | None = None,
    user_agent: str | None = None,
) -> AccessAttempt:
    # Append-only; the caller owns the surrounding transaction.
    attempt = AccessAttempt(
        address=address,
        credential_identifier=credential_identifier,
        credential_kind=credential_kind.value,
        outcome=outcome.value,
        target_entity_id=target_entity_id,
        user_agent=user_agent,
        attempted_at=attempted_at,
    )
    session.add(attempt)
    await session.flush()
    return attempt


async def failure_counts_by_credential(
    session: AsyncSession,
    *,
    since: datetime,
    limit: int = 20,
) -> list[tuple[str, int]]:
    # Surface credentials being guessed from many addresses at once.
    failures = func.count(AccessAttempt.id)
    stmt = (
        select(AccessAttempt.credential_identifier, failures)
        .where(
            AccessAttempt.attempted_at >= since,
            AccessAttempt.outcome.in_(_FAILED_OUTCOMES),
        )
        .group_by(AccessAttempt.credential_identifier)
        .order_by(failures.desc(), AccessAttempt.credential_identifier)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return [(row[0], int(row[1])) for row in result.all()]


async def list_attempts(
    session: AsyncSession,
    *,
    address: str,
    limit: int = 50,
) -> list[AccessAttempt]:
    stmt = (
        select(AccessAttempt)
        .where(AccessAttempt.address == address)
        .order_by(AccessAttempt.attempted_at.desc(), AccessAttempt.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
