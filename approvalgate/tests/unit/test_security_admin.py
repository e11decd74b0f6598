from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from approvalgate.domain.models import AuditEvent, SecurityAlert
from approvalgate.domain.state import AttemptOutcome, BlockTier, CredentialKind
from approvalgate.persistence.db import SessionLocal
from approvalgate.persistence.repos import attempts as attempts_repo
from approvalgate.persistence.repos import blocks as blocks_repo
from approvalgate.services.security import admin as security_admin
from approvalgate.tests.utils.seed import create_block_record, utc


NOW = utc(2026, 10, 17)


@pytest.mark.asyncio
async def test_unblock_clears_permanent_block() -> None:
    await create_block_record("203.0.113.7", failure_count=12, tier=BlockTier.PERMANENT)
    async with SessionLocal() as session:
        result = await security_admin.unblock_address(
            session, address="203.0.113.7", actor_id="ops-1", now=NOW
        )
    assert result is not None
    assert result.previous_tier == BlockTier.PERMANENT
    assert result.previous_failure_count == 12
    assert result.alert is not None

    async with SessionLocal() as session:
        record = await blocks_repo.get_block_record(session, "203.0.113.7")
        alerts = list((await session.execute(select(SecurityAlert))).scalars().all())
        events = list(
            (
                await session.execute(
                    select(AuditEvent).where(AuditEvent.event_type == "security.address.unblocked")
                )
            ).scalars().all()
        )
    assert record is not None
    assert record.tier == BlockTier.NONE.value
    assert record.failure_count == 0
    assert record.blocked_until is None
    assert [alert.alert_type for alert in alerts] == ["ip_unblocked"]
    assert alerts[0].triggering_count == 12
    assert len(events) == 1
    assert events[0].actor_id == "ops-1"


@pytest.mark.asyncio
async def test_unblock_unknown_address() -> None:
    async with SessionLocal() as session:
        assert await security_admin.unblock_address(session, address="198.51.100.9", actor_id=None, now=NOW) is None


@pytest.mark.asyncio
async def test_blocked_listing_reports_remaining_time() -> None:
    await create_block_record("198.51.100.1", failure_count=6, tier=BlockTier.TEMPORARY, blocked_until=NOW + timedelta(minutes=5))
    await create_block_record("198.51.100.2", failure_count=11, tier=BlockTier.PERMANENT)
    await create_block_record("198.51.100.3", failure_count=5, tier=BlockTier.TEMPORARY, blocked_until=NOW - timedelta(minutes=1))
    await create_block_record("198.51.100.4", failure_count=3, tier=BlockTier.WARNED)

    async with SessionLocal() as session:
        blocked = await security_admin.list_blocked_addresses(session, now=NOW)
    by_address = {item.address: item for item in blocked}
    assert set(by_address) == {"198.51.100.1", "198.51.100.2"}
    assert by_address["198.51.100.1"].remaining_seconds == 300
    assert by_address["198.51.100.2"].remaining_seconds is None
    assert security_admin.blocked_to_dict(by_address["198.51.100.2"])["tier"] == "permanent"


@pytest.mark.asyncio
async def test_security_summary_buckets_and_credential_failures() -> None:
    await create_block_record("198.51.100.1", failure_count=3, tier=BlockTier.WARNED)
    await create_block_record("198.51.100.2", failure_count=6, tier=BlockTier.TEMPORARY, blocked_until=NOW + timedelta(minutes=5))
    await create_block_record("198.51.100.3", failure_count=10, tier=BlockTier.PERMANENT)
    await create_block_record("198.51.100.4", failure_count=1, tier=BlockTier.NONE)

    async with SessionLocal() as session:
        for address in ("198.51.100.1", "198.51.100.2", "198.51.100.3"):
            await attempts_repo.record_attempt(
                session,
                address=address,
                credential_identifier="abcdefghij...",
                credential_kind=CredentialKind.TOKEN,
                outcome=AttemptOutcome.FAILURE,
                attempted_at=NOW - timedelta(hours=1),
            )
        await attempts_repo.record_attempt(
            session,
            address="198.51.100.1",
            credential_identifier="zzzzzzzzzz...",
            credential_kind=CredentialKind.TOKEN,
            outcome=AttemptOutcome.SUCCESS,
            attempted_at=NOW - timedelta(hours=1),
        )
        await attempts_repo.record_attempt(
            session,
            address="198.51.100.1",
            credential_identifier="oldoldoldo...",
            credential_kind=CredentialKind.TOKEN,
            outcome=AttemptOutcome.FAILURE,
            attempted_at=NOW - timedelta(days=3),
        )
        await session.commit()

    async with SessionLocal() as session:
        summary = await security_admin.security_summary(session, now=NOW)
    assert summary.tier_buckets == {"3+": 3, "5+": 2, "10+": 1}
    assert summary.credential_failures == [("abcdefghij...", 3)]
    assert len(summary.blocked) == 2

    payload = security_admin.summary_to_dict(summary)
    assert payload["credential_failures"] == [{"credential_identifier": "abcdefghij...", "failures": 3}]


@pytest.mark.asyncio
async def test_trust_and_untrust_address() -> None:
    async with SessionLocal() as session:
        trusted = await security_admin.trust_address(session, address="10.1.2.3", label="office", actor_id="ops-1")
    assert trusted.label == "office"

    async with SessionLocal() as session:
        relabeled = await security_admin.trust_address(session, address="10.1.2.3", label="hq", actor_id="ops-2")
    assert relabeled.label == "hq"
    assert relabeled.added_by == "ops-2"

    async with SessionLocal() as session:
        assert await blocks_repo.is_trusted(session, "10.1.2.3")
        assert await security_admin.untrust_address(session, address="10.1.2.3", actor_id="ops-1")
    async with SessionLocal() as session:
        assert not await blocks_repo.is_trusted(session, "10.1.2.3")
        assert not await security_admin.untrust_address(session, address="10.1.2.3", actor_id="ops-1")
