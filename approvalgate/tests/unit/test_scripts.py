from __future__ import annotations

import pytest

from approvalgate.domain.state import BlockTier
from approvalgate.persistence.db import SessionLocal
from approvalgate.persistence.repos import blocks as blocks_repo
from approvalgate.tests.utils.seed import create_block_record, create_client, create_profile
from scripts.issue_approval_token import _issue
from scripts.subscription_enforcement import _run
from scripts.unblock_address import _unblock


@pytest.mark.asyncio
async def test_unblock_script_resets_address(capsys: pytest.CaptureFixture[str]) -> None:
    await create_block_record("192.0.2.44", failure_count=10, tier=BlockTier.PERMANENT)
    assert await _unblock("192.0.2.44", "cli") == 0
    out = capsys.readouterr().out
    assert "previous_tier=permanent" in out
    assert "previous_failure_count=10" in out

    async with SessionLocal() as session:
        record = await blocks_repo.get_block_record(session, "192.0.2.44")
    assert record.tier == BlockTier.NONE.value


@pytest.mark.asyncio
async def test_unblock_script_unknown_address(capsys: pytest.CaptureFixture[str]) -> None:
    assert await _unblock("192.0.2.45", None) == 1
    assert "no_block_record address=192.0.2.45" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_issue_token_script_prints_link(capsys: pytest.CaptureFixture[str]) -> None:
    client_row = await create_client(slug="acme-cli")
    await _issue(client_row.id, "2026-11", "cli")
    out = capsys.readouterr().out
    assert "token=" in out
    assert "/acme-cli?token=" in out


@pytest.mark.asyncio
async def test_enforcement_script_prints_counts(capsys: pytest.CaptureFixture[str]) -> None:
    await create_profile(plan="eugencia", subscription_status="unpaid")
    await _run()
    out = capsys.readouterr().out.splitlines()
    assert out == ["expired_grace_period=0", "canceled=1", "expired_subscriptions=0"]
