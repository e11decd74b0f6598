from __future__ import annotations

from datetime import datetime, timedelta, timezone

from approvalgate.domain.state import AlertType, BlockTier
from approvalgate.services.security.block_policy import (
    BlockThresholds,
    attempts_remaining,
    failure_message,
    is_temporary_active,
    next_tier_change,
    tier_for_count,
)


NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
THRESHOLDS = BlockThresholds()


def test_tier_boundaries_are_cumulative() -> None:
    assert tier_for_count(0, THRESHOLDS) == BlockTier.NONE
    assert tier_for_count(2, THRESHOLDS) == BlockTier.NONE
    assert tier_for_count(3, THRESHOLDS) == BlockTier.WARNED
    assert tier_for_count(4, THRESHOLDS) == BlockTier.WARNED
    assert tier_for_count(5, THRESHOLDS) == BlockTier.TEMPORARY
    assert tier_for_count(9, THRESHOLDS) == BlockTier.TEMPORARY
    assert tier_for_count(10, THRESHOLDS) == BlockTier.PERMANENT
    assert tier_for_count(250, THRESHOLDS) == BlockTier.PERMANENT


def test_temporary_transition_sets_deadline_and_alert() -> None:
    change = next_tier_change(
        failure_count=5,
        current_tier=BlockTier.WARNED,
        now=NOW,
        thresholds=THRESHOLDS,
    )
    assert change is not None
    assert change.tier == BlockTier.TEMPORARY
    assert change.blocked_until == NOW + timedelta(minutes=15)
    assert change.alert_type == AlertType.TEMPORARY_BLOCK


def test_permanent_transition_has_no_deadline() -> None:
    change = next_tier_change(
        failure_count=10,
        current_tier=BlockTier.NONE,
        now=NOW,
        thresholds=THRESHOLDS,
    )
    assert change is not None
    assert change.tier == BlockTier.PERMANENT
    assert change.blocked_until is None
    assert change.alert_type == AlertType.PERMANENT_BLOCK


def test_no_transition_within_or_below_current_tier() -> None:
    assert next_tier_change(failure_count=4, current_tier=BlockTier.WARNED, now=NOW, thresholds=THRESHOLDS) is None
    assert next_tier_change(failure_count=3, current_tier=BlockTier.TEMPORARY, now=NOW, thresholds=THRESHOLDS) is None
    assert next_tier_change(failure_count=2, current_tier=BlockTier.NONE, now=NOW, thresholds=THRESHOLDS) is None


def test_custom_block_duration() -> None:
    thresholds = BlockThresholds(temporary_block=timedelta(minutes=30))
    change = next_tier_change(failure_count=5, current_tier=BlockTier.NONE, now=NOW, thresholds=thresholds)
    assert change is not None
    assert change.blocked_until == NOW + timedelta(minutes=30)


def test_temporary_active_window() -> None:
    until = NOW + timedelta(minutes=1)
    assert is_temporary_active(BlockTier.TEMPORARY, until, NOW)
    assert not is_temporary_active(BlockTier.TEMPORARY, until, until)
    assert not is_temporary_active(BlockTier.TEMPORARY, None, NOW)
    assert not is_temporary_active(BlockTier.WARNED, until, NOW)


def test_attempts_remaining_never_negative() -> None:
    assert attempts_remaining(0, THRESHOLDS) == 10
    assert attempts_remaining(7, THRESHOLDS) == 3
    assert attempts_remaining(14, THRESHOLDS) == 0


def test_failure_message_escalates() -> None:
    assert failure_message(1, THRESHOLDS, blocked_minutes=15) == "Invalid or expired link."
    assert "7 attempts remain" in failure_message(3, THRESHOLDS, blocked_minutes=15)
    assert "blocked for 15 minutes" in failure_message(5, THRESHOLDS, blocked_minutes=15)
    assert "permanently blocked" in failure_message(10, THRESHOLDS, blocked_minutes=15)


def test_failure_after_expired_block_blocks_again() -> None:
    # Expiry resets the tier to none; the next failure in the temporary band re-enters it.
    change = next_tier_change(failure_count=6, current_tier=BlockTier.NONE, now=NOW, thresholds=THRESHOLDS)
    assert change is not None
    assert change.tier == BlockTier.TEMPORARY
    assert change.blocked_until == NOW + timedelta(minutes=15)
