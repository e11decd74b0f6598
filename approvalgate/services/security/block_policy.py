from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from approvalgate.core.config import Settings, get_settings
from approvalgate.domain.state import AlertType, BlockTier


@dataclass(frozen=True)
class BlockThresholds:
    # Cumulative failure counts; nothing decays over time.
    warn: int = 3
    temporary: int = 5
    permanent: int = 10
    temporary_block: timedelta = timedelta(minutes=15)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "BlockThresholds":
        settings = settings or get_settings()
        return cls(
            warn=settings.gate_warn_threshold,
            temporary=settings.gate_temporary_threshold,
            permanent=settings.gate_permanent_threshold,
            temporary_block=timedelta(minutes=settings.gate_temporary_block_minutes),
        )


@dataclass(frozen=True)
class TierChange:
    tier: BlockTier
    blocked_until: datetime | None
    alert_type: AlertType


_ALERT_FOR_TIER = {
    BlockTier.WARNED: AlertType.WARNING_FAILURES,
    BlockTier.TEMPORARY: AlertType.TEMPORARY_BLOCK,
    BlockTier.PERMANENT: AlertType.PERMANENT_BLOCK,
}


def tier_for_count(failure_count: int, thresholds: BlockThresholds) -> BlockTier:
    if failure_count >= thresholds.permanent:
        return BlockTier.PERMANENT
    if failure_count >= thresholds.temporary:
        return BlockTier.TEMPORARY
    if failure_count >= thresholds.warn:
        return BlockTier.WARNED
    return BlockTier.NONE


def next_tier_change(
    *,
    failure_count: int,
    current_tier: BlockTier,
    now: datetime,
    thresholds: BlockThresholds,
) -> TierChange | None:
    # Tiers only move upward here; expiry and operator unblock lower them elsewhere.
    target = tier_for_count(failure_count, thresholds)
    if target.rank <= current_tier.rank:
        return None
    blocked_until = now + thresholds.temporary_block if target == BlockTier.TEMPORARY else None
    return TierChange(tier=target, blocked_until=blocked_until, alert_type=_ALERT_FOR_TIER[target])


def is_temporary_active(tier: BlockTier, blocked_until: datetime | None, now: datetime) -> bool:
    return tier == BlockTier.TEMPORARY and blocked_until is not None and now < blocked_until


def attempts_remaining(failure_count: int, thresholds: BlockThresholds) -> int:
    return max(0, thresholds.permanent - failure_count)


def failure_message(failure_count: int, thresholds: BlockThresholds, *, blocked_minutes: int) -> str:
    # Escalating wording shown to link holders as they approach a block.
    remaining = attempts_remaining(failure_count, thresholds)
    if failure_count >= thresholds.permanent:
        return "This address has been permanently blocked after too many failed attempts."
    if failure_count >= thresholds.temporary:
        return (
            f"Too many failed attempts. Access is blocked for {blocked_minutes} minutes. "
            f"{remaining} attempts remain before a permanent block."
        )
    if failure_count >= thresholds.warn:
        return f"Invalid or expired link. Warning: {remaining} attempts remain before a permanent block."
    return "Invalid or expired link."
