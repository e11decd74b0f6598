from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from approvalgate.core.config import get_settings
from approvalgate.domain.models import Profile
from approvalgate.domain.state import SubscriptionStatusValue
from approvalgate.services.audit import record_event


logger = logging.getLogger(__name__)

REASON_GRACE_EXPIRED = "grace_period_expired"
REASON_CANCELED = "subscription_canceled"
REASON_PERIOD_ENDED = "subscription_expired"

_ENDED_STATUSES = (SubscriptionStatusValue.CANCELED.value, SubscriptionStatusValue.UNPAID.value)


@dataclass
class EnforcementSummary:
    expired_grace_period: list[str] = field(default_factory=list)
    canceled: list[str] = field(default_factory=list)
    expired_subscriptions: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.expired_grace_period) + len(self.canceled) + len(self.expired_subscriptions)

    def to_dict(self) -> dict[str, int]:
        return {
            "expired_grace_period": len(self.expired_grace_period),
            "canceled": len(self.canceled),
            "expired_subscriptions": len(self.expired_subscriptions),
        }


async def _select_ids(session: AsyncSession, *conditions) -> list[str]:
    result = await session.execute(
        select(Profile.id)
        .where(Profile.skip_subscription_check.is_(False), *conditions)
        .order_by(Profile.id)
    )
    return [row[0] for row in result.all()]


async def _downgrade(
    session: AsyncSession,
    user_ids: list[str],
    *,
    reason: str,
    now: datetime,
    free_plan_id: str,
    mark_canceled: bool,
) -> None:
    if not user_ids:
        return
    values: dict[str, object] = {
        "plan": free_plan_id,
        "is_pro": False,
        "delinquent": False,
        "grace_period_end": None,
        "current_period_end": None,
        "updated_at": now,
    }
    if mark_canceled:
        values["subscription_status"] = SubscriptionStatusValue.CANCELED.value
    await session.execute(
        update(Profile)
        .where(Profile.id.in_(user_ids))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    for user_id in user_ids:
        await record_event(
            session=session,
            occurred_at=now,
            actor_type="system",
            actor_id="subscription_enforcement",
            event_type="subscription.downgraded",
            outcome="success",
            resource_type="subscription",
            resource_id=user_id,
            metadata={"reason": reason, "plan": free_plan_id},
        )
    logger.info(
        "subscription_enforcement_downgraded reason=%s count=%s",
        reason,
        len(user_ids),
    )


async def run_enforcement(session: AsyncSession, *, now: datetime) -> EnforcementSummary:
    """Downgrade lapsed, non-internal accounts to the free plan.

    Three passes run in order: expired grace periods, canceled or unpaid
    subscriptions still on a paid plan, and subscriptions whose paid period
    ended. Each account is downgraded at most once per run.
    """
    settings = get_settings()
    free_plan_id = settings.free_plan_id
    summary = EnforcementSummary()
    handled: set[str] = set()

    grace_ids = await _select_ids(
        session,
        Profile.delinquent.is_(True),
        Profile.grace_period_end.is_not(None),
        Profile.grace_period_end <= now,
    )
    await _downgrade(
        session,
        grace_ids,
        reason=REASON_GRACE_EXPIRED,
        now=now,
        free_plan_id=free_plan_id,
        mark_canceled=True,
    )
    summary.expired_grace_period = grace_ids
    handled.update(grace_ids)

    canceled_ids = [
        user_id
        for user_id in await _select_ids(
            session,
            Profile.subscription_status.in_(_ENDED_STATUSES),
            or_(Profile.plan.is_(None), Profile.plan != free_plan_id),
        )
        if user_id not in handled
    ]
    await _downgrade(
        session,
        canceled_ids,
        reason=REASON_CANCELED,
        now=now,
        free_plan_id=free_plan_id,
        mark_canceled=False,
    )
    summary.canceled = canceled_ids
    handled.update(canceled_ids)

    expired_ids = [
        user_id
        for user_id in await _select_ids(
            session,
            Profile.current_period_end.is_not(None),
            Profile.current_period_end < now,
            or_(
                Profile.subscription_status.is_(None),
                Profile.subscription_status.not_in(_ENDED_STATUSES),
            ),
        )
        if user_id not in handled
    ]
    await _downgrade(
        session,
        expired_ids,
        reason=REASON_PERIOD_ENDED,
        now=now,
        free_plan_id=free_plan_id,
        mark_canceled=True,
    )
    summary.expired_subscriptions = expired_ids

    await session.commit()
    logger.info(
        "subscription_enforcement_completed expired_grace_period=%s canceled=%s expired_subscriptions=%s",
        len(summary.expired_grace_period),
        len(summary.canceled),
        len(summary.expired_subscriptions),
    )
    return summary
