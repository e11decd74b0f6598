from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Callable, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from approvalgate.core.config import get_settings
from approvalgate.core.errors import AccountBlockedError, EntitlementUnresolvableError
from approvalgate.domain.models import PlanEntitlement, Profile
from approvalgate.domain.state import SubscriptionStatusValue
from approvalgate.services.audit import record_event


logger = logging.getLogger(__name__)

BLOCK_REASON_GRACE_EXPIRED = "grace_period_expired"
INTERNAL_PLAN_ID = "unlimited"

_ACTIVE_STATUSES = {SubscriptionStatusValue.ACTIVE.value, SubscriptionStatusValue.TRIALING.value}


class LimitType(str, Enum):
    POSTS = "posts"
    CREATIVES = "creatives"
    TEAM_MEMBERS = "team_members"


class Feature(str, Enum):
    WHATSAPP_SUPPORT = "whatsapp_support"
    GRAPHICS_APPROVAL = "graphics_approval"
    SUPPLIER_LINK = "supplier_link"
    GLOBAL_AGENDA = "global_agenda"
    TEAM_KANBAN = "team_kanban"
    TEAM_NOTIFICATIONS = "team_notifications"


@dataclass(frozen=True)
class EntitlementSet:
    # Null limits mean unlimited.
    plan: str
    posts_limit: int | None = None
    creatives_limit: int | None = None
    team_members_limit: int | None = None
    history_days: int | None = None
    whatsapp_support: bool = False
    graphics_approval: bool = False
    supplier_link: bool = False
    global_agenda: bool = False
    team_kanban: bool = False
    team_notifications: bool = False

    @classmethod
    def from_model(cls, row: PlanEntitlement) -> "EntitlementSet":
        return cls(
            plan=row.plan,
            posts_limit=row.posts_limit,
            creatives_limit=row.creatives_limit,
            team_members_limit=row.team_members_limit,
            history_days=row.history_days,
            whatsapp_support=bool(row.whatsapp_support),
            graphics_approval=bool(row.graphics_approval),
            supplier_link=bool(row.supplier_link),
            global_agenda=bool(row.global_agenda),
            team_kanban=bool(row.team_kanban),
            team_notifications=bool(row.team_notifications),
        )

    def limit_for(self, limit_type: LimitType) -> int | None:
        if limit_type == LimitType.POSTS:
            return self.posts_limit
        if limit_type == LimitType.CREATIVES:
            return self.creatives_limit
        return self.team_members_limit

    def has(self, feature: Feature) -> bool:
        return bool(getattr(self, feature.value))

    def to_dict(self) -> dict[str, object]:
        return {
            "plan": self.plan,
            "posts_limit": self.posts_limit,
            "creatives_limit": self.creatives_limit,
            "team_members_limit": self.team_members_limit,
            "history_days": self.history_days,
            **{feature.value: self.has(feature) for feature in Feature},
        }


@dataclass(frozen=True)
class SubscriptionProfile:
    user_id: str
    plan: str | None
    subscription_status: str | None
    is_pro: bool = False
    delinquent: bool = False
    grace_period_end: datetime | None = None
    current_period_end: datetime | None = None
    skip_subscription_check: bool = False

    @classmethod
    def from_model(cls, profile: Profile) -> "SubscriptionProfile":
        return cls(
            user_id=profile.id,
            plan=profile.plan,
            subscription_status=profile.subscription_status,
            is_pro=bool(profile.is_pro),
            delinquent=bool(profile.delinquent),
            grace_period_end=profile.grace_period_end,
            current_period_end=profile.current_period_end,
            skip_subscription_check=bool(profile.skip_subscription_check),
        )


@dataclass(frozen=True)
class Internal:
    pass


@dataclass(frozen=True)
class Active:
    pass


@dataclass(frozen=True)
class Trialing:
    pass


@dataclass(frozen=True)
class InGrace:
    until: datetime


@dataclass(frozen=True)
class Blocked:
    reason: str


@dataclass(frozen=True)
class Inactive:
    pass


SubscriptionState = Union[Internal, Active, Trialing, InGrace, Blocked, Inactive]


@dataclass(frozen=True)
class SubscriptionStatus:
    """Point-in-time subscription view; computed per resolution and never stored."""

    state: SubscriptionState
    plan: str
    subscription_status: str | None
    is_pro: bool
    delinquent: bool
    grace_period_end: datetime | None
    is_active: bool
    entitlements: EntitlementSet | None

    @property
    def skip_subscription_check(self) -> bool:
        return isinstance(self.state, Internal)

    @property
    def is_blocked(self) -> bool:
        return isinstance(self.state, Blocked)

    @property
    def is_in_grace_period(self) -> bool:
        return isinstance(self.state, InGrace)

    @property
    def block_reason(self) -> str | None:
        return self.state.reason if isinstance(self.state, Blocked) else None

    def to_dict(self) -> dict[str, object]:
        return {
            "state": type(self.state).__name__.lower(),
            "plan": self.plan,
            "subscription_status": self.subscription_status,
            "is_active": self.is_active,
            "is_blocked": self.is_blocked,
            "is_in_grace_period": self.is_in_grace_period,
            "grace_period_end": self.grace_period_end.isoformat() if self.grace_period_end else None,
            "is_pro": self.is_pro,
            "delinquent": self.delinquent,
            "block_reason": self.block_reason,
            "skip_subscription_check": self.skip_subscription_check,
            "entitlements": self.entitlements.to_dict() if self.entitlements else None,
        }


def resolve_state(profile: SubscriptionProfile, now: datetime) -> SubscriptionState:
    if profile.skip_subscription_check:
        return Internal()
    grace_end = profile.grace_period_end
    if profile.delinquent and grace_end is not None:
        if grace_end <= now:
            return Blocked(BLOCK_REASON_GRACE_EXPIRED)
        return InGrace(grace_end)
    if profile.subscription_status == SubscriptionStatusValue.ACTIVE.value:
        return Active()
    if profile.subscription_status == SubscriptionStatusValue.TRIALING.value:
        return Trialing()
    return Inactive()


def resolve_status(
    profile: SubscriptionProfile,
    entitlements: EntitlementSet | None,
    *,
    now: datetime,
    free_plan_id: str = "creator",
) -> SubscriptionStatus:
    state = resolve_state(profile, now)
    if isinstance(state, Internal):
        # Internal accounts are active and pro regardless of delinquency.
        return SubscriptionStatus(
            state=state,
            plan=profile.plan or INTERNAL_PLAN_ID,
            subscription_status=profile.subscription_status,
            is_pro=True,
            delinquent=False,
            grace_period_end=None,
            is_active=True,
            entitlements=entitlements,
        )
    in_grace = isinstance(state, InGrace)
    return SubscriptionStatus(
        state=state,
        plan=profile.plan or free_plan_id,
        subscription_status=profile.subscription_status,
        is_pro=profile.is_pro,
        delinquent=profile.delinquent,
        grace_period_end=profile.grace_period_end,
        is_active=profile.subscription_status in _ACTIVE_STATUSES or in_grace,
        entitlements=entitlements,
    )


@dataclass(frozen=True)
class ActionDecision:
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class LimitDecision:
    within_limit: bool
    limit: int | None
    message: str | None = None


@dataclass(frozen=True)
class FeatureDecision:
    has_access: bool
    reason: str | None = None


def pro_action_decision(status: SubscriptionStatus, *, free_plan_id: str = "creator") -> ActionDecision:
    if status.skip_subscription_check:
        return ActionDecision(allowed=True)
    if status.is_blocked:
        if status.block_reason == BLOCK_REASON_GRACE_EXPIRED:
            return ActionDecision(
                allowed=False,
                reason="Grace period expired. Update your payment method.",
            )
        return ActionDecision(allowed=False, reason="Action blocked. Check your subscription.")
    if not status.is_pro and status.plan == free_plan_id:
        return ActionDecision(allowed=False, reason="This feature requires a paid plan.")
    return ActionDecision(allowed=True)


def limit_decision(status: SubscriptionStatus, limit_type: LimitType, current_count: int) -> LimitDecision:
    if status.skip_subscription_check:
        return LimitDecision(within_limit=True, limit=None)
    if status.entitlements is None:
        return LimitDecision(within_limit=False, limit=None, message="Unable to verify plan limits.")
    limit = status.entitlements.limit_for(limit_type)
    if limit is None:
        return LimitDecision(within_limit=True, limit=None)
    # Reaching the limit counts as being at capacity.
    if current_count < limit:
        return LimitDecision(within_limit=True, limit=limit)
    return LimitDecision(
        within_limit=False,
        limit=limit,
        message=f"You have reached the limit of {limit} {limit_type.value} on the {status.plan} plan.",
    )


def feature_decision(status: SubscriptionStatus, feature: Feature) -> FeatureDecision:
    if status.skip_subscription_check:
        return FeatureDecision(has_access=True)
    if status.is_blocked:
        return FeatureDecision(has_access=False, reason="Your account is blocked. Check your subscription.")
    if status.entitlements is None:
        return FeatureDecision(has_access=False, reason="Unable to verify plan features.")
    if status.entitlements.has(feature):
        return FeatureDecision(has_access=True)
    return FeatureDecision(
        has_access=False,
        reason=f"This feature is not available on the {status.plan} plan.",
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementResolver:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        self._time_provider = time_provider or _utcnow

    async def load_entitlements(self, session: AsyncSession, plan: str) -> EntitlementSet | None:
        result = await session.execute(select(PlanEntitlement).where(PlanEntitlement.plan == plan))
        row = result.scalar_one_or_none()
        return EntitlementSet.from_model(row) if row is not None else None

    async def resolve(self, session: AsyncSession, user_id: str) -> SubscriptionStatus:
        settings = get_settings()
        try:
            result = await session.execute(select(Profile).where(Profile.id == user_id))
            profile_row = result.scalar_one_or_none()
            if profile_row is None:
                raise EntitlementUnresolvableError(user_id, "profile not found")
            profile = SubscriptionProfile.from_model(profile_row)
            plan = profile.plan or (
                INTERNAL_PLAN_ID if profile.skip_subscription_check else settings.free_plan_id
            )
            entitlements = await self.load_entitlements(session, plan)
        except SQLAlchemyError as exc:
            await session.rollback()
            raise EntitlementUnresolvableError(user_id, "store unavailable") from exc
        if entitlements is None:
            logger.warning("entitlements_missing user_id=%s plan=%s", user_id, plan)
        return resolve_status(
            profile,
            entitlements,
            now=self._time_provider(),
            free_plan_id=settings.free_plan_id,
        )


class EntitlementGate:
    """Pro-action, limit and feature decisions for authenticated users.

    Decisions never raise: when entitlements cannot be resolved, pro actions
    and limits fail closed and feature checks follow
    ``entitlement_feature_fail_mode``.
    """

    def __init__(self, resolver: EntitlementResolver | None = None) -> None:
        self._resolver = resolver or EntitlementResolver()

    async def _status(self, session: AsyncSession, user_id: str) -> SubscriptionStatus | None:
        try:
            return await self._resolver.resolve(session, user_id)
        except EntitlementUnresolvableError as exc:
            logger.warning("entitlements_unresolvable user_id=%s detail=%s", user_id, exc.detail)
            return None

    async def can_perform_pro_action(self, session: AsyncSession, user_id: str) -> ActionDecision:
        status = await self._status(session, user_id)
        if status is None:
            decision = ActionDecision(allowed=False, reason="Unable to verify subscription status.")
        else:
            decision = pro_action_decision(status, free_plan_id=get_settings().free_plan_id)
        if not decision.allowed:
            await self._audit_denial(session, user_id, "entitlement.pro_action.denied", decision.reason)
        return decision

    async def check_limit(
        self,
        session: AsyncSession,
        user_id: str,
        limit_type: LimitType,
        current_count: int,
    ) -> LimitDecision:
        status = await self._status(session, user_id)
        if status is None:
            decision = LimitDecision(within_limit=False, limit=None, message="Unable to verify plan limits.")
        else:
            decision = limit_decision(status, limit_type, current_count)
        if not decision.within_limit:
            await self._audit_denial(
                session,
                user_id,
                "entitlement.limit.denied",
                decision.message,
                metadata={"limit_type": limit_type.value, "current_count": current_count, "limit": decision.limit},
            )
        return decision

    async def has_feature_access(self, session: AsyncSession, user_id: str, feature: Feature) -> FeatureDecision:
        status = await self._status(session, user_id)
        if status is None:
            if get_settings().entitlement_feature_fail_mode.lower() == "closed":
                decision = FeatureDecision(has_access=False, reason="Unable to verify plan features.")
            else:
                logger.warning("entitlement_feature_fail_open user_id=%s feature=%s", user_id, feature.value)
                return FeatureDecision(has_access=True)
        else:
            decision = feature_decision(status, feature)
        if not decision.has_access:
            await self._audit_denial(
                session,
                user_id,
                "entitlement.feature.denied",
                decision.reason,
                metadata={"feature": feature.value},
            )
        return decision

    async def require_pro_action(self, session: AsyncSession, user_id: str) -> None:
        # Raising variant for service code that cannot proceed without a paid, unblocked account.
        decision = await self.can_perform_pro_action(session, user_id)
        if not decision.allowed:
            raise AccountBlockedError(user_id, decision.reason or "pro action not allowed")

    async def _audit_denial(
        self,
        session: AsyncSession,
        user_id: str,
        event_type: str,
        reason: str | None,
        *,
        metadata: dict[str, object] | None = None,
    ) -> None:
        await record_event(
            session=session,
            actor_type="user",
            actor_id=user_id,
            event_type=event_type,
            outcome="failure",
            resource_type="subscription",
            resource_id=user_id,
            metadata={"reason": reason, **(metadata or {})},
            commit=True,
        )
