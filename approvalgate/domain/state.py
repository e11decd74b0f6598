from __future__ import annotations

from enum import Enum


class BlockTier(str, Enum):
    NONE = "none"
    WARNED = "warned"
    TEMPORARY = "temporary"
    PERMANENT = "permanent"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def lower_tiers(self) -> list["BlockTier"]:
        # Tiers a record may be in for an upward transition into this tier.
        return [tier for tier in BlockTier if tier.rank < self.rank]


_TIER_RANK = {
    BlockTier.NONE: 0,
    BlockTier.WARNED: 1,
    BlockTier.TEMPORARY: 2,
    BlockTier.PERMANENT: 3,
}


class CredentialKind(str, Enum):
    TOKEN = "token"
    CODE = "code"
    SESSION = "session"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    EXPIRED = "expired"
    THROTTLED = "throttled"
    BLOCKED = "blocked"


class AlertType(str, Enum):
    WARNING_FAILURES = "warning_failures"
    TEMPORARY_BLOCK = "temporary_block"
    PERMANENT_BLOCK = "permanent_block"
    IP_UNBLOCKED = "ip_unblocked"


class SubscriptionStatusValue(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
