from __future__ import annotations

from datetime import datetime


class GateError(Exception):
    """Base error for the access control gate."""


class InvalidCredentialError(GateError):
    """Unknown, expired or wrong-target token, session or code."""

    def __init__(
        self,
        reason: str,
        *,
        expired: bool = False,
        target_entity_id: str | None = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.expired = expired
        # Client the credential resolved to, when a stored record was found.
        self.target_entity_id = target_entity_id


class ApproverInactiveError(InvalidCredentialError):
    """Session belongs to an approver that has been disabled."""

    def __init__(self, *, target_entity_id: str | None = None) -> None:
        super().__init__("approver_inactive", target_entity_id=target_entity_id)


class RateLimitedError(GateError):
    """Burst throttling hit; recoverable after retry_after seconds."""

    def __init__(self, retry_after: int, *, attempts_remaining: int) -> None:
        super().__init__(f"retry after {retry_after}s")
        self.retry_after = retry_after
        self.attempts_remaining = attempts_remaining


class TemporarilyBlockedError(GateError):
    """Address is blocked until blocked_until."""

    def __init__(self, blocked_until: datetime, *, failure_count: int, retry_after: int) -> None:
        super().__init__(f"blocked until {blocked_until.isoformat()}")
        self.blocked_until = blocked_until
        self.failure_count = failure_count
        self.retry_after = retry_after


class PermanentlyBlockedError(GateError):
    """Address is blocked with no expiry; requires operator intervention."""

    def __init__(self, *, failure_count: int) -> None:
        super().__init__(f"permanently blocked after {failure_count} failures")
        self.failure_count = failure_count


class GateUnavailableError(GateError):
    """Attempt store could not be reached within the configured timeout."""

    def __init__(self, *, retry_after: int | None = None) -> None:
        super().__init__("attempt store unavailable")
        self.retry_after = retry_after


class EntitlementUnresolvableError(GateError):
    """Profile or plan entitlements could not be loaded."""

    def __init__(self, user_id: str, detail: str) -> None:
        super().__init__(f"entitlements unavailable for {user_id}: {detail}")
        self.user_id = user_id
        self.detail = detail


class AccountBlockedError(GateError):
    """Subscription grace period expired; blocked until payment resolves."""

    def __init__(self, user_id: str, reason: str) -> None:
        super().__init__(f"account {user_id} blocked: {reason}")
        self.user_id = user_id
        self.reason = reason
