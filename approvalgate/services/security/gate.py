from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
import math
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from approvalgate.core.config import get_settings
from approvalgate.core.errors import (
    GateUnavailableError,
    InvalidCredentialError,
    PermanentlyBlockedError,
    RateLimitedError,
    TemporarilyBlockedError,
)
from approvalgate.domain.models import SecurityAlert
from approvalgate.domain.state import AttemptOutcome, BlockTier, CredentialKind
from approvalgate.persistence.repos import attempts as attempts_repo
from approvalgate.persistence.repos import blocks as blocks_repo
from approvalgate.services.audit import record_event
from approvalgate.services.security.alerts import AlertDispatcher
from approvalgate.services.security.block_policy import (
    BlockThresholds,
    attempts_remaining,
    is_temporary_active,
    next_tier_change,
)
from approvalgate.services.security.throttle import BurstThrottle, get_burst_throttle


logger = logging.getLogger(__name__)

ValidateFn = Callable[[AsyncSession, datetime], Awaitable[Any]]

_UNAVAILABLE_RETRY_SECONDS = 5


class Verdict(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    RETRY_AFTER = "retry_after"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class GateRequest:
    address: str
    credential_identifier: str
    credential_kind: CredentialKind
    user_agent: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class GateDecision:
    verdict: Verdict
    tier: BlockTier = BlockTier.NONE
    failure_count: int = 0
    attempts_remaining: int = 0
    retry_after: int | None = None
    blocked_until: datetime | None = None
    payload: Any = None
    error: InvalidCredentialError | None = None
    # Set when the attempt store failed and the decision came from gate_fail_mode.
    unavailable: bool = False
    alerts: list[SecurityAlert] = field(default_factory=list, compare=False)

    @property
    def allowed(self) -> bool:
        return self.verdict == Verdict.ALLOW

    def raise_for_denial(self) -> None:
        """Raise the error matching a non-allow decision; allowed decisions pass through."""
        if self.unavailable:
            raise GateUnavailableError(retry_after=self.retry_after)
        if self.verdict == Verdict.RETRY_AFTER:
            raise RateLimitedError(self.retry_after or 1, attempts_remaining=self.attempts_remaining)
        if self.verdict == Verdict.BLOCKED and self.tier == BlockTier.PERMANENT:
            raise PermanentlyBlockedError(failure_count=self.failure_count)
        if self.verdict == Verdict.BLOCKED:
            raise TemporarilyBlockedError(
                self.blocked_until,
                failure_count=self.failure_count,
                retry_after=self.retry_after or 1,
            )
        if self.verdict == Verdict.DENY:
            raise self.error or InvalidCredentialError("rejected")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateLimitedGate:
    """Single decision point for link, code and session credentials.

    One call loads the address block record, applies lazy temporary expiry
    and burst throttling, validates the credential, records the attempt and
    escalates the block tier, all in one transaction on ``session``. Alerts
    for tier transitions are delivered after commit.
    """

    def __init__(
        self,
        *,
        throttle: BurstThrottle | None = None,
        dispatcher: AlertDispatcher | None = None,
        thresholds: BlockThresholds | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        # Allow injecting time and collaborators for deterministic tests.
        self._throttle = throttle
        self._dispatcher = dispatcher or AlertDispatcher()
        self._thresholds = thresholds
        self._time_provider = time_provider or _utcnow

    @property
    def thresholds(self) -> BlockThresholds:
        return self._thresholds or BlockThresholds.from_settings()

    def _get_throttle(self) -> BurstThrottle:
        return self._throttle or get_burst_throttle()

    async def evaluate(
        self,
        session: AsyncSession,
        request: GateRequest,
        validate: ValidateFn,
    ) -> GateDecision:
        settings = get_settings()
        timeout_s = settings.gate_store_timeout_ms / 1000.0
        try:
            decision = await asyncio.wait_for(
                self._evaluate_in_store(session, request, validate),
                timeout=timeout_s if timeout_s > 0 else None,
            )
        except (asyncio.TimeoutError, SQLAlchemyError) as exc:
            try:
                await session.rollback()
            except SQLAlchemyError:
                logger.warning("gate_rollback_failed address=%s", request.address)
            logger.error(
                "gate_store_unavailable address=%s kind=%s fail_mode=%s",
                request.address,
                request.credential_kind.value,
                settings.gate_fail_mode,
                exc_info=exc,
            )
            return self._unavailable_decision(settings.gate_fail_mode)

        if decision.alerts:
            await self._dispatcher.deliver(decision.alerts)
        return decision

    def _unavailable_decision(self, fail_mode: str) -> GateDecision:
        # Both modes deny; "open" only downgrades the hard block to a short retry.
        if fail_mode.lower() == "open":
            return GateDecision(
                verdict=Verdict.RETRY_AFTER,
                retry_after=_UNAVAILABLE_RETRY_SECONDS,
                unavailable=True,
            )
        return GateDecision(verdict=Verdict.BLOCKED, unavailable=True)

    async def _evaluate_in_store(
        self,
        session: AsyncSession,
        request: GateRequest,
        validate: ValidateFn,
    ) -> GateDecision:
        now = self._time_provider()
        thresholds = self.thresholds
        address = request.address

        trusted = await blocks_repo.is_trusted(session, address)
        record = None if trusted else await blocks_repo.get_block_record(session, address)
        tier = BlockTier(record.tier) if record is not None else BlockTier.NONE
        failure_count = record.failure_count if record is not None else 0

        if tier == BlockTier.PERMANENT:
            logger.warning("gate_blocked_permanent address=%s count=%s", address, failure_count)
            await self._audit(
                session,
                request,
                now=now,
                event_type="security.access.blocked",
                error_code="IP_BLOCKED_PERMANENT",
                metadata={"tier": tier.value, "failure_count": failure_count},
            )
            await session.commit()
            return GateDecision(
                verdict=Verdict.BLOCKED,
                tier=BlockTier.PERMANENT,
                failure_count=failure_count,
            )

        if record is not None and is_temporary_active(tier, record.blocked_until, now):
            blocked_until = record.blocked_until
            logger.warning(
                "gate_blocked_temporary address=%s until=%s",
                address,
                blocked_until.isoformat(),
            )
            await self._record(session, request, AttemptOutcome.BLOCKED, now=now)
            await self._audit(
                session,
                request,
                now=now,
                event_type="security.access.blocked",
                error_code="IP_BLOCKED_TEMPORARY",
                metadata={"tier": tier.value, "failure_count": failure_count},
            )
            await session.commit()
            return GateDecision(
                verdict=Verdict.BLOCKED,
                tier=BlockTier.TEMPORARY,
                failure_count=failure_count,
                attempts_remaining=attempts_remaining(failure_count, thresholds),
                blocked_until=blocked_until,
                retry_after=retry_after_seconds(blocked_until, now),
            )

        if tier == BlockTier.TEMPORARY:
            await blocks_repo.expire_temporary_block(session, address=address, now=now)
            logger.info("gate_temporary_block_expired address=%s count=%s", address, failure_count)
            tier = BlockTier.NONE

        # Burst throttling applies below the warned tier only.
        if not trusted and tier == BlockTier.NONE:
            throttle_decision = await self._get_throttle().check(address)
            if not throttle_decision.allowed:
                logger.warning(
                    "gate_throttled address=%s retry_after_ms=%s",
                    address,
                    throttle_decision.retry_after_ms,
                )
                await self._record(session, request, AttemptOutcome.THROTTLED, now=now)
                await self._audit(
                    session,
                    request,
                    now=now,
                    event_type="security.access.throttled",
                    error_code="RATE_LIMIT_EXCEEDED",
                    metadata={"retry_after_ms": throttle_decision.retry_after_ms},
                )
                await session.commit()
                return GateDecision(
                    verdict=Verdict.RETRY_AFTER,
                    tier=tier,
                    failure_count=failure_count,
                    attempts_remaining=attempts_remaining(failure_count, thresholds),
                    retry_after=throttle_decision.retry_after_seconds,
                )

        try:
            payload = await validate(session, now)
        except InvalidCredentialError as exc:
            return await self._handle_failure(
                session,
                request,
                exc,
                now=now,
                tier=tier,
                failure_count=failure_count,
                trusted=trusted,
            )

        await self._record(
            session,
            request,
            AttemptOutcome.SUCCESS,
            now=now,
            target_entity_id=getattr(payload, "client_id", None),
        )
        await session.commit()
        return GateDecision(
            verdict=Verdict.ALLOW,
            tier=tier,
            failure_count=failure_count,
            attempts_remaining=attempts_remaining(failure_count, thresholds),
            payload=payload,
        )

    async def _handle_failure(
        self,
        session: AsyncSession,
        request: GateRequest,
        error: InvalidCredentialError,
        *,
        now: datetime,
        tier: BlockTier,
        failure_count: int,
        trusted: bool,
    ) -> GateDecision:
        thresholds = self.thresholds
        address = request.address
        outcome = AttemptOutcome.EXPIRED if error.expired else AttemptOutcome.FAILURE
        await self._record(session, request, outcome, now=now, target_entity_id=error.target_entity_id)

        blocked_until: datetime | None = None
        alerts: list[SecurityAlert] = []
        if not trusted:
            tally = await blocks_repo.increment_failures(session, address=address, now=now)
            failure_count = tally.failure_count
            change = next_tier_change(
                failure_count=failure_count,
                current_tier=tier,
                now=now,
                thresholds=thresholds,
            )
            if change is not None:
                won = await blocks_repo.transition_tier(
                    session,
                    address=address,
                    tier=change.tier,
                    blocked_until=change.blocked_until,
                    now=now,
                )
                if won:
                    tier = change.tier
                    blocked_until = change.blocked_until
                    alert = await self._dispatcher.record(
                        session,
                        address=address,
                        alert_type=change.alert_type,
                        triggering_count=failure_count,
                        now=now,
                        generation=tally.generation,
                        metadata={
                            "credential_kind": request.credential_kind.value,
                            "credential_identifier": request.credential_identifier,
                            "blocked_until": blocked_until.isoformat() if blocked_until else None,
                        },
                    )
                    if alert is not None:
                        alerts.append(alert)
                else:
                    # A concurrent request won the transition; report what it stored.
                    current = await blocks_repo.get_block_record(session, address)
                    if current is not None:
                        tier = BlockTier(current.tier)
                        blocked_until = current.blocked_until

        logger.info(
            "gate_credential_failed address=%s kind=%s credential=%s reason=%s count=%s",
            address,
            request.credential_kind.value,
            request.credential_identifier,
            error.reason,
            failure_count,
        )

        if tier == BlockTier.PERMANENT:
            verdict = Verdict.BLOCKED
            error_code = "IP_BLOCKED_PERMANENT"
        elif is_temporary_active(tier, blocked_until, now):
            verdict = Verdict.BLOCKED
            error_code = "IP_BLOCKED_TEMPORARY"
        else:
            verdict = Verdict.DENY
            error_code = "INVALID_CREDENTIAL"

        await self._audit(
            session,
            request,
            now=now,
            event_type="security.access.denied",
            error_code=error_code,
            metadata={
                "reason": error.reason,
                "tier": tier.value,
                "failure_count": failure_count,
                "trusted": trusted,
            },
        )
        await session.commit()
        return GateDecision(
            verdict=verdict,
            tier=tier,
            failure_count=failure_count,
            attempts_remaining=attempts_remaining(failure_count, thresholds),
            blocked_until=blocked_until if verdict == Verdict.BLOCKED else None,
            retry_after=(
                retry_after_seconds(blocked_until, now)
                if verdict == Verdict.BLOCKED and blocked_until is not None
                else None
            ),
            error=error,
            alerts=alerts,
        )

    async def _record(
        self,
        session: AsyncSession,
        request: GateRequest,
        outcome: AttemptOutcome,
        *,
        now: datetime,
        target_entity_id: str | None = None,
    ) -> None:
        await attempts_repo.record_attempt(
            session,
            address=request.address,
            credential_identifier=request.credential_identifier,
            credential_kind=request.credential_kind,
            outcome=outcome,
            attempted_at=now,
            target_entity_id=target_entity_id,
            user_agent=request.user_agent,
        )

    async def _audit(
        self,
        session: AsyncSession,
        request: GateRequest,
        *,
        now: datetime,
        event_type: str,
        error_code: str,
        metadata: dict[str, Any],
    ) -> None:
        await record_event(
            session=session,
            occurred_at=now,
            actor_type="address",
            actor_id=request.address,
            event_type=event_type,
            outcome="failure",
            resource_type=request.credential_kind.value,
            resource_id=request.credential_identifier,
            request_id=request.request_id,
            ip_address=request.address,
            user_agent=request.user_agent,
            metadata=metadata,
            error_code=error_code,
        )


def retry_after_seconds(blocked_until: datetime, now: datetime) -> int:
    return max(1, int(math.ceil((blocked_until - now).total_seconds())))


_gate: RateLimitedGate | None = None


def get_gate() -> RateLimitedGate:
    global _gate
    if _gate is None:
        _gate = RateLimitedGate()
    return _gate


def set_gate(gate: RateLimitedGate | None) -> None:
    # Swap the process gate in tests; None restores the default on next use.
    global _gate
    _gate = gate
