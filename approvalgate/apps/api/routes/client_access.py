from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from approvalgate.apps.api.deps import get_db
from approvalgate.apps.api.errors import http_error
from approvalgate.core.config import get_settings
from approvalgate.core.errors import (
    ApproverInactiveError,
    GateError,
    GateUnavailableError,
    PermanentlyBlockedError,
    RateLimitedError,
    TemporarilyBlockedError,
)
from approvalgate.domain.state import CredentialKind
from approvalgate.services.audit import get_request_context
from approvalgate.services.security.block_policy import BlockThresholds, failure_message
from approvalgate.services.security.credentials import (
    CredentialValidator,
    identifier_display,
    logout_session,
    token_display,
)
from approvalgate.services.security.gate import GateDecision, GateRequest, get_gate


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/client-access", tags=["client-access"])

_validator = CredentialValidator()


class ApprovalTokenRequest(BaseModel):
    token: str = Field(min_length=1)


class ApprovalTokenResponse(BaseModel):
    success: bool = True
    client_id: str
    client_name: str
    client_slug: str
    month: str


class ClientSessionRequest(BaseModel):
    session_token: str = Field(min_length=1)


class VerifyCodeRequest(BaseModel):
    identifier: str = Field(min_length=1)
    code: str = Field(min_length=6, max_length=6, pattern=r"^\d{6}$")


class VerifyCodeResponse(BaseModel):
    success: bool = True
    session_token: str
    expires_at: str
    client_id: str
    approver_id: str


class LogoutResponse(BaseModel):
    success: bool


def _gate_request(request: Request, credential_identifier: str, kind: CredentialKind) -> GateRequest:
    ctx = get_request_context(request)
    return GateRequest(
        address=ctx["ip_address"] or "unknown",
        credential_identifier=credential_identifier,
        credential_kind=kind,
        user_agent=ctx["user_agent"],
        request_id=ctx["request_id"],
    )


def _retry_headers(retry_after: int | None) -> dict[str, str] | None:
    if retry_after is None:
        return None
    return {"Retry-After": str(retry_after)}


def _denial_exception(
    error: GateError,
    decision: GateDecision,
    *,
    address: str,
    invalid_code: str,
) -> HTTPException:
    # Map a gate denial onto the error envelope; unknown and expired read the same.
    thresholds = BlockThresholds.from_settings()
    blocked_minutes = get_settings().gate_temporary_block_minutes
    message = failure_message(decision.failure_count, thresholds, blocked_minutes=blocked_minutes)
    if isinstance(error, GateUnavailableError):
        return http_error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "GATE_UNAVAILABLE",
            "Access validation is temporarily unavailable. Try again shortly.",
            headers=_retry_headers(error.retry_after),
        )
    if isinstance(error, RateLimitedError):
        return http_error(
            status.HTTP_429_TOO_MANY_REQUESTS,
            "RATE_LIMIT_EXCEEDED",
            "Too many attempts. Wait 1 minute before trying again.",
            headers=_retry_headers(error.retry_after),
            attempts_remaining=error.attempts_remaining,
            retry_after=error.retry_after,
        )
    if isinstance(error, PermanentlyBlockedError):
        return http_error(
            status.HTTP_429_TOO_MANY_REQUESTS,
            "IP_BLOCKED_PERMANENT",
            message,
            blocked_until=None,
            ip_address=address,
            failed_attempts=error.failure_count,
        )
    if isinstance(error, TemporarilyBlockedError):
        return http_error(
            status.HTTP_429_TOO_MANY_REQUESTS,
            "IP_BLOCKED_TEMPORARY",
            message,
            headers=_retry_headers(error.retry_after),
            blocked_until=error.blocked_until.isoformat(),
            ip_address=address,
            failed_attempts=error.failure_count,
        )
    return http_error(
        status.HTTP_401_UNAUTHORIZED,
        invalid_code,
        message,
        failed_attempts=decision.failure_count,
        attempts_remaining=decision.attempts_remaining,
    )


@router.post("/validate-approval-token", response_model=ApprovalTokenResponse)
async def validate_approval_token(
    payload: ApprovalTokenRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> ApprovalTokenResponse:
    token = payload.token.strip()
    gate_request = _gate_request(request, token_display(token), CredentialKind.TOKEN)

    async def _validate(session: AsyncSession, now: datetime):
        return await _validator.validate_approval_token(session, token, now=now)

    decision = await get_gate().evaluate(db, gate_request, _validate)
    try:
        decision.raise_for_denial()
    except GateError as exc:
        raise _denial_exception(
            exc,
            decision,
            address=gate_request.address,
            invalid_code="INVALID_TOKEN",
        ) from exc
    grant = decision.payload
    logger.info("approval_token_validated client_id=%s month=%s", grant.client_id, grant.month)
    return ApprovalTokenResponse(
        client_id=grant.client_id,
        client_name=grant.client_name,
        client_slug=grant.client_slug,
        month=grant.month,
    )


def _session_failure(error: GateError) -> JSONResponse:
    # Session checks answer {valid: false, error} instead of the error envelope.
    body: dict[str, Any] = {"valid": False}
    retry_after = getattr(error, "retry_after", None)
    headers = _retry_headers(retry_after)
    if isinstance(error, GateUnavailableError):
        body["error"] = "Session validation is temporarily unavailable"
        return JSONResponse(body, status_code=status.HTTP_503_SERVICE_UNAVAILABLE, headers=headers)
    if isinstance(error, (RateLimitedError, TemporarilyBlockedError, PermanentlyBlockedError)):
        body["error"] = "Too many attempts from this address"
        if retry_after is not None:
            body["retry_after"] = retry_after
        return JSONResponse(body, status_code=status.HTTP_429_TOO_MANY_REQUESTS, headers=headers)
    if isinstance(error, ApproverInactiveError):
        body["error"] = "Approver access has been disabled"
        return JSONResponse(body, status_code=status.HTTP_403_FORBIDDEN)
    body["error"] = "Invalid or expired session"
    return JSONResponse(body, status_code=status.HTTP_401_UNAUTHORIZED)


@router.post("/validate-client-session")
async def validate_client_session(
    payload: ClientSessionRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    session_token = payload.session_token.strip()
    gate_request = _gate_request(request, token_display(session_token), CredentialKind.SESSION)

    async def _validate(session: AsyncSession, now: datetime):
        return await _validator.validate_session(session, session_token, now=now)

    decision = await get_gate().evaluate(db, gate_request, _validate)
    try:
        decision.raise_for_denial()
    except GateError as exc:
        return _session_failure(exc)
    grant = decision.payload
    return {
        "valid": True,
        "session": {
            "approver_id": grant.approver_id,
            "client_id": grant.client_id,
            "expires_at": grant.expires_at.isoformat(),
        },
        "client": {
            "id": grant.client_id,
            "name": grant.client_name,
            "slug": grant.client_slug,
            "logo_url": grant.client_logo_url,
        },
        "approver": {
            "name": grant.approver_name,
            "email": grant.approver_email,
            "is_primary": grant.is_primary,
        },
    }


@router.post("/verify-code", response_model=VerifyCodeResponse)
async def verify_code(
    payload: VerifyCodeRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> VerifyCodeResponse:
    identifier = payload.identifier.strip()
    gate_request = _gate_request(request, identifier_display(identifier), CredentialKind.CODE)

    async def _validate(session: AsyncSession, now: datetime):
        return await _validator.redeem_code(
            session,
            identifier=identifier,
            code=payload.code,
            now=now,
            ip_address=gate_request.address,
            user_agent=gate_request.user_agent,
        )

    decision = await get_gate().evaluate(db, gate_request, _validate)
    try:
        decision.raise_for_denial()
    except GateError as exc:
        raise _denial_exception(
            exc,
            decision,
            address=gate_request.address,
            invalid_code="INVALID_CODE",
        ) from exc
    redeemed = decision.payload
    logger.info("client_session_created approver_id=%s", redeemed.record.approver_id)
    return VerifyCodeResponse(
        session_token=redeemed.session_token,
        expires_at=redeemed.record.expires_at.isoformat(),
        client_id=redeemed.record.client_id,
        approver_id=redeemed.record.approver_id,
    )


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    payload: ClientSessionRequest,
    db: AsyncSession = Depends(get_db),
) -> LogoutResponse:
    ended = await logout_session(
        db,
        session_token=payload.session_token.strip(),
        now=datetime.now(timezone.utc),
    )
    await db.commit()
    return LogoutResponse(success=ended)
