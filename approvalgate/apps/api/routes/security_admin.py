from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from approvalgate.apps.api.deps import InternalCaller, get_db, require_internal
from approvalgate.apps.api.errors import http_error
from approvalgate.apps.api.response import get_request_id
from approvalgate.persistence.repos import attempts as attempts_repo
from approvalgate.persistence.repos import blocks as blocks_repo
from approvalgate.services.security import admin as security_admin
from approvalgate.services.security.credentials import issue_approval_token, issue_two_factor_code
from approvalgate.services.subscription_enforcement import run_enforcement


router = APIRouter(prefix="/internal", tags=["internal-security"])


class IssueTokenRequest(BaseModel):
    client_id: str = Field(min_length=1)
    month: str = Field(pattern=r"^\d{4}-(0[1-9]|1[0-2])$")


class IssueCodeRequest(BaseModel):
    identifier: str = Field(min_length=1)


class TrustAddressRequest(BaseModel):
    label: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@router.post("/approval-tokens", status_code=status.HTTP_201_CREATED)
async def create_approval_token(
    payload: IssueTokenRequest,
    caller: InternalCaller = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        issued = await issue_approval_token(
            db,
            client_id=payload.client_id,
            month=payload.month,
            now=_utcnow(),
            created_by=caller.actor_id,
        )
    except LookupError as exc:
        raise http_error(status.HTTP_404_NOT_FOUND, "CLIENT_NOT_FOUND", "Client not found") from exc
    await db.commit()
    return {
        "token": issued.token,
        "approval_url": issued.approval_url,
        "client_id": issued.record.client_id,
        "month": issued.record.valid_month,
        "expires_at": issued.record.expires_at.isoformat(),
    }


@router.post("/two-factor-codes", status_code=status.HTTP_201_CREATED)
async def create_two_factor_code(
    payload: IssueCodeRequest,
    caller: InternalCaller = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Delivery happens in the notification pipeline, which is the caller here.
    try:
        issued = await issue_two_factor_code(db, identifier=payload.identifier, now=_utcnow())
    except LookupError as exc:
        raise http_error(status.HTTP_404_NOT_FOUND, "APPROVER_NOT_FOUND", "Approver not found") from exc
    await db.commit()
    return {
        "code": issued.code,
        "approver_id": issued.approver.id,
        "approver_name": issued.approver.name,
        "client_id": issued.record.client_id,
        "expires_at": issued.record.expires_at.isoformat(),
    }


@router.get("/security/blocked")
async def list_blocked(
    caller: InternalCaller = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    blocked = await security_admin.list_blocked_addresses(db, now=_utcnow())
    return {"items": [security_admin.blocked_to_dict(item) for item in blocked]}


@router.post("/security/blocked/{address}/unblock")
async def unblock(
    address: str,
    request: Request,
    caller: InternalCaller = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await security_admin.unblock_address(
        db,
        address=address,
        actor_id=caller.actor_id,
        now=_utcnow(),
        request_id=get_request_id(request),
    )
    if result is None:
        raise http_error(status.HTTP_404_NOT_FOUND, "ADDRESS_NOT_FOUND", "Address has no block record")
    return {
        "address": result.address,
        "previous_tier": result.previous_tier.value,
        "previous_failure_count": result.previous_failure_count,
    }


@router.get("/security/summary")
async def summary(
    window_hours: int = Query(default=24, ge=1, le=24 * 30),
    caller: InternalCaller = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await security_admin.security_summary(
        db,
        now=_utcnow(),
        window=timedelta(hours=window_hours),
    )
    return security_admin.summary_to_dict(result)


@router.get("/security/attempts")
async def list_attempts(
    address: str = Query(min_length=1),
    limit: int = Query(default=50, ge=1, le=500),
    caller: InternalCaller = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    attempts = await attempts_repo.list_attempts(db, address=address, limit=limit)
    return {
        "items": [
            {
                "credential_identifier": attempt.credential_identifier,
                "credential_kind": attempt.credential_kind,
                "outcome": attempt.outcome,
                "attempted_at": attempt.attempted_at.isoformat(),
                "user_agent": attempt.user_agent,
            }
            for attempt in attempts
        ]
    }


@router.get("/security/trusted")
async def list_trusted(
    caller: InternalCaller = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    trusted = await blocks_repo.list_trusted(db)
    return {
        "items": [
            {"address": item.address, "label": item.label, "added_by": item.added_by}
            for item in trusted
        ]
    }


@router.put("/security/trusted/{address}")
async def trust(
    address: str,
    payload: TrustAddressRequest,
    request: Request,
    caller: InternalCaller = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    trusted = await security_admin.trust_address(
        db,
        address=address,
        label=payload.label,
        actor_id=caller.actor_id,
        request_id=get_request_id(request),
    )
    return {"address": trusted.address, "label": trusted.label, "added_by": trusted.added_by}


@router.delete("/security/trusted/{address}", status_code=status.HTTP_204_NO_CONTENT)
async def untrust(
    address: str,
    request: Request,
    caller: InternalCaller = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
) -> None:
    removed = await security_admin.untrust_address(
        db,
        address=address,
        actor_id=caller.actor_id,
        request_id=get_request_id(request),
    )
    if not removed:
        raise http_error(status.HTTP_404_NOT_FOUND, "ADDRESS_NOT_FOUND", "Address is not trusted")


@router.post("/subscriptions/enforce")
async def enforce_subscriptions(
    caller: InternalCaller = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await run_enforcement(db, now=_utcnow())
    return {"success": True, "summary": result.to_dict()}
