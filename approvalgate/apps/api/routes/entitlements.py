from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from approvalgate.apps.api.deps import InternalCaller, get_db, require_internal
from approvalgate.apps.api.errors import http_error
from approvalgate.core.errors import EntitlementUnresolvableError
from approvalgate.services.entitlements import (
    EntitlementGate,
    EntitlementResolver,
    Feature,
    LimitType,
)


router = APIRouter(prefix="/internal/entitlements", tags=["internal-entitlements"])

_resolver = EntitlementResolver()
_gate = EntitlementGate(_resolver)


class LimitCheckRequest(BaseModel):
    limit_type: LimitType
    current_count: int = Field(ge=0)


@router.get("/{user_id}")
async def get_subscription_status(
    user_id: str,
    caller: InternalCaller = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        status_view = await _resolver.resolve(db, user_id)
    except EntitlementUnresolvableError as exc:
        raise http_error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "ENTITLEMENTS_UNAVAILABLE",
            "Entitlements could not be resolved",
            user_id=exc.user_id,
        ) from exc
    return status_view.to_dict()


@router.post("/{user_id}/pro-action")
async def check_pro_action(
    user_id: str,
    caller: InternalCaller = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    decision = await _gate.can_perform_pro_action(db, user_id)
    return {"allowed": decision.allowed, "reason": decision.reason}


@router.post("/{user_id}/limits")
async def check_limit(
    user_id: str,
    payload: LimitCheckRequest,
    caller: InternalCaller = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    decision = await _gate.check_limit(db, user_id, payload.limit_type, payload.current_count)
    return {"within_limit": decision.within_limit, "limit": decision.limit, "message": decision.message}


@router.get("/{user_id}/features/{feature}")
async def check_feature(
    user_id: str,
    feature: Feature,
    caller: InternalCaller = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    decision = await _gate.has_feature_access(db, user_id, feature)
    return {"has_access": decision.has_access, "reason": decision.reason}
