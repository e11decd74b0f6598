from __future__ import annotations

import hmac
import logging
from typing import AsyncGenerator

from fastapi import Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from approvalgate.core.config import get_settings
from approvalgate.persistence.db import get_session


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class InternalCaller(BaseModel):
    # Service-to-service caller; the acting operator id is forwarded for audit trails.
    actor_id: str | None = None


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_internal(
    request: Request,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> InternalCaller:
    settings = get_settings()
    expected = settings.internal_api_token
    if not expected:
        # Internal routes stay closed until a token is configured.
        logger.warning("internal_api_token_missing path=%s", request.url.path)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "INTERNAL_API_DISABLED", "message": "Internal API is not configured"},
        )
    if not authorization or not authorization.lower().startswith("bearer "):
        raise _auth_error("Missing bearer token")
    presented = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("internal_api_token_rejected path=%s", request.url.path)
        raise _auth_error("Invalid bearer token")
    return InternalCaller(actor_id=x_actor_id)
