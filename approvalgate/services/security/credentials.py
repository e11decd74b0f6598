from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import logging
import re
import secrets
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from approvalgate.core.config import get_settings
from approvalgate.core.errors import ApproverInactiveError, InvalidCredentialError
from approvalgate.domain.models import (
    ApprovalToken,
    Client,
    ClientApprover,
    ClientSession,
    TwoFactorCode,
)


logger = logging.getLogger(__name__)

_TOKEN_DISPLAY_CHARS = 10
_IDENTIFIER_DISPLAY_CHARS = 3
_MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def hash_secret(raw: str) -> str:
    # Tokens, session tokens and codes are only ever stored as SHA-256 digests.
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def token_display(raw: str) -> str:
    return f"{raw[:_TOKEN_DISPLAY_CHARS]}..."


def identifier_display(identifier: str) -> str:
    return f"{identifier.strip()[:_IDENTIFIER_DISPLAY_CHARS]}***"


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def generate_code() -> str:
    # Six digits without a leading zero, matching what approvers are told to expect.
    return str(100000 + secrets.randbelow(900000))


def validate_month(month: str) -> str:
    if not _MONTH_PATTERN.match(month or ""):
        raise ValueError("month must use the YYYY-MM format")
    return month


@dataclass(frozen=True)
class TokenGrant:
    token_id: str
    client_id: str
    client_name: str
    client_slug: str
    month: str
    expires_at: datetime


@dataclass(frozen=True)
class SessionGrant:
    session_id: str
    client_id: str
    approver_id: str
    expires_at: datetime
    client_name: str
    client_slug: str
    client_logo_url: str | None
    approver_name: str
    approver_email: str | None
    is_primary: bool


@dataclass(frozen=True)
class IssuedToken:
    token: str
    record: ApprovalToken
    approval_url: str


@dataclass(frozen=True)
class IssuedCode:
    code: str
    record: TwoFactorCode
    approver: ClientApprover


@dataclass(frozen=True)
class RedeemedSession:
    session_token: str
    record: ClientSession

    @property
    def client_id(self) -> str:
        return self.record.client_id


async def _load_client(session: AsyncSession, client_id: str) -> Client | None:
    result = await session.execute(select(Client).where(Client.id == client_id))
    return result.scalar_one_or_none()


async def _load_approver(session: AsyncSession, approver_id: str) -> ClientApprover | None:
    result = await session.execute(select(ClientApprover).where(ClientApprover.id == approver_id))
    return result.scalar_one_or_none()


class CredentialValidator:
    """Structural checks for link tokens, client sessions and one-time codes.

    Validation never looks at rate limits; the gate decides what a failure
    costs. Unknown and expired credentials raise ``InvalidCredentialError``
    with ``expired`` set so the gate can record the outcome, while callers
    see the same message for both.
    """

    async def validate_approval_token(
        self,
        session: AsyncSession,
        token: str,
        *,
        now: datetime,
    ) -> TokenGrant:
        result = await session.execute(
            select(ApprovalToken).where(ApprovalToken.token_hash == hash_secret(token))
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise InvalidCredentialError("unknown_token")
        if record.consumed:
            raise InvalidCredentialError("token_consumed", target_entity_id=record.client_id)
        if now >= record.expires_at:
            raise InvalidCredentialError("token_expired", expired=True, target_entity_id=record.client_id)
        client = await _load_client(session, record.client_id)
        if client is None:
            raise InvalidCredentialError("client_not_found")
        return TokenGrant(
            token_id=record.id,
            client_id=client.id,
            client_name=client.name,
            client_slug=client.slug,
            month=record.valid_month,
            expires_at=record.expires_at,
        )

    async def validate_session(
        self,
        session: AsyncSession,
        session_token: str,
        *,
        now: datetime,
    ) -> SessionGrant:
        result = await session.execute(
            select(ClientSession).where(ClientSession.token_hash == hash_secret(session_token))
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise InvalidCredentialError("unknown_session")
        if now >= record.expires_at:
            raise InvalidCredentialError("session_expired", expired=True, target_entity_id=record.client_id)
        approver = await _load_approver(session, record.approver_id)
        if approver is None or not approver.is_active:
            raise ApproverInactiveError(target_entity_id=record.client_id)
        client = await _load_client(session, record.client_id)
        if client is None:
            raise InvalidCredentialError("client_not_found")

        settings = get_settings()
        touch_after = timedelta(seconds=settings.session_activity_touch_seconds)
        if record.last_activity_at is None or now - record.last_activity_at > touch_after:
            await session.execute(
                update(ClientSession)
                .where(ClientSession.id == record.id)
                .values(last_activity_at=now)
                .execution_options(synchronize_session=False)
            )

        return SessionGrant(
            session_id=record.id,
            client_id=client.id,
            approver_id=approver.id,
            expires_at=record.expires_at,
            client_name=client.name,
            client_slug=client.slug,
            client_logo_url=client.logo_url,
            approver_name=approver.name,
            approver_email=approver.email,
            is_primary=record.is_primary,
        )

    async def redeem_code(
        self,
        session: AsyncSession,
        *,
        identifier: str,
        code: str,
        now: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> RedeemedSession:
        identifier = identifier.strip()
        result = await session.execute(
            select(TwoFactorCode)
            .where(
                TwoFactorCode.identifier == identifier,
                TwoFactorCode.code_hash == hash_secret(code.strip()),
                TwoFactorCode.used_at.is_(None),
            )
            .order_by(TwoFactorCode.created_at.desc())
            .limit(1)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise InvalidCredentialError("unknown_code")
        if now >= record.expires_at:
            raise InvalidCredentialError("code_expired", expired=True, target_entity_id=record.client_id)
        approver = await _load_approver(session, record.approver_id)
        if approver is None or not approver.is_active:
            raise ApproverInactiveError(target_entity_id=record.client_id)

        # Single use: only the request that flips used_at may open a session.
        claimed = await session.execute(
            update(TwoFactorCode)
            .where(TwoFactorCode.id == record.id, TwoFactorCode.used_at.is_(None))
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise InvalidCredentialError("code_already_used", target_entity_id=record.client_id)

        settings = get_settings()
        session_token = generate_token()
        client_session = ClientSession(
            id=str(uuid4()),
            token_prefix=session_token[:_TOKEN_DISPLAY_CHARS],
            token_hash=hash_secret(session_token),
            client_id=record.client_id,
            approver_id=record.approver_id,
            is_primary=approver.is_primary,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            expires_at=now + timedelta(hours=settings.client_session_ttl_hours),
            last_activity_at=now,
        )
        session.add(client_session)
        await session.flush()
        return RedeemedSession(session_token=session_token, record=client_session)


async def issue_approval_token(
    session: AsyncSession,
    *,
    client_id: str,
    month: str,
    now: datetime,
    created_by: str | None = None,
) -> IssuedToken:
    validate_month(month)
    client = await _load_client(session, client_id)
    if client is None:
        raise LookupError(f"client {client_id} not found")
    settings = get_settings()
    token = generate_token()
    record = ApprovalToken(
        id=str(uuid4()),
        client_id=client.id,
        valid_month=month,
        token_prefix=token[:_TOKEN_DISPLAY_CHARS],
        token_hash=hash_secret(token),
        consumed=False,
        created_by=created_by,
        issued_at=now,
        expires_at=now + timedelta(days=settings.approval_token_ttl_days),
    )
    session.add(record)
    await session.flush()
    logger.info(
        "approval_token_issued client_id=%s month=%s token=%s",
        client.id,
        month,
        token_display(token),
    )
    approval_url = f"{settings.approval_base_url.rstrip('/')}/{client.slug}?token={token}"
    return IssuedToken(token=token, record=record, approval_url=approval_url)


async def issue_two_factor_code(
    session: AsyncSession,
    *,
    identifier: str,
    now: datetime,
) -> IssuedCode:
    identifier = identifier.strip()
    if not identifier:
        raise ValueError("identifier is required")
    result = await session.execute(
        select(ClientApprover)
        .where(
            or_(ClientApprover.email == identifier, ClientApprover.whatsapp == identifier),
            ClientApprover.is_active.is_(True),
        )
        .limit(1)
    )
    approver = result.scalar_one_or_none()
    if approver is None:
        raise LookupError("approver not found")
    settings = get_settings()
    code = generate_code()
    record = TwoFactorCode(
        id=str(uuid4()),
        identifier=identifier,
        approver_id=approver.id,
        client_id=approver.client_id,
        code_hash=hash_secret(code),
        expires_at=now + timedelta(minutes=settings.two_factor_code_ttl_minutes),
        created_at=now,
    )
    session.add(record)
    await session.flush()
    logger.info(
        "two_factor_code_issued approver_id=%s identifier=%s",
        approver.id,
        identifier_display(identifier),
    )
    return IssuedCode(code=code, record=record, approver=approver)


async def logout_session(session: AsyncSession, *, session_token: str, now: datetime) -> bool:
    # Force expiry into the past; validation rejects it from then on.
    result = await session.execute(
        update(ClientSession)
        .where(
            ClientSession.token_hash == hash_secret(session_token),
            ClientSession.expires_at > now,
        )
        .values(expires_at=now - timedelta(seconds=1))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
