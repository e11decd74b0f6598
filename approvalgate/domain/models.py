from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class UTCDateTime(TypeDecorator):
    # SQLite drops tzinfo on round-trip; normalize so expiry comparisons stay aware.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


_JSON = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
_BIGINT_PK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    agency_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    logo_url: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())


class ClientApprover(Base):
    __tablename__ = "client_approvers"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("clients.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    # Either email or whatsapp identifies the approver when requesting a 2FA code.
    email: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    whatsapp: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())


class ApprovalToken(Base):
    __tablename__ = "approval_tokens"

    # Multi-use link credential scoped to one client and one month.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("clients.id"), index=True)
    valid_month: Mapped[str] = mapped_column(String)
    # Store only the hashed token; the prefix is for operator display.
    token_prefix: Mapped[str] = mapped_column(String)
    token_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    consumed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime())
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime())


class TwoFactorCode(Base):
    __tablename__ = "two_factor_codes"
    __table_args__ = (
        Index("ix_two_factor_codes_identifier_created", "identifier", "created_at"),
    )

    # Single-use six digit code bound to an approver identifier.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    identifier: Mapped[str] = mapped_column(String)
    approver_id: Mapped[str] = mapped_column(String, ForeignKey("client_approvers.id"), index=True)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("clients.id"), index=True)
    code_hash: Mapped[str] = mapped_column(String)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime())
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime())


class ClientSession(Base):
    __tablename__ = "client_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    token_prefix: Mapped[str] = mapped_column(String)
    token_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("clients.id"), index=True)
    approver_id: Mapped[str] = mapped_column(String, ForeignKey("client_approvers.id"), index=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime())
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime())
    last_activity_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class AccessAttempt(Base):
    __tablename__ = "access_attempts"
    __table_args__ = (
        Index("ix_access_attempts_address_attempted", "address", "attempted_at"),
        Index("ix_access_attempts_credential_attempted", "credential_identifier", "attempted_at"),
    )

    # Append-only attempt log; rows are never updated.
    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String)
    # Truncated credential display value; raw credentials are never stored.
    credential_identifier: Mapped[str] = mapped_column(String)
    credential_kind: Mapped[str] = mapped_column(String)
    outcome: Mapped[str] = mapped_column(String)
    target_entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    attempted_at: Mapped[datetime] = mapped_column(UTCDateTime())


class BlockRecord(Base):
    __tablename__ = "block_records"

    # One row per address, upserted on every failed attempt.
    address: Mapped[str] = mapped_column(String, primary_key=True)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tier: Mapped[str] = mapped_column(String, default="none", nullable=False, index=True)
    blocked_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    # Bumped by every operator unblock; alerts from earlier escalations keep the old value.
    generation: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)


class SecurityAlert(Base):
    __tablename__ = "security_alerts"
    __table_args__ = (
        UniqueConstraint(
            "address",
            "generation",
            "alert_type",
            "triggering_count",
            name="uq_security_alerts_transition",
        ),
    )

    # Deduplicate alerts per address/tier transition.
    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String, index=True)
    alert_type: Mapped[str] = mapped_column(String)
    triggering_count: Mapped[int] = mapped_column(Integer)
    generation: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime())


class TrustedAddress(Base):
    __tablename__ = "trusted_addresses"

    # Operator-managed allowlist that bypasses throttling and blocking.
    address: Mapped[str] = mapped_column(String, primary_key=True)
    label: Mapped[str | None] = mapped_column(String, nullable=True)
    added_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())


class Profile(Base):
    __tablename__ = "profiles"

    # Subscription profile; billing webhooks own most of these columns.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    account_type: Mapped[str | None] = mapped_column(String, nullable=True)
    plan: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_status: Mapped[str | None] = mapped_column(String, nullable=True)
    is_pro: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    delinquent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    grace_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    # Internal/unlimited accounts bypass every entitlement and blocking check.
    skip_subscription_check: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class PlanEntitlement(Base):
    __tablename__ = "plan_entitlements"

    # Null limits mean unlimited.
    plan: Mapped[str] = mapped_column(String, primary_key=True)
    posts_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    creatives_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    team_members_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    history_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    whatsapp_support: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    graphics_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    supplier_link: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    global_agenda: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    team_kanban: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    team_notifications: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)
    # Capture the actor identity for audit trails across credential types.
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Persist a stable event taxonomy for the security dashboards.
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JSON, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
