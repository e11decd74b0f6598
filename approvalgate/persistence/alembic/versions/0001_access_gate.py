"""access gate

Revision ID: 0001_access_gate
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_access_gate"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "clients",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("agency_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("logo_url", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_clients_agency_id", "clients", ["agency_id"])
    op.create_index("ix_clients_slug", "clients", ["slug"], unique=True)

    op.create_table(
        "client_approvers",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("client_id", sa.String(), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("whatsapp", sa.String(), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_client_approvers_client_id", "client_approvers", ["client_id"])
    op.create_index("ix_client_approvers_email", "client_approvers", ["email"])
    op.create_index("ix_client_approvers_whatsapp", "client_approvers", ["whatsapp"])

    op.create_table(
        "approval_tokens",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("client_id", sa.String(), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("valid_month", sa.String(), nullable=False),
        sa.Column("token_prefix", sa.String(), nullable=False),
        sa.Column("token_hash", sa.String(), nullable=False),
        sa.Column("consumed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_approval_tokens_client_id", "approval_tokens", ["client_id"])
    op.create_index("ix_approval_tokens_token_hash", "approval_tokens", ["token_hash"], unique=True)

    op.create_table(
        "two_factor_codes",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("identifier", sa.String(), nullable=False),
        sa.Column("approver_id", sa.String(), sa.ForeignKey("client_approvers.id"), nullable=False),
        sa.Column("client_id", sa.String(), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("code_hash", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_two_factor_codes_approver_id", "two_factor_codes", ["approver_id"])
    op.create_index("ix_two_factor_codes_client_id", "two_factor_codes", ["client_id"])
    op.create_index(
        "ix_two_factor_codes_identifier_created",
        "two_factor_codes",
        ["identifier", "created_at"],
    )

    op.create_table(
        "client_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("token_prefix", sa.String(), nullable=False),
        sa.Column("token_hash", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("approver_id", sa.String(), sa.ForeignKey("client_approvers.id"), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_client_sessions_token_hash", "client_sessions", ["token_hash"], unique=True)
    op.create_index("ix_client_sessions_client_id", "client_sessions", ["client_id"])
    op.create_index("ix_client_sessions_approver_id", "client_sessions", ["approver_id"])

    op.create_table(
        "access_attempts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("address", sa.String(), nullable=False),
        sa.Column("credential_identifier", sa.String(), nullable=False),
        sa.Column("credential_kind", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("target_entity_id", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_access_attempts_address_attempted",
        "access_attempts",
        ["address", "attempted_at"],
    )
    op.create_index(
        "ix_access_attempts_credential_attempted",
        "access_attempts",
        ["credential_identifier", "attempted_at"],
    )

    op.create_table(
        "block_records",
        sa.Column("address", sa.String(), primary_key=True),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tier", sa.String(), nullable=False, server_default="none"),
        sa.Column("blocked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("generation", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_block_records_tier", "block_records", ["tier"])

    op.create_table(
        "security_alerts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("address", sa.String(), nullable=False),
        sa.Column("alert_type", sa.String(), nullable=False),
        sa.Column("triggering_count", sa.Integer(), nullable=False),
        sa.Column("generation", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "address",
            "generation",
            "alert_type",
            "triggering_count",
            name="uq_security_alerts_transition",
        ),
    )
    op.create_index("ix_security_alerts_address", "security_alerts", ["address"])

    op.create_table(
        "trusted_addresses",
        sa.Column("address", sa.String(), primary_key=True),
        sa.Column("label", sa.String(), nullable=True),
        sa.Column("added_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "profiles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("account_type", sa.String(), nullable=True),
        sa.Column("plan", sa.String(), nullable=True),
        sa.Column("subscription_status", sa.String(), nullable=True),
        sa.Column("is_pro", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("delinquent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("grace_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "skip_subscription_check",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "plan_entitlements",
        sa.Column("plan", sa.String(), primary_key=True),
        sa.Column("posts_limit", sa.Integer(), nullable=True),
        sa.Column("creatives_limit", sa.Integer(), nullable=True),
        sa.Column("team_members_limit", sa.Integer(), nullable=True),
        sa.Column("history_days", sa.Integer(), nullable=True),
        sa.Column("whatsapp_support", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("graphics_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("supplier_link", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("global_agenda", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("team_kanban", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("team_notifications", sa.Boolean(), nullable=False, server_default=sa.false()),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])
    op.create_index("ix_audit_events_ip_address", "audit_events", ["ip_address"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_ip_address", table_name="audit_events")
    op.drop_index("ix_audit_events_request_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("plan_entitlements")
    op.drop_table("profiles")
    op.drop_table("trusted_addresses")
    op.drop_index("ix_security_alerts_address", table_name="security_alerts")
    op.drop_table("security_alerts")
    op.drop_index("ix_block_records_tier", table_name="block_records")
    op.drop_table("block_records")
    op.drop_index("ix_access_attempts_credential_attempted", table_name="access_attempts")
    op.drop_index("ix_access_attempts_address_attempted", table_name="access_attempts")
    op.drop_table("access_attempts")
    op.drop_index("ix_client_sessions_approver_id", table_name="client_sessions")
    op.drop_index("ix_client_sessions_client_id", table_name="client_sessions")
    op.drop_index("ix_client_sessions_token_hash", table_name="client_sessions")
    op.drop_table("client_sessions")
    op.drop_index("ix_two_factor_codes_identifier_created", table_name="two_factor_codes")
    op.drop_index("ix_two_factor_codes_client_id", table_name="two_factor_codes")
    op.drop_index("ix_two_factor_codes_approver_id", table_name="two_factor_codes")
    op.drop_table("two_factor_codes")
    op.drop_index("ix_approval_tokens_token_hash", table_name="approval_tokens")
    op.drop_index("ix_approval_tokens_client_id", table_name="approval_tokens")
    op.drop_table("approval_tokens")
    op.drop_index("ix_client_approvers_whatsapp", table_name="client_approvers")
    op.drop_index("ix_client_approvers_email", table_name="client_approvers")
    op.drop_index("ix_client_approvers_client_id", table_name="client_approvers")
    op.drop_table("client_approvers")
    op.drop_index("ix_clients_slug", table_name="clients")
    op.drop_index("ix_clients_agency_id", table_name="clients")
    op.drop_table("clients")
