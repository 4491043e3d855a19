from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


# Use JSONB on Postgres while keeping SQLite-backed tests on plain JSON.
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UtcDateTime(TypeDecorator):
    # Normalize to aware UTC on both sides; SQLite drops tzinfo on round-trip.
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
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Emails are stored lowercased and trimmed so OAuth providers map to one account.
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    first_name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_name: Mapped[str | None] = mapped_column(String, nullable=True)
    # At most one default organization per user.
    default_org_id: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    is_personal_workspace: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())


class Role(Base):
    __tablename__ = "roles"

    # Role rows are created lazily the first time a membership needs them.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, unique=True, index=True)
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())


class OrganizationMember(Base):
    __tablename__ = "organization_members"
    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_organization_members_user_org"),
        Index("ix_organization_members_org", "organization_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"))
    role_id: Mapped[str] = mapped_column(String, ForeignKey("roles.id"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    invited_by: Mapped[str | None] = mapped_column(String, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())


class CliSession(Base):
    __tablename__ = "cli_sessions"
    __table_args__ = (
        Index("ix_cli_sessions_token_prefix", "token_prefix"),
        Index("ix_cli_sessions_cli_token", "cli_token"),
        Index("ix_cli_sessions_user", "user_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"))
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"))
    email: Mapped[str] = mapped_column(String)
    # New records store only the bcrypt digest plus a non-secret lookup prefix.
    token_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    token_prefix: Mapped[str | None] = mapped_column(String, nullable=True)
    # Legacy plaintext token from before hashing; read-only, cleared on rotation.
    cli_token: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime)
    last_used_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class PlatformSession(Base):
    __tablename__ = "platform_sessions"
    __table_args__ = (
        Index("ix_platform_sessions_user", "user_id"),
    )

    # The id doubles as the browser bearer value.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"))
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"))
    email: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime)
    last_used_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class LoginState(Base):
    __tablename__ = "login_states"
    __table_args__ = (
        Index("ix_login_states_expires_at", "expires_at"),
    )

    # Random CSRF correlation value; consumed exactly once.
    state: Mapped[str] = mapped_column(String, primary_key=True)
    # cli_login for the CLI browser flow, oauth_signup for the unified signup flow.
    flow: Mapped[str] = mapped_column(String)
    session_type: Mapped[str] = mapped_column(String, default="cli")
    provider: Mapped[str | None] = mapped_column(String, nullable=True)
    callback_url: Mapped[str] = mapped_column(Text)
    organization_name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Not-yet-issued CLI session token handed out on completion.
    pending_token: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime)


class ApiKey(Base):
    __tablename__ = "api_keys"
    __table_args__ = (
        Index("ix_api_keys_key_prefix", "key_prefix"),
        Index("ix_api_keys_org_status", "organization_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"))
    created_by: Mapped[str] = mapped_column(String, ForeignKey("users.id"))
    name: Mapped[str] = mapped_column(String)
    # Store only the digest; the raw key is shown once at issuance.
    key_hash: Mapped[str] = mapped_column(String)
    key_prefix: Mapped[str] = mapped_column(String)
    scopes: Mapped[list[str]] = mapped_column(JsonType, default=list)
    status: Mapped[str] = mapped_column(String, default="active")
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
    last_used_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class OAuthConnection(Base):
    __tablename__ = "oauth_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_oauth_connections_user_provider"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"))
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"))
    provider: Mapped[str] = mapped_column(String)
    provider_account_id: Mapped[str] = mapped_column(String)
    provider_email: Mapped[str] = mapped_column(String)
    # Provider tokens are Fernet-encrypted before they reach the database.
    access_token_encrypted: Mapped[str] = mapped_column(Text)
    refresh_token_encrypted: Mapped[str] = mapped_column(Text)
    token_expires_at: Mapped[datetime] = mapped_column(UtcDateTime)
    scopes: Mapped[list[str]] = mapped_column(JsonType, default=list)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())


class Workflow(Base):
    __tablename__ = "workflows"
    __table_args__ = (
        Index("ix_workflows_org_trigger", "organization_id", "trigger_on"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"))
    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="active")
    trigger_on: Mapped[str] = mapped_column(String)
    # rollback | continue | notify
    error_handling: Mapped[str] = mapped_column(String, default="continue")
    behaviors: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, default=list)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())


class WorkflowExecutionLog(Base):
    __tablename__ = "workflow_execution_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    workflow_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String)
    results: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, default=list)
    executed_count: Mapped[int] = mapped_column(Integer, default=0)
    total_count: Mapped[int] = mapped_column(Integer, default=0)
    triggered_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    workflow_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Money columns are integer minor units (cents).
    subtotal: Mapped[int] = mapped_column(BigInteger)
    discount: Mapped[int] = mapped_column(BigInteger, default=0)
    tax: Mapped[int] = mapped_column(BigInteger)
    total: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String, default="EUR")
    line_items: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, default=list)
    tax_breakdown: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, default=list)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())


class CrmContact(Base):
    __tablename__ = "crm_contacts"
    __table_args__ = (
        UniqueConstraint("organization_id", "email", name="uq_crm_contacts_org_email"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str] = mapped_column(String)
    first_name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_name: Mapped[str | None] = mapped_column(String, nullable=True)
    company: Mapped[str | None] = mapped_column(String, nullable=True)
    source: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())


class OutboxJob(Base):
    __tablename__ = "outbox_jobs"
    __table_args__ = (
        Index("ix_outbox_jobs_status_next", "status", "next_attempt_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    job_name: Mapped[str] = mapped_column(String)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    # Repeated enqueues with the same key collapse onto one row.
    idempotency_key: Mapped[str] = mapped_column(String, unique=True)
    # queued | running | succeeded | dead
    status: Mapped[str] = mapped_column(String, default="queued")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    next_attempt_at: Mapped[datetime] = mapped_column(UtcDateTime)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    occurred_at: Mapped[datetime] = mapped_column(UtcDateTime, index=True)
    # Allow null organization for pre-auth events.
    organization_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
