"""
SQLModel-based AuditLog model

Records security-relevant events (logins, refresh token rotation and reuse,
impersonation lifecycle) for compliance and forensics. Writes are dispatched
in the background and never block or fail the operation being recorded.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Index
from sqlmodel import Column, Field, SQLModel

from tenantguard.config import AuditOutcome


class AuditLogs(SQLModel, table=True):
    """
    Audit log for authentication and impersonation events.

    Stores:
    - Who performed the action (user_id)
    - Category and action name (see AuditCategory / AuditAction)
    - The resource the action applied to
    - JSON details with action context (session id, reason, duration, ...)
    - Request context (request id, IP, user agent)
    """

    __tablename__ = "audit_logs"

    __table_args__ = (
        Index("idx_audit_logs_user", "user_id", "created_at"),
        Index("idx_audit_logs_category", "category", "created_at"),
        Index("idx_audit_logs_action", "action", "created_at"),
        Index("idx_audit_logs_resource", "resource_type", "resource_id"),
    )

    id: int | None = Field(default=None, primary_key=True)

    category: str = Field(max_length=50)
    action: str = Field(max_length=100)

    # Actor (no foreign key: audit rows outlive the users they mention)
    user_id: str | None = Field(default=None, max_length=36)
    organization_id: str | None = Field(default=None, max_length=36)

    resource_type: str | None = Field(default=None, max_length=100)
    resource_id: str | None = Field(default=None, max_length=255)

    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    outcome: str = Field(default=AuditOutcome.SUCCESS, max_length=20)

    request_id: str | None = Field(default=None, max_length=64)
    ip_address: str | None = Field(default=None, max_length=45)
    user_agent: str | None = Field(default=None, max_length=500)

    created_at: datetime
