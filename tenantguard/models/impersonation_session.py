"""
SQLModel-based ImpersonationSession model.

Tracks when an administrator acts as another user. Rows move one way out of
``active`` (to ended, expired or revoked) and are never deleted, so the table
doubles as the impersonation audit trail.
"""

from datetime import datetime

from sqlalchemy import ForeignKeyConstraint, Index, Text
from sqlmodel import Column, Field, SQLModel

from tenantguard.config import ImpersonationStatus


class ImpersonationSessions(SQLModel, table=True):
    """
    Database table for impersonation sessions.

    ``active_impersonator_id`` mirrors ``impersonator_id`` while the session is
    active and is NULL once it reaches a terminal status. The unique index on
    it allows at most one active session per impersonator; NULLs do not
    collide, so terminal rows are unaffected.
    """

    __tablename__ = "impersonation_sessions"

    __table_args__ = (
        ForeignKeyConstraint(
            ["impersonator_id"],
            ["users.id"],
            ondelete="CASCADE",
            name="fk_impersonation_sessions_impersonator_id",
        ),
        ForeignKeyConstraint(
            ["target_user_id"],
            ["users.id"],
            ondelete="CASCADE",
            name="fk_impersonation_sessions_target_user_id",
        ),
        ForeignKeyConstraint(
            ["organization_id"],
            ["organizations.id"],
            ondelete="SET NULL",
            name="fk_impersonation_sessions_organization_id",
        ),
        Index("idx_impersonation_sessions_impersonator", "impersonator_id"),
        Index("idx_impersonation_sessions_target", "target_user_id"),
        Index("idx_impersonation_sessions_status", "status"),
        Index("idx_impersonation_sessions_expires", "expires_at"),
        Index("uq_impersonation_sessions_active_impersonator", "active_impersonator_id", unique=True),
    )

    id: str = Field(primary_key=True, max_length=36)

    # The admin/support user who initiated the impersonation
    impersonator_id: str = Field(max_length=36)
    # The user being impersonated
    target_user_id: str = Field(max_length=36)
    # Organization scope (optional)
    organization_id: str | None = Field(default=None, max_length=36)

    # Reason for impersonation (required for audit trail)
    reason: str = Field(sa_column=Column(Text, nullable=False))

    status: str = Field(default=ImpersonationStatus.ACTIVE, max_length=20)
    active_impersonator_id: str | None = Field(default=None, max_length=36)

    started_at: datetime
    expires_at: datetime
    ended_at: datetime | None = Field(default=None)
    updated_at: datetime | None = Field(default=None)

    # Client information
    ip_address: str | None = Field(default=None, max_length=45)
    user_agent: str | None = Field(default=None, max_length=500)

    @property
    def is_active(self) -> bool:
        return self.status == ImpersonationStatus.ACTIVE
