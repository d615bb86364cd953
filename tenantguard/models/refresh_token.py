"""
SQLModel-based RefreshToken model for JWT authentication.

This module defines the RefreshTokens database table for managing refresh tokens
used in JWT-based authentication with token rotation.

Security features:
- Stores hashed tokens (not plaintext)
- Tracks token family for reuse detection
- Rows are never deleted: rotation and revocation only set timestamps
- User agent and IP tracking for security auditing
"""

from datetime import datetime

from sqlalchemy import ForeignKeyConstraint, Index
from sqlmodel import Field, SQLModel


class RefreshTokens(SQLModel, table=True):
    """
    Database table for refresh tokens with security features.

    A token is active while ``rotated_at`` and ``revoked_at`` are both NULL
    and ``expires_at`` is in the future. At most one token per family is
    active at a time: rotation marks the presented token and inserts its
    replacement in the same transaction.
    """

    __tablename__ = "refresh_tokens"

    __table_args__ = (
        ForeignKeyConstraint(
            ["user_id"],
            ["users.id"],
            ondelete="CASCADE",
            name="fk_refresh_tokens_user_id",
        ),
        Index("idx_refresh_tokens_user_id", "user_id"),
        Index("idx_refresh_tokens_token_hash", "token_hash", unique=True),
        Index("idx_refresh_tokens_family_id", "family_id"),
        Index("idx_refresh_tokens_expires_at", "expires_at"),
    )

    id: str = Field(primary_key=True, max_length=36)

    user_id: str = Field(max_length=36)

    # Token (hashed for security - never store plaintext!)
    token_hash: str = Field(max_length=64)

    # All tokens generated from the same initial login share a family_id
    family_id: str = Field(max_length=36)

    issued_at: datetime
    expires_at: datetime

    # Set when this token was exchanged for its successor
    rotated_at: datetime | None = Field(default=None)
    revoked_at: datetime | None = Field(default=None)

    # Security tracking
    ip_address: str | None = Field(default=None, max_length=45)  # Supports IPv6
    user_agent: str | None = Field(default=None, max_length=500)

    # Parent token tracking (for rotation chains)
    parent_token_id: str | None = Field(default=None, max_length=36)

    def is_active_at(self, now: datetime) -> bool:
        return self.rotated_at is None and self.revoked_at is None and self.expires_at > now
