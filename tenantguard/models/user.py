"""
SQLModel-based User models with inheritance for security

This module defines the Users database model using SQLModel. The inheritance
structure is:

UserBase (shared public fields)
    ├─> Users (database table, adds credential and status fields)
    └─> UserInfo (API schema, defined in tenantguard/schemas)

Only the identity fields the authentication and impersonation flows need are
modelled here; profile management lives in other services.
"""

from datetime import datetime

from sqlalchemy import Index
from sqlmodel import Field, SQLModel

from tenantguard.config import UserStatus


class UserBase(SQLModel):
    """
    Base model with shared public fields for Users.

    These fields are safe to expose to privileged callers (impersonation
    banners, session lists).
    """

    email: str = Field(max_length=255)
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)


class Users(UserBase, table=True):
    """
    Database table for users.

    Internal/sensitive fields (should NOT be exposed via public API):
    - password_hash: bcrypt hash, NULL for SSO-only accounts
    - status: access control
    """

    __tablename__ = "users"

    __table_args__ = (Index("idx_users_email", "email", unique=True),)

    id: str = Field(primary_key=True, max_length=36)

    password_hash: str | None = Field(default=None, max_length=255)
    status: str = Field(default=UserStatus.ACTIVE, max_length=20)

    created_at: datetime | None = Field(default=None)
    last_login_at: datetime | None = Field(default=None)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE
