"""
SQLModel-based organization and role models.

These tables are the source of the role facts used to authorize
impersonation:

- SystemAdmins: platform-wide administrator roles (super_admin, org_admin, ...)
- OrganizationMemberships: per-organization roles (owner, admin, member, viewer)
"""

from sqlalchemy import ForeignKeyConstraint, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from tenantguard.config import MembershipRole


class Organizations(SQLModel, table=True):
    """Tenant organizations."""

    __tablename__ = "organizations"

    id: str = Field(primary_key=True, max_length=36)
    name: str = Field(max_length=255)


class OrganizationMemberships(SQLModel, table=True):
    """A user's role inside one organization."""

    __tablename__ = "organization_memberships"

    __table_args__ = (
        ForeignKeyConstraint(
            ["user_id"],
            ["users.id"],
            ondelete="CASCADE",
            name="fk_organization_memberships_user_id",
        ),
        ForeignKeyConstraint(
            ["organization_id"],
            ["organizations.id"],
            ondelete="CASCADE",
            name="fk_organization_memberships_organization_id",
        ),
        UniqueConstraint("user_id", "organization_id", name="uq_organization_memberships_user_org"),
        Index("idx_organization_memberships_user_id", "user_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(max_length=36)
    organization_id: str = Field(max_length=36)
    role: str = Field(default=MembershipRole.MEMBER, max_length=20)


class SystemAdmins(SQLModel, table=True):
    """
    Platform administrators.

    A row only grants its role while ``is_active`` is true.
    """

    __tablename__ = "system_admins"

    __table_args__ = (
        ForeignKeyConstraint(
            ["user_id"],
            ["users.id"],
            ondelete="CASCADE",
            name="fk_system_admins_user_id",
        ),
        Index("idx_system_admins_user_id", "user_id", unique=True),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(max_length=36)
    role: str = Field(max_length=20)
    is_active: bool = Field(default=True)
