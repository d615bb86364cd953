"""
Role facts for impersonation authorization.

Reads the platform admin roles and organization memberships for a user and
reduces them to the small fact records the authorization rules consume.
Facts are read fresh on every call; nothing is cached across requests.
"""

from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.config import MembershipRole, SystemRole, TargetRole
from tenantguard.models.organization import OrganizationMemberships, SystemAdmins
from tenantguard.services.credential_store import StoreAccess


@dataclass(frozen=True)
class ActorRoleFacts:
    """What an acting administrator is allowed to do."""

    user_id: str
    is_super_admin: bool = False
    is_org_admin: bool = False
    admin_organization_ids: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class TargetRoleFacts:
    """Who a prospective impersonation target is."""

    user_id: str
    role: str = TargetRole.MEMBER
    organization_ids: frozenset[str] = field(default_factory=frozenset)


class RoleFacts(StoreAccess):
    """Database-backed role facts provider."""

    async def _load(self, user_id: str) -> tuple[str | None, list[tuple[str, str]]]:
        """Return (active system role, [(organization_id, membership role), ...])."""

        async def op(session: AsyncSession) -> tuple[str | None, list[tuple[str, str]]]:
            admin_result = await session.execute(
                select(SystemAdmins.role).where(
                    SystemAdmins.user_id == user_id,  # type: ignore[arg-type]
                    SystemAdmins.is_active == True,  # type: ignore[arg-type]  # noqa: E712
                )
            )
            system_role = admin_result.scalar_one_or_none()

            membership_result = await session.execute(
                select(OrganizationMemberships.organization_id, OrganizationMemberships.role).where(  # type: ignore[call-overload]
                    OrganizationMemberships.user_id == user_id
                )
            )
            memberships = [(org_id, role) for org_id, role in membership_result.fetchall()]
            return system_role, memberships

        return await self._read(op, "load_role_facts")

    async def get_actor_facts(self, user_id: str) -> ActorRoleFacts:
        system_role, memberships = await self._load(user_id)
        admin_org_ids = frozenset(
            org_id for org_id, role in memberships if role in MembershipRole.ADMIN_ROLES
        )
        return ActorRoleFacts(
            user_id=user_id,
            is_super_admin=system_role == SystemRole.SUPER_ADMIN,
            is_org_admin=system_role == SystemRole.ORG_ADMIN or bool(admin_org_ids),
            admin_organization_ids=admin_org_ids,
        )

    async def get_target_facts(self, user_id: str) -> TargetRoleFacts:
        system_role, memberships = await self._load(user_id)
        return TargetRoleFacts(
            user_id=user_id,
            role=_effective_target_role(system_role, [role for _, role in memberships]),
            organization_ids=frozenset(org_id for org_id, _ in memberships),
        )


def _effective_target_role(system_role: str | None, membership_roles: list[str]) -> str:
    if system_role is not None:
        return system_role
    if any(role in MembershipRole.ADMIN_ROLES for role in membership_roles):
        return TargetRole.ORG_ADMIN
    if membership_roles and all(role == MembershipRole.VIEWER for role in membership_roles):
        return TargetRole.VIEWER
    return TargetRole.MEMBER
