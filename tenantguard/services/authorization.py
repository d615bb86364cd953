"""
Impersonation authorization rules.

Pure functions over role facts; no I/O. The impersonation manager loads fresh
facts for the actor and target on every request and asks ``evaluate_start``
whether the session may begin.

Rules:
- Only super admins and organization admins may impersonate.
- Super admins can never be impersonated, not even by other super admins.
- Organization admins may only impersonate plain members and viewers, and
  only users who share at least one organization they administer.
- A requested organization scope must be one the actor administers.
- Super admins skip the organization checks.
"""

from collections.abc import Iterable

from tenantguard.config import TargetRole
from tenantguard.core.result import Err, ErrorKind, Ok, Result
from tenantguard.services.role_facts import ActorRoleFacts, TargetRoleFacts

NOT_PERMITTED = "You do not have permission to impersonate users"
SUPER_ADMIN_PROTECTED = "Cannot impersonate Super Admin users"
ORG_ADMIN_MEMBERS_ONLY = "Organization admins can only impersonate regular members"
TARGET_OUTSIDE_ORGS = "You can only impersonate users in organizations you administer"
SCOPE_NOT_ADMINISTERED = "You are not an administrator of the requested organization"
SELF_IMPERSONATION = "You cannot impersonate yourself"


def can_impersonate(actor: ActorRoleFacts) -> bool:
    return actor.is_super_admin or actor.is_org_admin


def can_be_impersonated(target: TargetRoleFacts) -> bool:
    return target.role != TargetRole.SUPER_ADMIN


def can_org_admin_impersonate(target: TargetRoleFacts) -> bool:
    """Organization admins may not act as any other administrator, whatever the org."""
    return target.role in TargetRole.PLAIN


def org_admin_has_access_to_target(
    actor_org_ids: Iterable[str], target_org_ids: Iterable[str]
) -> bool:
    return not set(actor_org_ids).isdisjoint(target_org_ids)


def scope_is_authorized(actor_org_ids: Iterable[str], requested_org_id: str | None) -> bool:
    if requested_org_id is None:
        return True
    return requested_org_id in set(actor_org_ids)


def can_manage_sessions(actor: ActorRoleFacts) -> bool:
    """Revoking other admins' sessions and listing all active sessions is super-admin only."""
    return actor.is_super_admin


def evaluate_start(
    actor: ActorRoleFacts,
    target: TargetRoleFacts,
    organization_id: str | None = None,
) -> Result[None]:
    """
    Decide whether ``actor`` may start impersonating ``target``.

    Returns:
        Ok(None) when allowed, Err(FORBIDDEN, message) naming the first rule that failed
    """
    if not can_impersonate(actor):
        return Err(ErrorKind.FORBIDDEN, NOT_PERMITTED)

    if actor.user_id == target.user_id:
        return Err(ErrorKind.FORBIDDEN, SELF_IMPERSONATION)

    if not can_be_impersonated(target):
        return Err(ErrorKind.FORBIDDEN, SUPER_ADMIN_PROTECTED, {"target_role": target.role})

    if actor.is_super_admin:
        return Ok(None)

    if not can_org_admin_impersonate(target):
        return Err(ErrorKind.FORBIDDEN, ORG_ADMIN_MEMBERS_ONLY, {"target_role": target.role})

    if not org_admin_has_access_to_target(actor.admin_organization_ids, target.organization_ids):
        return Err(ErrorKind.FORBIDDEN, TARGET_OUTSIDE_ORGS)

    if not scope_is_authorized(actor.admin_organization_ids, organization_id):
        return Err(ErrorKind.FORBIDDEN, SCOPE_NOT_ADMINISTERED, {"organization_id": organization_id})

    return Ok(None)
