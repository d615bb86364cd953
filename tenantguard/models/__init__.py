"""Database table models. Importing this package registers every table with SQLModel.metadata."""

from tenantguard.models.audit_log import AuditLogs
from tenantguard.models.impersonation_session import ImpersonationSessions
from tenantguard.models.organization import OrganizationMemberships, Organizations, SystemAdmins
from tenantguard.models.refresh_token import RefreshTokens
from tenantguard.models.user import Users

__all__ = [
    "AuditLogs",
    "ImpersonationSessions",
    "OrganizationMemberships",
    "Organizations",
    "RefreshTokens",
    "SystemAdmins",
    "Users",
]
