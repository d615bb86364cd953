"""
Impersonation schemas for request/response validation.
"""

from pydantic import Field

from tenantguard.schemas.base import CamelModel, UTCDatetime, UTCDatetimeOptional
from tenantguard.schemas.common import Pagination, UserInfo


class StartImpersonationRequest(CamelModel):
    target_user_id: str = Field(..., min_length=1, max_length=36)
    organization_id: str | None = Field(default=None, max_length=36)
    reason: str = Field(..., min_length=10, max_length=500, description="Why the session is needed")
    duration_ms: int | None = Field(
        default=None,
        gt=0,
        description="Requested session length; clamped to the configured minimum and maximum",
    )


class StartImpersonationResponse(CamelModel):
    session_id: str
    access_token: str
    expires_at: UTCDatetime
    target_user: UserInfo


class EndImpersonationRequest(CamelModel):
    session_id: str | None = None


class ImpersonationStatusResponse(CamelModel):
    is_impersonating: bool
    session_id: str | None = None
    impersonator: UserInfo | None = None
    target: UserInfo | None = None
    organization_id: str | None = None
    started_at: UTCDatetimeOptional = None
    expires_at: UTCDatetimeOptional = None
    reason: str | None = None


class ImpersonationSessionResponse(CamelModel):
    id: str
    impersonator_id: str
    target_user_id: str
    organization_id: str | None = None
    reason: str
    status: str
    started_at: UTCDatetime
    expires_at: UTCDatetime
    ended_at: UTCDatetimeOptional = None
    ip_address: str | None = None
    user_agent: str | None = None
    impersonator: UserInfo | None = None
    target: UserInfo | None = None


class ImpersonationSessionListResponse(CamelModel):
    sessions: list[ImpersonationSessionResponse]
    pagination: Pagination


class CanImpersonateResponse(CamelModel):
    can_impersonate: bool


class ExpireSessionsResponse(CamelModel):
    expired_count: int
