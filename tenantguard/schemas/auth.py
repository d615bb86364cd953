"""
Authentication schemas for request/response validation.

This module defines Pydantic models for authentication-related API operations:
- Login credentials
- Token responses
- Device (refresh token) session listings
"""

from pydantic import EmailStr, Field

from tenantguard.schemas.base import CamelModel, UTCDatetime, UTCDatetimeOptional


class LoginRequest(CamelModel):
    """Request schema for user login."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=255)


class TokenResponse(CamelModel):
    """Response schema for successful authentication."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Access token expiration time in seconds from now")


class LogoutAllResponse(CamelModel):
    revoked_count: int


class ImpersonationContext(CamelModel):
    session_id: str
    impersonator_id: str


class MeResponse(CamelModel):
    """The authenticated user, and who is really behind the token when impersonating."""

    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    status: str
    last_login_at: UTCDatetimeOptional = None
    is_impersonation: bool = False
    impersonation: ImpersonationContext | None = None


class RefreshSessionResponse(CamelModel):
    """One signed-in device: an active refresh token."""

    id: str
    family_id: str
    issued_at: UTCDatetime
    expires_at: UTCDatetime
    ip_address: str | None = None
    user_agent: str | None = None


class RefreshSessionListResponse(CamelModel):
    sessions: list[RefreshSessionResponse]
