"""
Authentication dependencies for FastAPI route protection.

This module provides dependency functions for:
- Extracting and verifying JWT access tokens from requests
- Checking that impersonation tokens still belong to a live session
- Loading the current user from the user directory
- Rejecting impersonation tokens on routes that need a direct login
"""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Body, Cookie, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tenantguard.api.dependencies import Container
from tenantguard.api.errors import http_error
from tenantguard.core.logging import user_id_ctx
from tenantguard.core.result import Err
from tenantguard.core.security import AccessTokenClaims, verify_access_token
from tenantguard.models.user import Users


@dataclass(frozen=True)
class AuthContext:
    """The verified token and the user it was issued for."""

    user: Users
    claims: AccessTokenClaims

    @property
    def is_impersonation(self) -> bool:
        return self.claims.is_impersonation

    @property
    def acting_user_id(self) -> str:
        """The real person behind the request: the impersonator when impersonating."""
        return self.claims.acting_user_id


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_access_token(
    access_token: Annotated[str | None, Cookie()] = None,
    credentials: Annotated[
        HTTPAuthorizationCredentials | None, Depends(HTTPBearer(auto_error=False))
    ] = None,
) -> str:
    """
    Extract the access token from the Authorization header or the access_token cookie.

    The bearer header wins when both are present.

    Raises:
        HTTPException: 401 if no token was sent
    """
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    if access_token:
        return access_token
    raise _unauthorized("Not authenticated")


async def get_current_auth(
    token: Annotated[str, Depends(get_access_token)],
    container: Container,
) -> AuthContext:
    """
    Verify the access token and load its subject.

    Impersonation tokens are checked against their session on every request,
    so ending, revoking or expiring the session invalidates them at once.

    Raises:
        HTTPException: 401 if the token is invalid, its session is over, or
            the user is missing or inactive; 503 if the store is unreachable
    """
    claims = verify_access_token(token)
    if claims is None:
        raise _unauthorized("Could not validate credentials")

    if claims.impersonation is not None:
        result = await container.impersonation.validate_session_claim(
            claims.impersonation.session_id,
            impersonator_id=claims.impersonation.impersonator_id,
            target_user_id=claims.sub,
        )
        if isinstance(result, Err):
            raise http_error(result)
        if not result.value:
            raise _unauthorized("Impersonation session is no longer active")

    user = await container.users.find_by_id(claims.sub)
    if user is None:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise _unauthorized("User account is inactive")

    user_id_ctx.set(claims.acting_user_id)
    return AuthContext(user=user, claims=claims)


async def require_direct_login(
    auth: Annotated[AuthContext, Depends(get_current_auth)],
) -> AuthContext:
    """
    Require a token the user obtained by logging in themselves.

    Raises:
        HTTPException: 403 if the token was minted for an impersonation session
    """
    if auth.is_impersonation:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This action is not available while impersonating",
        )
    return auth


def get_client_ip(request: Request) -> str:
    """
    Extract client IP address from request.

    Checks X-Forwarded-For header first (for proxies/load balancers),
    falls back to direct client IP.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # X-Forwarded-For can contain multiple IPs, take the first (client)
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_user_agent(request: Request) -> str:
    """Extract User-Agent header from request ("unknown" if not present)."""
    return request.headers.get("User-Agent", "unknown")[:500]


async def get_optional_refresh_token(
    refresh_token: Annotated[str | None, Cookie()] = None,
    refresh_token_body: Annotated[str | None, Body(alias="refreshToken", embed=True)] = None,
) -> str | None:
    """Refresh token from the JSON body (``refreshToken``) or the HTTPOnly cookie."""
    return refresh_token_body or refresh_token


async def get_refresh_token(
    refresh_token: Annotated[str | None, Depends(get_optional_refresh_token)],
) -> str:
    """
    Raises:
        HTTPException: 401 if no refresh token was sent
    """
    if not refresh_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token missing",
        )
    return refresh_token


# Type aliases for dependency injection
CurrentAuth = Annotated[AuthContext, Depends(get_current_auth)]
DirectAuth = Annotated[AuthContext, Depends(require_direct_login)]
