"""
Authentication API endpoints.

This module provides endpoints for:
- User login (with JWT + refresh token)
- Token refresh (with rotation and reuse detection)
- Logout (revoke refresh token) and logout from every device
- Current user and signed-in device listing
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from tenantguard.api.dependencies import TokenEngine
from tenantguard.api.errors import http_error
from tenantguard.config import settings
from tenantguard.core.auth import (
    CurrentAuth,
    DirectAuth,
    get_client_ip,
    get_optional_refresh_token,
    get_refresh_token,
    get_user_agent,
)
from tenantguard.core.logging import get_logger
from tenantguard.core.result import Err, ErrorKind
from tenantguard.core.security import hash_refresh_token
from tenantguard.schemas.auth import (
    ImpersonationContext,
    LoginRequest,
    LogoutAllResponse,
    MeResponse,
    RefreshSessionListResponse,
    RefreshSessionResponse,
    TokenResponse,
)
from tenantguard.services.refresh_tokens import ClientMetadata

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _client_metadata(request: Request) -> ClientMetadata:
    return ClientMetadata(ip_address=get_client_ip(request), user_agent=get_user_agent(request))


def _set_auth_cookies(response: Response, access_token: str, refresh_token: str) -> None:
    """
    Set authentication cookies in response.

    Both tokens are HTTPOnly cookies so browser clients never handle them in
    JavaScript; API clients can use the response body instead.
    """
    # Set refresh token as HTTPOnly cookie
    response.set_cookie(
        key="refresh_token",
        value=refresh_token,
        httponly=True,  # Prevent JavaScript access (XSS protection)
        secure=settings.ENVIRONMENT == "production",  # HTTPS only in production
        samesite="strict",  # CSRF protection
        max_age=settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,  # seconds
    )

    # Set access token as HTTPOnly cookie
    response.set_cookie(
        key="access_token",
        value=access_token,
        httponly=True,
        secure=settings.ENVIRONMENT == "production",
        samesite="strict",
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,  # Match JWT expiration
    )


def _clear_auth_cookies(response: Response) -> None:
    """Clear authentication cookies from response (params match set_cookie)."""
    for key in ("refresh_token", "access_token"):
        response.delete_cookie(
            key=key,
            path="/",
            httponly=True,
            secure=settings.ENVIRONMENT == "production",
            samesite="strict",
        )


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: LoginRequest,
    request: Request,
    response: Response,
    engine: TokenEngine,
) -> TokenResponse:
    """
    Authenticate with email and password.

    Starts a new refresh token family. Both tokens are returned in the body
    and set as HTTPOnly cookies. Every credential or account-state failure
    returns the same 401.
    """
    result = await engine.authenticate(credentials.email, credentials.password, _client_metadata(request))
    if isinstance(result, Err):
        if result.kind == ErrorKind.UNAVAILABLE:
            raise http_error(result)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
        )

    tokens = result.value
    _set_auth_cookies(response, tokens.access_token, tokens.refresh_token)

    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
    )


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    request: Request,
    response: Response,
    refresh_token: Annotated[str, Depends(get_refresh_token)],
    engine: TokenEngine,
) -> TokenResponse:
    """
    Exchange a refresh token for a new access token and refresh token.

    The presented token is rotated: it can never be used again. Presenting
    an already rotated token is treated as theft and revokes every token in
    its family. All failures return the same 401.
    """
    result = await engine.rotate(hash_refresh_token(refresh_token), _client_metadata(request))
    if isinstance(result, Err):
        raise http_error(result)

    tokens = result.value
    _set_auth_cookies(response, tokens.access_token, tokens.refresh_token)

    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
    )


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    request: Request,
    refresh_token: Annotated[str | None, Depends(get_optional_refresh_token)],
    engine: TokenEngine,
) -> Response:
    """
    Revoke the presented refresh token and clear the auth cookies.

    Always succeeds: unknown, expired or already revoked tokens are ignored.
    The access token is not revoked and expires on its own.
    """
    if refresh_token:
        result = await engine.revoke_presented(hash_refresh_token(refresh_token), _client_metadata(request))
        if isinstance(result, Err):
            # Logout must not fail; the token simply stays valid until it expires
            logger.warning("logout_revoke_failed", error=result.message)

    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    _clear_auth_cookies(response)
    return response


@router.post("/logout-all", response_model=LogoutAllResponse)
async def logout_all_devices(
    auth: DirectAuth,
    request: Request,
    response: Response,
    engine: TokenEngine,
) -> LogoutAllResponse:
    """
    Revoke every refresh token the current user holds.

    Useful for:
    - "Logout everywhere" feature
    - Security incidents (compromised account)
    """
    result = await engine.logout_all(auth.user.id, _client_metadata(request))
    if isinstance(result, Err):
        raise http_error(result)

    _clear_auth_cookies(response)
    return LogoutAllResponse(revoked_count=result.value)


@router.get("/me", response_model=MeResponse)
async def get_current_user_info(auth: CurrentAuth) -> MeResponse:
    """
    Get the authenticated user.

    While impersonating, this is the target user, with the impersonation
    session and the real impersonator attached.
    """
    impersonation = None
    if auth.claims.impersonation is not None:
        impersonation = ImpersonationContext(
            session_id=auth.claims.impersonation.session_id,
            impersonator_id=auth.claims.impersonation.impersonator_id,
        )

    user = auth.user
    return MeResponse(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        status=user.status,
        last_login_at=user.last_login_at,
        is_impersonation=auth.is_impersonation,
        impersonation=impersonation,
    )


@router.get("/sessions", response_model=RefreshSessionListResponse)
async def list_signed_in_devices(auth: DirectAuth, engine: TokenEngine) -> RefreshSessionListResponse:
    """List the current user's active refresh tokens (one per signed-in device)."""
    result = await engine.list_active_for_user(auth.user.id)
    if isinstance(result, Err):
        raise http_error(result)

    return RefreshSessionListResponse(
        sessions=[RefreshSessionResponse.model_validate(token) for token in result.value]
    )
