"""
Admin impersonation API endpoints.

Routes for starting, ending and supervising impersonation sessions. All
routes require a token obtained by a direct login, except ``end`` and
``status``: those are called from inside an impersonation session (the
banner's "stop impersonating" button), so they act for the impersonator
named in the token.
"""

from typing import Annotated

from fastapi import APIRouter, Body, HTTPException, Query, Request, status

from tenantguard.api.dependencies import Impersonations, PageParams
from tenantguard.api.errors import http_error
from tenantguard.core.auth import CurrentAuth, DirectAuth, get_client_ip, get_user_agent
from tenantguard.core.logging import get_logger
from tenantguard.core.result import Err
from tenantguard.models.user import Users
from tenantguard.schemas.common import Pagination, SuccessResponse, UserInfo
from tenantguard.schemas.impersonation import (
    CanImpersonateResponse,
    EndImpersonationRequest,
    ExpireSessionsResponse,
    ImpersonationSessionListResponse,
    ImpersonationSessionResponse,
    ImpersonationStatusResponse,
    StartImpersonationRequest,
    StartImpersonationResponse,
)
from tenantguard.services.impersonation import SessionPage, StartImpersonationOptions

logger = get_logger(__name__)

router = APIRouter(prefix="/admin/impersonate", tags=["Impersonation"])

MANAGE_SESSIONS_FORBIDDEN = "Only super admins can manage impersonation sessions"


def _user_info(user: Users | None) -> UserInfo | None:
    if user is None:
        return None
    return UserInfo.model_validate(user)


def _session_list(page: SessionPage) -> ImpersonationSessionListResponse:
    sessions = []
    for view in page.items:
        item = ImpersonationSessionResponse.model_validate(view.session)
        item.impersonator = _user_info(view.impersonator)
        item.target = _user_info(view.target)
        sessions.append(item)
    return ImpersonationSessionListResponse(
        sessions=sessions,
        pagination=Pagination(page=page.page, page_size=page.page_size, total_count=page.total),
    )


@router.post("/start", response_model=StartImpersonationResponse)
async def start_impersonation(
    payload: StartImpersonationRequest,
    request: Request,
    auth: DirectAuth,
    manager: Impersonations,
) -> StartImpersonationResponse:
    """
    Start impersonating another user.

    Returns an access token for the target user that carries the
    impersonation claims. It stops working when the session ends, is revoked
    or expires.

    Errors:
    - 403: not allowed to impersonate this user (the detail says why)
    - 404: target user does not exist
    - 409: the caller already has an active session
    """
    result = await manager.start_impersonation(
        StartImpersonationOptions(
            impersonator_id=auth.user.id,
            target_user_id=payload.target_user_id,
            organization_id=payload.organization_id,
            reason=payload.reason,
            duration_ms=payload.duration_ms,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
        )
    )
    if isinstance(result, Err):
        raise http_error(result)

    started = result.value
    return StartImpersonationResponse(
        session_id=started.session_id,
        access_token=started.access_token,
        expires_at=started.expires_at,
        target_user=UserInfo.model_validate(started.target_user),
    )


@router.post("/end", response_model=SuccessResponse)
async def end_impersonation(
    auth: CurrentAuth,
    manager: Impersonations,
    payload: Annotated[EndImpersonationRequest | None, Body()] = None,
) -> SuccessResponse:
    """End the caller's impersonation session (the given one, or the current active one)."""
    session_id = payload.session_id if payload else None
    result = await manager.end_impersonation(auth.acting_user_id, session_id)
    if isinstance(result, Err):
        raise http_error(result)

    return SuccessResponse(message="Impersonation session ended")


@router.get("/status", response_model=ImpersonationStatusResponse)
async def get_impersonation_status(
    auth: CurrentAuth,
    manager: Impersonations,
) -> ImpersonationStatusResponse:
    """Current impersonation session of the caller (or of the impersonator behind the token)."""
    result = await manager.get_active_status(auth.acting_user_id)
    if isinstance(result, Err):
        raise http_error(result)

    view = result.value
    return ImpersonationStatusResponse(
        is_impersonating=view.is_impersonating,
        session_id=view.session_id,
        impersonator=_user_info(view.impersonator),
        target=_user_info(view.target),
        organization_id=view.organization_id,
        started_at=view.started_at,
        expires_at=view.expires_at,
        reason=view.reason,
    )


@router.get("/sessions", response_model=ImpersonationSessionListResponse)
async def list_active_sessions(
    auth: DirectAuth,
    manager: Impersonations,
    pagination: PageParams,
) -> ImpersonationSessionListResponse:
    """All active impersonation sessions across the platform. Super admins only."""
    if not await manager.can_manage_sessions(auth.user.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=MANAGE_SESSIONS_FORBIDDEN)

    result = await manager.get_active_sessions(pagination.page, pagination.page_size)
    if isinstance(result, Err):
        raise http_error(result)
    return _session_list(result.value)


@router.get("/history", response_model=ImpersonationSessionListResponse)
async def get_impersonation_history(
    auth: DirectAuth,
    manager: Impersonations,
    pagination: PageParams,
    as_target: Annotated[bool, Query(alias="asTarget")] = False,
) -> ImpersonationSessionListResponse:
    """
    The caller's impersonation history, newest first.

    With ``asTarget=true``, lists the sessions in which someone impersonated
    the caller instead.
    """
    result = await manager.get_history(
        auth.user.id, pagination.page, pagination.page_size, as_target=as_target
    )
    if isinstance(result, Err):
        raise http_error(result)
    return _session_list(result.value)


@router.post("/sessions/{session_id}/revoke", response_model=SuccessResponse)
async def revoke_session(
    session_id: str,
    auth: DirectAuth,
    manager: Impersonations,
) -> SuccessResponse:
    """Terminate another administrator's session. Super admins only."""
    result = await manager.revoke_session(session_id, auth.user.id)
    if isinstance(result, Err):
        raise http_error(result)

    return SuccessResponse(message="Impersonation session revoked")


@router.get("/can-impersonate", response_model=CanImpersonateResponse)
async def can_impersonate(auth: DirectAuth, manager: Impersonations) -> CanImpersonateResponse:
    """Whether the caller may impersonate anyone at all (drives UI visibility)."""
    return CanImpersonateResponse(can_impersonate=await manager.can_impersonate(auth.user.id))


@router.post("/expire", response_model=ExpireSessionsResponse)
async def expire_sessions(auth: DirectAuth, manager: Impersonations) -> ExpireSessionsResponse:
    """Run the expiry sweep now instead of waiting for the scheduled job. Super admins only."""
    if not await manager.can_manage_sessions(auth.user.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=MANAGE_SESSIONS_FORBIDDEN)

    result = await manager.expire_old_sessions()
    if isinstance(result, Err):
        raise http_error(result)

    logger.info("impersonation_manual_sweep", user_id=auth.user.id, expired_count=result.value)
    return ExpireSessionsResponse(expired_count=result.value)
