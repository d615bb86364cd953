"""
Shared route dependencies.

- Access to the per-process service container on ``app.state``
- Common query parameter models used with Depends()
"""

from typing import Annotated

from fastapi import Depends, Query, Request
from pydantic import BaseModel, Field

from tenantguard.config import settings
from tenantguard.core.container import ServiceContainer
from tenantguard.services.impersonation import ImpersonationManager
from tenantguard.services.refresh_tokens import RefreshTokenEngine


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container  # type: ignore[no-any-return]


def get_refresh_token_engine(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> RefreshTokenEngine:
    return container.refresh_tokens


def get_impersonation_manager(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> ImpersonationManager:
    return container.impersonation


Container = Annotated[ServiceContainer, Depends(get_container)]
TokenEngine = Annotated[RefreshTokenEngine, Depends(get_refresh_token_engine)]
Impersonations = Annotated[ImpersonationManager, Depends(get_impersonation_manager)]


class PaginationParams(BaseModel):
    """Common pagination query parameters."""

    page: int = Field(default=1, ge=1, description="Page number")
    page_size: int = Field(default=settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE)


def get_pagination(
    page: Annotated[int, Query(ge=1, description="Page number")] = 1,
    page_size: Annotated[
        int, Query(alias="pageSize", ge=1, le=settings.MAX_PAGE_SIZE, description="Items per page")
    ] = settings.DEFAULT_PAGE_SIZE,
) -> PaginationParams:
    return PaginationParams(page=page, page_size=page_size)


PageParams = Annotated[PaginationParams, Depends(get_pagination)]
