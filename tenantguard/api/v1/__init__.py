"""
API v1 Router
"""

from fastapi import APIRouter

from tenantguard.api.v1 import auth, impersonation

router = APIRouter()

# Include all endpoint routers
router.include_router(auth.router)
router.include_router(impersonation.router)

__all__ = ["router"]
