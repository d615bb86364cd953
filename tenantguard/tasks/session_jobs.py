"""Impersonation session background jobs for arq worker."""

from typing import Any

from arq import Retry

from tenantguard.core.container import ServiceContainer
from tenantguard.core.logging import bind_context, get_logger, unbind_context
from tenantguard.core.result import Err

logger = get_logger(__name__)


async def expire_impersonation_sessions_job(ctx: dict[str, Any]) -> dict[str, int]:
    """
    Move active impersonation sessions past their expiry to ``expired``.

    Runs once a minute from the worker's cron schedule. Overlapping runs
    (several workers, or a manual sweep from the API) are harmless: each row
    transitions at most once.

    Args:
        ctx: ARQ context dict (holds the service container)

    Returns:
        dict with the number of sessions expired

    Raises:
        Retry: If the credential store is unavailable
    """
    bind_context(task="impersonation_expiry_sweep")
    container: ServiceContainer = ctx["container"]

    try:
        result = await container.impersonation.expire_old_sessions()
        if isinstance(result, Err):
            logger.error("impersonation_expiry_sweep_failed", error=result.message)
            raise Retry(defer=ctx.get("job_try", 1) * 5)

        logger.info("impersonation_expiry_sweep_completed", expired_count=result.value)
        return {"expired": result.value}
    finally:
        unbind_context("task")
