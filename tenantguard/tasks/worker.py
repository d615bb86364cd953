"""
ARQ worker configuration and job definitions.

Run worker with: arq tenantguard.tasks.worker.WorkerSettings
"""

from typing import Any

from arq import cron
from arq.connections import RedisSettings

from tenantguard.config import settings
from tenantguard.core.container import build_container
from tenantguard.core.logging import configure_logging, get_logger
from tenantguard.tasks.session_jobs import expire_impersonation_sessions_job

logger = get_logger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup - build the service container shared by every job."""
    configure_logging()
    container = build_container()
    await container.start()
    ctx["container"] = container
    logger.info("arq_worker_starting", redis_url=settings.ARQ_REDIS_URL)


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown - flush audit entries and close database connections."""
    container = ctx.get("container")
    if container is not None:
        await container.close()
    logger.info("arq_worker_shutdown")


class WorkerSettings:
    """ARQ worker configuration."""

    # Redis connection from settings
    redis_settings = RedisSettings.from_dsn(settings.ARQ_REDIS_URL)

    # Worker behavior
    max_jobs = 10
    job_timeout = 60  # A sweep that takes longer than its interval has gone wrong
    keep_result = settings.ARQ_KEEP_RESULT

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown

    # Once a minute; unique so overlapping workers do not queue duplicate sweeps
    cron_jobs = [
        cron(
            expire_impersonation_sessions_job,
            name="expire_impersonation_sessions",
            second=settings.IMPERSONATION_SWEEP_SECOND,
            unique=True,
            max_tries=3,
        ),
    ]
