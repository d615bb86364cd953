"""
Service container.

Every identity component is constructed exactly once per process and shared
by reference. The API keeps the container on ``app.state``; the arq worker
keeps it in the job context. Nothing is a module-level singleton, so tests
can build an isolated container against their own database and clock.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tenantguard.core.clock import Clock
from tenantguard.core.database import create_engine, create_session_factory
from tenantguard.services.audit import AuditDispatcher, DatabaseAuditSink
from tenantguard.services.credential_store import CredentialStore
from tenantguard.services.impersonation import ImpersonationManager
from tenantguard.services.refresh_tokens import RefreshTokenEngine
from tenantguard.services.role_facts import RoleFacts
from tenantguard.services.user_directory import UserDirectory


@dataclass
class ServiceContainer:
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    clock: Clock
    store: CredentialStore
    users: UserDirectory
    role_facts: RoleFacts
    audit: AuditDispatcher
    refresh_tokens: RefreshTokenEngine
    impersonation: ImpersonationManager

    async def start(self) -> None:
        self.audit.start()

    async def close(self) -> None:
        """Flush pending audit entries, then release database connections."""
        await self.audit.stop()
        await self.engine.dispose()


def build_container(
    database_url: str | None = None,
    clock: Clock | None = None,
    store_timeout_seconds: float | None = None,
    audit_queue_size: int | None = None,
) -> ServiceContainer:
    """Wire up every component against one engine."""
    clock = clock or Clock()
    engine = create_engine(database_url)
    session_factory = create_session_factory(engine)

    store = CredentialStore(session_factory, timeout_seconds=store_timeout_seconds)
    users = UserDirectory(session_factory, timeout_seconds=store_timeout_seconds)
    role_facts = RoleFacts(session_factory, timeout_seconds=store_timeout_seconds)
    audit = AuditDispatcher(DatabaseAuditSink(session_factory, clock), maxsize=audit_queue_size)

    return ServiceContainer(
        engine=engine,
        session_factory=session_factory,
        clock=clock,
        store=store,
        users=users,
        role_facts=role_facts,
        audit=audit,
        refresh_tokens=RefreshTokenEngine(store, users, audit, clock),
        impersonation=ImpersonationManager(store, role_facts, users, audit, clock),
    )
