"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite database file (via aiosqlite) so conditional
updates, unique indexes and concurrent transactions behave as they do
against the production store, plus its own service container and a clock it
can move forward.
"""

import os

# Settings are read at import time; configure them before importing tenantguard
os.environ.setdefault("SECRET_KEY", "test-secret-key-do-not-use-in-production-0123456789")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./tenantguard-test.db")
os.environ.setdefault("ENVIRONMENT", "development")

import asyncio  # noqa: E402
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable  # noqa: E402
from contextlib import asynccontextmanager  # noqa: E402
from dataclasses import dataclass  # noqa: E402
from datetime import UTC, datetime, timedelta  # noqa: E402
from pathlib import Path  # noqa: E402

import pytest  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.exc import OperationalError  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import tenantguard.models  # noqa: E402,F401  (registers every table)
from tenantguard.config import MembershipRole, SystemRole, UserStatus  # noqa: E402
from tenantguard.core.clock import Clock  # noqa: E402
from tenantguard.core.container import ServiceContainer, build_container  # noqa: E402
from tenantguard.core.security import get_password_hash  # noqa: E402
from tenantguard.main import create_app  # noqa: E402
from tenantguard.models.audit_log import AuditLogs  # noqa: E402
from tenantguard.models.organization import (  # noqa: E402
    OrganizationMemberships,
    Organizations,
    SystemAdmins,
)
from tenantguard.models.user import Users  # noqa: E402

TEST_PASSWORD = "CorrectHorseBattery1!"

# Organizations
ORG_A = "org-a"
ORG_B = "org-b"

# Users
SUPER_ADMIN = "admin-1"  # platform super admin
OTHER_SUPER_ADMIN = "admin-2"  # another super admin (protected target)
ORG_ADMIN_A = "orgadmin-a"  # owner of org A
ORG_ADMIN_A2 = "orgadmin-a2"  # admin of org A (an org admin target)
ORG_ADMIN_B = "orgadmin-b"  # admin of org B
MEMBER_A = "user-7"  # member of org A
VIEWER_A = "viewer-a"  # viewer in org A
MEMBER_B = "member-b"  # member of org B
SUPPORT_USER = "support-1"  # system support role, no org admin rights
INACTIVE_USER = "inactive-1"  # suspended member of org A


class FrozenClock(Clock):
    """Clock whose time only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> datetime:
        self._now += timedelta(**kwargs)
        return self._now


class SlowSessionFactory:
    """Stands in for a session factory whose connection never answers."""

    def __init__(self) -> None:
        self.calls = 0

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[None]:
        self.calls += 1
        await asyncio.sleep(10)
        yield None


class BrokenSessionFactory:
    """Stands in for a session factory whose database is unreachable."""

    def __init__(self) -> None:
        self.calls = 0

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[None]:
        self.calls += 1
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))
        yield None  # pragma: no cover


@pytest.fixture
def clock() -> FrozenClock:
    # Start at the real time: PyJWT checks exp and iat against the wall clock
    return FrozenClock(datetime.now(UTC).replace(tzinfo=None, microsecond=0))


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'identity.db'}"


async def _seed(container: ServiceContainer, now: datetime) -> None:
    password_hash = get_password_hash(TEST_PASSWORD, rounds=4)

    def user(user_id: str, first_name: str, status: str = UserStatus.ACTIVE) -> Users:
        return Users(
            id=user_id,
            email=f"{user_id}@example.com",
            first_name=first_name,
            last_name="Tester",
            password_hash=password_hash,
            status=status,
            created_at=now,
        )

    async with container.session_factory() as session:
        session.add_all(
            [
                Organizations(id=ORG_A, name="Acme"),
                Organizations(id=ORG_B, name="Globex"),
                user(SUPER_ADMIN, "Ada"),
                user(OTHER_SUPER_ADMIN, "Grace"),
                user(ORG_ADMIN_A, "Olive"),
                user(ORG_ADMIN_A2, "Oscar"),
                user(ORG_ADMIN_B, "Otto"),
                user(MEMBER_A, "Mia"),
                user(VIEWER_A, "Vera"),
                user(MEMBER_B, "Max"),
                user(SUPPORT_USER, "Sam"),
                user(INACTIVE_USER, "Ian", status=UserStatus.SUSPENDED),
            ]
        )
        await session.flush()
        session.add_all(
            [
                SystemAdmins(user_id=SUPER_ADMIN, role=SystemRole.SUPER_ADMIN),
                SystemAdmins(user_id=OTHER_SUPER_ADMIN, role=SystemRole.SUPER_ADMIN),
                SystemAdmins(user_id=SUPPORT_USER, role=SystemRole.SUPPORT),
                OrganizationMemberships(user_id=ORG_ADMIN_A, organization_id=ORG_A, role=MembershipRole.OWNER),
                OrganizationMemberships(user_id=ORG_ADMIN_A2, organization_id=ORG_A, role=MembershipRole.ADMIN),
                OrganizationMemberships(user_id=ORG_ADMIN_B, organization_id=ORG_B, role=MembershipRole.ADMIN),
                OrganizationMemberships(user_id=MEMBER_A, organization_id=ORG_A, role=MembershipRole.MEMBER),
                OrganizationMemberships(user_id=VIEWER_A, organization_id=ORG_A, role=MembershipRole.VIEWER),
                OrganizationMemberships(user_id=MEMBER_B, organization_id=ORG_B, role=MembershipRole.MEMBER),
                OrganizationMemberships(user_id=SUPPORT_USER, organization_id=ORG_A, role=MembershipRole.MEMBER),
                OrganizationMemberships(user_id=INACTIVE_USER, organization_id=ORG_A, role=MembershipRole.MEMBER),
            ]
        )
        await session.commit()


@pytest.fixture
async def container(database_url: str, clock: FrozenClock) -> AsyncGenerator[ServiceContainer, None]:
    """
    Service container over a fresh, seeded database.

    The audit dispatcher is running; call ``container.audit.drain()`` before
    asserting on audit rows.
    """
    services = build_container(database_url, clock=clock)
    async with services.engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    await _seed(services, clock.now())
    await services.start()

    yield services

    await services.close()


@pytest.fixture
def app(container: ServiceContainer) -> FastAPI:
    """FastAPI app wired to the test container."""
    return create_app(container)


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """
    Create async HTTP client for testing API endpoints.

    Usage:
        async def test_endpoint(client):
            response = await client.get("/api/v1/auth/me")
            assert response.status_code == 401
    """
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def token_for(container: ServiceContainer) -> Callable[[str], Awaitable[str]]:
    """Mint a regular access token for a seeded user."""

    async def mint(user_id: str) -> str:
        user = await container.users.find_by_id(user_id)
        assert user is not None
        return container.refresh_tokens.mint_access_token(user)

    return mint


@pytest.fixture
def auth_headers(token_for: Callable[[str], Awaitable[str]]) -> Callable[[str], Awaitable[dict[str, str]]]:
    """Authorization headers carrying a regular access token for a seeded user."""

    async def headers(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {await token_for(user_id)}"}

    return headers


@dataclass
class AuditLog:
    """Reads back what the audit dispatcher wrote."""

    container: ServiceContainer

    async def entries(self, action: str | None = None) -> list[AuditLogs]:
        await self.container.audit.drain()
        async with self.container.session_factory() as session:
            query = select(AuditLogs).order_by(AuditLogs.id)  # type: ignore[arg-type]
            if action is not None:
                query = query.where(AuditLogs.action == action)  # type: ignore[arg-type]
            result = await session.execute(query)
            return list(result.scalars().all())


@pytest.fixture
def audit_log(container: ServiceContainer) -> AuditLog:
    return AuditLog(container)
