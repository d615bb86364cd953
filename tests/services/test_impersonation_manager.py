"""
Tests for the impersonation session manager.

Exercises the start rules, the session state machine, the single active
session guarantee under concurrency and the expiry sweep.
"""

import asyncio
from datetime import timedelta

from structlog.testing import capture_logs

from tenantguard.config import AuditAction, AuditCategory, AuditOutcome, ImpersonationStatus
from tenantguard.core.container import ServiceContainer
from tenantguard.core.result import Err, ErrorKind, Ok
from tenantguard.core.security import ImpersonationClaims, verify_access_token
from tenantguard.services.audit import AuditDispatcher, AuditEntry
from tenantguard.services.impersonation import (
    ImpersonationManager,
    ImpersonationResult,
    StartImpersonationOptions,
    clamp_duration,
)
from tenantguard.services.role_facts import RoleFacts
from tenantguard.services.user_directory import UserDirectory
from tests.conftest import (
    INACTIVE_USER,
    MEMBER_A,
    MEMBER_B,
    ORG_A,
    ORG_ADMIN_A,
    ORG_ADMIN_A2,
    ORG_ADMIN_B,
    OTHER_SUPER_ADMIN,
    SUPER_ADMIN,
    SUPPORT_USER,
    VIEWER_A,
    AuditLog,
    BrokenSessionFactory,
    FrozenClock,
    SlowSessionFactory,
)

REASON = "support ticket #42"


def options(impersonator_id: str, target_user_id: str, **kwargs: object) -> StartImpersonationOptions:
    return StartImpersonationOptions(
        impersonator_id=impersonator_id,
        target_user_id=target_user_id,
        reason=kwargs.pop("reason", REASON),  # type: ignore[arg-type]
        **kwargs,  # type: ignore[arg-type]
    )


async def start(
    container: ServiceContainer, impersonator_id: str, target_user_id: str, **kwargs: object
) -> ImpersonationResult:
    result = await container.impersonation.start_impersonation(
        options(impersonator_id, target_user_id, **kwargs)
    )
    assert isinstance(result, Ok), result
    return result.value


class FailingSink:
    async def record(self, entry: AuditEntry) -> None:
        raise RuntimeError("audit table is locked")


class TestClampDuration:
    def test_default_is_one_hour(self) -> None:
        assert clamp_duration(None) == timedelta(hours=1)

    def test_requested_duration_within_bounds(self) -> None:
        assert clamp_duration(30 * 60 * 1000) == timedelta(minutes=30)

    def test_short_requests_are_raised_to_minimum(self) -> None:
        assert clamp_duration(1000) == timedelta(minutes=5)

    def test_long_requests_are_capped(self) -> None:
        assert clamp_duration(24 * 60 * 60 * 1000) == timedelta(hours=8)


class TestStartImpersonation:
    async def test_super_admin_starts_session(
        self, container: ServiceContainer, clock: FrozenClock, audit_log: AuditLog
    ) -> None:
        result = await start(container, SUPER_ADMIN, MEMBER_A)

        assert result.expires_at == clock.now() + timedelta(hours=1)
        assert result.target_user.id == MEMBER_A

        session = await container.store.find_session_by_id(result.session_id)
        assert session is not None
        assert session.status == ImpersonationStatus.ACTIVE
        assert session.impersonator_id == SUPER_ADMIN
        assert session.target_user_id == MEMBER_A
        assert session.reason == REASON
        assert session.expires_at - session.started_at == timedelta(milliseconds=3_600_000)

        claims = verify_access_token(result.access_token)
        assert claims is not None
        assert claims.sub == MEMBER_A
        assert claims.is_impersonation
        assert claims.impersonation == ImpersonationClaims(
            impersonator_id=SUPER_ADMIN, session_id=result.session_id
        )
        assert claims.expires_at == result.expires_at

        entries = await audit_log.entries(AuditAction.IMPERSONATION_STARTED)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.category == AuditCategory.AUTHENTICATION
        assert entry.user_id == SUPER_ADMIN
        assert entry.resource_id == MEMBER_A
        assert entry.details is not None
        assert entry.details["reason"] == REASON
        assert entry.details["target_email"] == f"{MEMBER_A}@example.com"
        assert entry.details["session_id"] == result.session_id
        assert entry.details["duration_ms"] == 3_600_000

    async def test_requested_duration_is_clamped(self, container: ServiceContainer, clock: FrozenClock) -> None:
        result = await start(container, SUPER_ADMIN, MEMBER_A, duration_ms=10 * 60 * 60 * 1000)
        assert result.expires_at == clock.now() + timedelta(hours=8)

    async def test_second_start_is_rejected(self, container: ServiceContainer) -> None:
        first = await start(container, SUPER_ADMIN, MEMBER_A)

        second = await container.impersonation.start_impersonation(options(SUPER_ADMIN, VIEWER_A))

        assert isinstance(second, Err)
        assert second.kind == ErrorKind.ALREADY_IMPERSONATING
        assert second.message == "You already have an active impersonation session. End it first."
        assert second.context == {"session_id": first.session_id}

    async def test_concurrent_starts_create_one_session(self, container: ServiceContainer) -> None:
        targets = [MEMBER_A, VIEWER_A, MEMBER_B, ORG_ADMIN_A, SUPPORT_USER]

        results = await asyncio.gather(
            *(container.impersonation.start_impersonation(options(SUPER_ADMIN, t)) for t in targets)
        )

        created = [r for r in results if isinstance(r, Ok)]
        rejected = [r for r in results if isinstance(r, Err)]
        assert len(created) == 1
        assert len(rejected) == 4
        assert all(r.kind == ErrorKind.ALREADY_IMPERSONATING for r in rejected)

        page = await container.impersonation.get_active_sessions()
        assert isinstance(page, Ok)
        assert page.value.total == 1

    async def test_stale_active_session_is_expired_on_start(
        self, container: ServiceContainer, clock: FrozenClock
    ) -> None:
        stale = await start(container, SUPER_ADMIN, MEMBER_A, duration_ms=5 * 60 * 1000)
        clock.advance(minutes=6)

        fresh = await start(container, SUPER_ADMIN, VIEWER_A)

        old = await container.store.find_session_by_id(stale.session_id)
        assert old is not None
        assert old.status == ImpersonationStatus.EXPIRED
        assert old.ended_at == clock.now()
        assert fresh.session_id != stale.session_id

    async def test_unknown_target(self, container: ServiceContainer, audit_log: AuditLog) -> None:
        result = await container.impersonation.start_impersonation(options(SUPER_ADMIN, "nobody"))

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.NOT_FOUND
        assert result.message == "Target user not found"
        assert len(await audit_log.entries(AuditAction.IMPERSONATION_DENIED)) == 1

    async def test_inactive_target_is_refused(self, container: ServiceContainer) -> None:
        """A suspended user could never use the minted token, so no session is opened."""
        result = await container.impersonation.start_impersonation(options(SUPER_ADMIN, INACTIVE_USER))

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.FORBIDDEN
        assert result.message == "Cannot impersonate an inactive user"
        assert await container.store.find_active_session_by_impersonator(SUPER_ADMIN) is None
        assert isinstance(await container.impersonation.start_impersonation(options(SUPER_ADMIN, MEMBER_A)), Ok)

    async def test_users_without_admin_rights_are_refused(self, container: ServiceContainer) -> None:
        for actor in (MEMBER_A, SUPPORT_USER):
            result = await container.impersonation.start_impersonation(options(actor, VIEWER_A))
            assert isinstance(result, Err)
            assert result.kind == ErrorKind.FORBIDDEN
            assert result.message == "You do not have permission to impersonate users"

    async def test_self_impersonation_is_refused(self, container: ServiceContainer) -> None:
        result = await container.impersonation.start_impersonation(options(SUPER_ADMIN, SUPER_ADMIN))
        assert isinstance(result, Err)
        assert result.message == "You cannot impersonate yourself"

    async def test_super_admins_are_protected_from_every_actor(
        self, container: ServiceContainer, audit_log: AuditLog
    ) -> None:
        for actor in (SUPER_ADMIN, ORG_ADMIN_A):
            result = await container.impersonation.start_impersonation(options(actor, OTHER_SUPER_ADMIN))
            assert isinstance(result, Err)
            assert result.kind == ErrorKind.FORBIDDEN
            assert result.message == "Cannot impersonate Super Admin users"

        denied = await audit_log.entries(AuditAction.IMPERSONATION_DENIED)
        assert len(denied) == 2
        assert all(entry.category == AuditCategory.AUTHORIZATION for entry in denied)
        assert all(entry.outcome == AuditOutcome.FAILURE for entry in denied)

    async def test_org_admin_reaches_members_of_own_organization(self, container: ServiceContainer) -> None:
        result = await start(container, ORG_ADMIN_A, MEMBER_A, organization_id=ORG_A)
        assert result.target_user.id == MEMBER_A

    async def test_org_admin_cannot_cross_organizations(self, container: ServiceContainer) -> None:
        result = await container.impersonation.start_impersonation(options(ORG_ADMIN_A, MEMBER_B))
        assert isinstance(result, Err)
        assert result.message == "You can only impersonate users in organizations you administer"

        allowed = await container.impersonation.start_impersonation(options(ORG_ADMIN_B, MEMBER_B))
        assert isinstance(allowed, Ok)

    async def test_org_admin_cannot_impersonate_privileged_users(self, container: ServiceContainer) -> None:
        for target in (ORG_ADMIN_A2, SUPPORT_USER):
            result = await container.impersonation.start_impersonation(options(ORG_ADMIN_A, target))
            assert isinstance(result, Err)
            assert result.message == "Organization admins can only impersonate regular members"

    async def test_audit_failure_does_not_fail_the_start(self, container: ServiceContainer) -> None:
        dispatcher = AuditDispatcher(FailingSink(), maxsize=10)
        dispatcher.start()
        manager = ImpersonationManager(
            container.store, container.role_facts, container.users, dispatcher, container.clock
        )

        with capture_logs() as logs:
            result = await manager.start_impersonation(options(SUPER_ADMIN, MEMBER_A))
            await dispatcher.drain()
        await dispatcher.stop()

        assert isinstance(result, Ok)
        session = await container.store.find_session_by_id(result.value.session_id)
        assert session is not None
        assert session.status == ImpersonationStatus.ACTIVE
        failures = [log for log in logs if log["event"] == "audit_write_failed"]
        assert len(failures) == 1
        assert failures[0]["log_level"] == "error"


class TestEndImpersonation:
    async def test_end_current_session(
        self, container: ServiceContainer, clock: FrozenClock, audit_log: AuditLog
    ) -> None:
        started = await start(container, SUPER_ADMIN, MEMBER_A)
        clock.advance(minutes=10)

        result = await container.impersonation.end_impersonation(SUPER_ADMIN)

        assert isinstance(result, Ok)
        assert result.value.status == ImpersonationStatus.ENDED
        stored = await container.store.find_session_by_id(started.session_id)
        assert stored is not None
        assert stored.status == ImpersonationStatus.ENDED
        assert stored.ended_at == clock.now()
        assert stored.active_impersonator_id is None

        entries = await audit_log.entries(AuditAction.IMPERSONATION_ENDED)
        assert entries[0].details == {"session_id": started.session_id, "duration_ms": 600_000}

    async def test_full_lifecycle(self, container: ServiceContainer) -> None:
        manager = container.impersonation
        started = await start(container, SUPER_ADMIN, MEMBER_A)

        again = await manager.start_impersonation(options(SUPER_ADMIN, MEMBER_A))
        assert isinstance(again, Err)
        assert again.kind == ErrorKind.ALREADY_IMPERSONATING

        assert isinstance(await manager.end_impersonation(SUPER_ADMIN), Ok)

        repeat = await manager.end_impersonation(SUPER_ADMIN, started.session_id)
        assert isinstance(repeat, Err)
        assert repeat.kind == ErrorKind.INVALID_STATE
        assert repeat.message == "Session is not active (status: ended)"

        current_again = await manager.end_impersonation(SUPER_ADMIN)
        assert isinstance(current_again, Err)
        assert current_again.kind == ErrorKind.INVALID_STATE
        assert current_again.message == "Session is not active (status: ended)"
        assert current_again.context == {
            "session_id": started.session_id,
            "status": ImpersonationStatus.ENDED,
        }

        # Ending frees the slot for a new session
        assert isinstance(await manager.start_impersonation(options(SUPER_ADMIN, VIEWER_A)), Ok)

    async def test_ending_without_any_session_is_not_found(self, container: ServiceContainer) -> None:
        result = await container.impersonation.end_impersonation(ORG_ADMIN_B)

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.NOT_FOUND
        assert result.message == "No active impersonation session"

    async def test_terminal_sessions_are_never_touched_again(
        self, container: ServiceContainer, clock: FrozenClock
    ) -> None:
        manager = container.impersonation
        started = await start(container, ORG_ADMIN_A, MEMBER_A)
        assert isinstance(await manager.revoke_session(started.session_id, SUPER_ADMIN), Ok)
        revoked = await container.store.find_session_by_id(started.session_id)
        assert revoked is not None
        ended_at = revoked.ended_at
        clock.advance(minutes=1)

        end = await manager.end_impersonation(ORG_ADMIN_A, started.session_id)
        revoke = await manager.revoke_session(started.session_id, SUPER_ADMIN)

        for result in (end, revoke):
            assert isinstance(result, Err)
            assert result.kind == ErrorKind.INVALID_STATE
            assert result.message == "Session is not active (status: revoked)"
        after = await container.store.find_session_by_id(started.session_id)
        assert after is not None
        assert after.status == ImpersonationStatus.REVOKED
        assert after.ended_at == ended_at

    async def test_someone_elses_session_is_not_found(self, container: ServiceContainer) -> None:
        started = await start(container, ORG_ADMIN_A, MEMBER_A)

        result = await container.impersonation.end_impersonation(SUPER_ADMIN, started.session_id)

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.NOT_FOUND
        assert result.message == "Impersonation session not found"

    async def test_end_racing_the_sweep_has_one_winner(
        self, container: ServiceContainer, clock: FrozenClock
    ) -> None:
        started = await start(container, SUPER_ADMIN, MEMBER_A, duration_ms=5 * 60 * 1000)
        clock.advance(minutes=5)

        end, sweep = await asyncio.gather(
            container.impersonation.end_impersonation(SUPER_ADMIN, started.session_id),
            container.impersonation.expire_old_sessions(),
        )

        assert isinstance(sweep, Ok)
        if isinstance(end, Ok):
            assert sweep.value == 0
        else:
            assert end.kind == ErrorKind.INVALID_STATE
            assert sweep.value == 1
        stored = await container.store.find_session_by_id(started.session_id)
        assert stored is not None
        assert stored.status in ImpersonationStatus.TERMINAL


class TestRevokeSession:
    async def test_super_admin_revokes_any_session(
        self, container: ServiceContainer, audit_log: AuditLog
    ) -> None:
        started = await start(container, ORG_ADMIN_A, MEMBER_A)

        result = await container.impersonation.revoke_session(started.session_id, SUPER_ADMIN)

        assert isinstance(result, Ok)
        assert result.value.status == ImpersonationStatus.REVOKED
        entries = await audit_log.entries(AuditAction.IMPERSONATION_REVOKED)
        assert entries[0].user_id == SUPER_ADMIN
        assert entries[0].details == {
            "original_impersonator_id": ORG_ADMIN_A,
            "revoker_id": SUPER_ADMIN,
            "target_user_id": MEMBER_A,
        }

        # The impersonator's slot is free again
        assert isinstance(
            await container.impersonation.start_impersonation(options(ORG_ADMIN_A, VIEWER_A)), Ok
        )

    async def test_org_admins_cannot_revoke(self, container: ServiceContainer) -> None:
        started = await start(container, ORG_ADMIN_A, MEMBER_A)

        result = await container.impersonation.revoke_session(started.session_id, ORG_ADMIN_A2)

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.FORBIDDEN
        assert result.message == "Only super admins can revoke impersonation sessions"

    async def test_unknown_session(self, container: ServiceContainer) -> None:
        result = await container.impersonation.revoke_session("missing", SUPER_ADMIN)
        assert isinstance(result, Err)
        assert result.kind == ErrorKind.NOT_FOUND


class TestExpireOldSessions:
    async def test_sweep_is_idempotent(
        self, container: ServiceContainer, clock: FrozenClock, audit_log: AuditLog
    ) -> None:
        manager = container.impersonation
        await start(container, SUPER_ADMIN, MEMBER_A, duration_ms=5 * 60 * 1000)
        await start(container, ORG_ADMIN_A, VIEWER_A, duration_ms=5 * 60 * 1000)
        live = await start(container, ORG_ADMIN_B, MEMBER_B, duration_ms=60 * 60 * 1000)
        clock.advance(minutes=5)

        assert await manager.expire_old_sessions() == Ok(2)
        assert await manager.expire_old_sessions() == Ok(0)

        still_live = await container.store.find_session_by_id(live.session_id)
        assert still_live is not None
        assert still_live.status == ImpersonationStatus.ACTIVE

        sweeps = await audit_log.entries(AuditAction.IMPERSONATION_EXPIRED_SWEEP)
        assert len(sweeps) == 1
        assert sweeps[0].category == AuditCategory.SYSTEM
        assert sweeps[0].details is not None
        assert sweeps[0].details["expired_count"] == 2


class TestReadViews:
    async def test_validate_session_claim(self, container: ServiceContainer, clock: FrozenClock) -> None:
        manager = container.impersonation
        started = await start(container, SUPER_ADMIN, MEMBER_A, duration_ms=30 * 60 * 1000)

        assert await manager.validate_session_claim(started.session_id, SUPER_ADMIN, MEMBER_A) == Ok(True)
        assert await manager.validate_session_claim(started.session_id, SUPER_ADMIN, VIEWER_A) == Ok(False)
        assert await manager.validate_session_claim(started.session_id, ORG_ADMIN_A, MEMBER_A) == Ok(False)
        assert await manager.validate_session_claim("missing", SUPER_ADMIN, MEMBER_A) == Ok(False)

        clock.advance(minutes=30)
        assert await manager.validate_session_claim(started.session_id, SUPER_ADMIN, MEMBER_A) == Ok(False)

    async def test_active_status(self, container: ServiceContainer, clock: FrozenClock) -> None:
        manager = container.impersonation
        started = await start(container, SUPER_ADMIN, MEMBER_A, organization_id=ORG_A)

        status = await manager.get_active_status(SUPER_ADMIN)

        assert isinstance(status, Ok)
        view = status.value
        assert view.is_impersonating
        assert view.session_id == started.session_id
        assert view.impersonator is not None
        assert view.impersonator.id == SUPER_ADMIN
        assert view.target is not None
        assert view.target.email == f"{MEMBER_A}@example.com"
        assert view.organization_id == ORG_A
        assert view.reason == REASON

        clock.advance(hours=1)
        expired = await manager.get_active_status(SUPER_ADMIN)
        assert isinstance(expired, Ok)
        assert not expired.value.is_impersonating

    async def test_not_impersonating(self, container: ServiceContainer) -> None:
        status = await container.impersonation.get_active_status(MEMBER_A)
        assert isinstance(status, Ok)
        assert not status.value.is_impersonating
        assert status.value.session_id is None

    async def test_history_for_impersonator_and_target(
        self, container: ServiceContainer, clock: FrozenClock
    ) -> None:
        manager = container.impersonation
        first = await start(container, SUPER_ADMIN, MEMBER_A)
        assert isinstance(await manager.end_impersonation(SUPER_ADMIN), Ok)
        clock.advance(seconds=1)
        second = await start(container, SUPER_ADMIN, VIEWER_A)
        assert isinstance(await manager.end_impersonation(SUPER_ADMIN), Ok)
        clock.advance(seconds=1)
        await start(container, ORG_ADMIN_A, MEMBER_A)

        mine = await manager.get_history(SUPER_ADMIN)
        assert isinstance(mine, Ok)
        assert mine.value.total == 2
        assert [view.session.id for view in mine.value.items] == [second.session_id, first.session_id]

        about_me = await manager.get_history(MEMBER_A, as_target=True)
        assert isinstance(about_me, Ok)
        assert about_me.value.total == 2
        assert {view.impersonator.id for view in about_me.value.items if view.impersonator} == {
            SUPER_ADMIN,
            ORG_ADMIN_A,
        }

        second_page = await manager.get_history(SUPER_ADMIN, page=2, page_size=1)
        assert isinstance(second_page, Ok)
        assert second_page.value.total == 2
        assert [view.session.id for view in second_page.value.items] == [first.session_id]

    async def test_active_sessions_include_both_parties(self, container: ServiceContainer) -> None:
        await start(container, SUPER_ADMIN, VIEWER_A)
        await start(container, ORG_ADMIN_A, MEMBER_A)

        page = await container.impersonation.get_active_sessions(page=1, page_size=10)

        assert isinstance(page, Ok)
        assert page.value.total == 2
        pairs = {
            (view.impersonator.id, view.target.id)
            for view in page.value.items
            if view.impersonator and view.target
        }
        assert pairs == {(SUPER_ADMIN, VIEWER_A), (ORG_ADMIN_A, MEMBER_A)}

    async def test_permission_probes(self, container: ServiceContainer) -> None:
        manager = container.impersonation
        assert await manager.can_impersonate(SUPER_ADMIN)
        assert await manager.can_impersonate(ORG_ADMIN_A)
        assert not await manager.can_impersonate(MEMBER_A)
        assert not await manager.can_impersonate(SUPPORT_USER)

        assert await manager.can_manage_sessions(SUPER_ADMIN)
        assert not await manager.can_manage_sessions(ORG_ADMIN_A)


def manager_with(
    container: ServiceContainer,
    role_facts: RoleFacts | None = None,
    users: UserDirectory | None = None,
) -> ImpersonationManager:
    return ImpersonationManager(
        container.store,
        role_facts or container.role_facts,
        users or container.users,
        container.audit,
        container.clock,
    )


class TestStoreOutages:
    """Role and user lookups share the store's deadline and fail closed."""

    async def test_unreachable_role_facts_make_start_unavailable(self, container: ServiceContainer) -> None:
        factory = BrokenSessionFactory()
        manager = manager_with(container, role_facts=RoleFacts(factory))  # type: ignore[arg-type]

        result = await manager.start_impersonation(options(SUPER_ADMIN, MEMBER_A))

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.UNAVAILABLE
        assert factory.calls == 2
        assert await container.store.find_active_session_by_impersonator(SUPER_ADMIN) is None

    async def test_hung_role_facts_hit_the_deadline(self, container: ServiceContainer) -> None:
        manager = manager_with(
            container, role_facts=RoleFacts(SlowSessionFactory(), timeout_seconds=0.05)  # type: ignore[arg-type]
        )

        result = await asyncio.wait_for(manager.start_impersonation(options(SUPER_ADMIN, MEMBER_A)), timeout=2)

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.UNAVAILABLE

    async def test_unreachable_user_directory_makes_start_unavailable(self, container: ServiceContainer) -> None:
        manager = manager_with(container, users=UserDirectory(BrokenSessionFactory()))  # type: ignore[arg-type]

        result = await manager.start_impersonation(options(SUPER_ADMIN, MEMBER_A))

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.UNAVAILABLE

    async def test_read_views_are_unavailable_when_enrichment_fails(self, container: ServiceContainer) -> None:
        await start(container, SUPER_ADMIN, MEMBER_A)
        manager = manager_with(container, users=UserDirectory(BrokenSessionFactory()))  # type: ignore[arg-type]

        status = await manager.get_active_status(SUPER_ADMIN)
        sessions = await manager.get_active_sessions()
        history = await manager.get_history(SUPER_ADMIN)

        for result in (status, sessions, history):
            assert isinstance(result, Err)
            assert result.kind == ErrorKind.UNAVAILABLE
