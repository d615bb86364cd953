"""
Impersonation session manager.

Lets a privileged operator obtain an access token for another user under the
authorization rules in ``tenantguard.services.authorization``.

Session lifecycle (one way, terminal states are final):

    active -> ended     impersonator ends the session
    active -> revoked   a super admin terminates someone else's session
    active -> expired   the periodic sweep, or a new start finding a stale row

Every transition is a conditional update on ``status='active'``, so when end,
revoke and the sweep race on one row exactly one of them wins and the others
get INVALID_STATE. At most one active session per impersonator is enforced by
a unique index, so two concurrent starts cannot both succeed.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from tenantguard.config import AuditAction, AuditCategory, AuditOutcome, ImpersonationStatus, settings
from tenantguard.core.clock import Clock
from tenantguard.core.logging import get_logger
from tenantguard.core.result import Err, ErrorKind, Ok, Result
from tenantguard.core.security import ImpersonationClaims, create_access_token
from tenantguard.models.impersonation_session import ImpersonationSessions
from tenantguard.models.user import Users
from tenantguard.services import authorization
from tenantguard.services.audit import AuditDispatcher, AuditEntry
from tenantguard.services.credential_store import (
    ActiveSessionConflictError,
    CredentialStore,
    StoreUnavailableError,
)
from tenantguard.services.role_facts import RoleFacts
from tenantguard.services.user_directory import UserDirectory

logger = get_logger(__name__)

ALREADY_IMPERSONATING_MESSAGE = "You already have an active impersonation session. End it first."
SESSION_NOT_FOUND_MESSAGE = "Impersonation session not found"
INACTIVE_TARGET_MESSAGE = "Cannot impersonate an inactive user"
UNAVAILABLE_MESSAGE = "Credential store unavailable, please retry"


@dataclass(frozen=True)
class StartImpersonationOptions:
    impersonator_id: str
    target_user_id: str
    reason: str
    organization_id: str | None = None
    duration_ms: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class ImpersonationResult:
    session_id: str
    access_token: str
    expires_at: datetime
    target_user: Users


@dataclass(frozen=True)
class ImpersonationStatusView:
    """What the impersonation banner shows for the current impersonator."""

    is_impersonating: bool
    session_id: str | None = None
    impersonator: Users | None = None
    target: Users | None = None
    organization_id: str | None = None
    started_at: datetime | None = None
    expires_at: datetime | None = None
    reason: str | None = None


@dataclass(frozen=True)
class SessionView:
    """A session row with the display details of both parties."""

    session: ImpersonationSessions
    impersonator: Users | None = None
    target: Users | None = None


@dataclass(frozen=True)
class SessionPage:
    items: list[SessionView] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = settings.DEFAULT_PAGE_SIZE


def clamp_duration(duration_ms: int | None) -> timedelta:
    """Requested session length, defaulted and clamped to the configured bounds."""
    minimum = timedelta(minutes=settings.IMPERSONATION_MIN_DURATION_MINUTES)
    maximum = timedelta(minutes=settings.IMPERSONATION_MAX_DURATION_MINUTES)
    if duration_ms is None:
        requested = timedelta(minutes=settings.IMPERSONATION_DEFAULT_DURATION_MINUTES)
    else:
        requested = timedelta(milliseconds=duration_ms)
    return max(minimum, min(requested, maximum))


def _duration_ms(started_at: datetime, ended_at: datetime) -> int:
    return int((ended_at - started_at).total_seconds() * 1000)


class ImpersonationManager:
    def __init__(
        self,
        store: CredentialStore,
        role_facts: RoleFacts,
        users: UserDirectory,
        audit: AuditDispatcher,
        clock: Clock,
    ) -> None:
        self._store = store
        self._role_facts = role_facts
        self._users = users
        self._audit = audit
        self._clock = clock

    # ===== Permission checks =====

    async def can_impersonate(self, user_id: str) -> bool:
        return authorization.can_impersonate(await self._role_facts.get_actor_facts(user_id))

    async def can_manage_sessions(self, user_id: str) -> bool:
        return authorization.can_manage_sessions(await self._role_facts.get_actor_facts(user_id))

    # ===== Start =====

    async def start_impersonation(self, options: StartImpersonationOptions) -> Result[ImpersonationResult]:
        try:
            return await self._start(options)
        except StoreUnavailableError:
            return Err(ErrorKind.UNAVAILABLE, UNAVAILABLE_MESSAGE)

    async def _start(self, options: StartImpersonationOptions) -> Result[ImpersonationResult]:
        actor = await self._role_facts.get_actor_facts(options.impersonator_id)
        if not authorization.can_impersonate(actor):
            return self._denied(options, Err(ErrorKind.FORBIDDEN, authorization.NOT_PERMITTED))

        if options.impersonator_id == options.target_user_id:
            return self._denied(options, Err(ErrorKind.FORBIDDEN, authorization.SELF_IMPERSONATION))

        target_user = await self._users.find_by_id(options.target_user_id)
        if target_user is None:
            return self._denied(options, Err(ErrorKind.NOT_FOUND, "Target user not found"))

        if not target_user.is_active:
            return self._denied(options, Err(ErrorKind.FORBIDDEN, INACTIVE_TARGET_MESSAGE))

        target = await self._role_facts.get_target_facts(options.target_user_id)
        decision = authorization.evaluate_start(actor, target, options.organization_id)
        if isinstance(decision, Err):
            return self._denied(options, decision)

        now = self._clock.now()
        existing = await self._store.find_active_session_by_impersonator(options.impersonator_id)
        if existing is not None and existing.expires_at <= now:
            # Stale row the sweep has not reached yet
            expired = await self._store.update_session_status(
                existing.id, ImpersonationStatus.ACTIVE, ImpersonationStatus.EXPIRED, now
            )
            logger.info("impersonation_stale_session_expired", session_id=existing.id, expired=expired)
            existing = None

        if existing is not None:
            return Err(
                ErrorKind.ALREADY_IMPERSONATING,
                ALREADY_IMPERSONATING_MESSAGE,
                {"session_id": existing.id},
            )

        expires_at = now + clamp_duration(options.duration_ms)
        row = ImpersonationSessions(
            id=self._clock.new_id(),
            impersonator_id=options.impersonator_id,
            target_user_id=options.target_user_id,
            organization_id=options.organization_id,
            reason=options.reason,
            status=ImpersonationStatus.ACTIVE,
            started_at=now,
            expires_at=expires_at,
            updated_at=now,
            ip_address=options.ip_address,
            user_agent=options.user_agent,
        )
        try:
            session = await self._store.insert_impersonation_session(row)
        except ActiveSessionConflictError:
            # A concurrent start by the same impersonator won the unique index
            return Err(ErrorKind.ALREADY_IMPERSONATING, ALREADY_IMPERSONATING_MESSAGE)

        access_token = create_access_token(
            target_user.id,
            target_user.email,
            now=now,
            expires_at=expires_at,
            impersonation=ImpersonationClaims(
                impersonator_id=options.impersonator_id, session_id=session.id
            ),
        )

        self._audit.record(
            AuditEntry(
                action=AuditAction.IMPERSONATION_STARTED,
                user_id=options.impersonator_id,
                organization_id=options.organization_id,
                resource_type="user",
                resource_id=target_user.id,
                details={
                    "target_user_id": target_user.id,
                    "target_email": target_user.email,
                    "reason": options.reason,
                    "session_id": session.id,
                    "expires_at": expires_at.isoformat(),
                    "duration_ms": _duration_ms(now, expires_at),
                },
                ip_address=options.ip_address,
                user_agent=options.user_agent,
            )
        )
        logger.info(
            "impersonation_started",
            session_id=session.id,
            impersonator_id=options.impersonator_id,
            target_user_id=target_user.id,
            expires_at=expires_at.isoformat(),
        )

        return Ok(
            ImpersonationResult(
                session_id=session.id,
                access_token=access_token,
                expires_at=expires_at,
                target_user=target_user,
            )
        )

    def _denied(self, options: StartImpersonationOptions, error: Err) -> Err:
        logger.warning(
            "impersonation_denied",
            impersonator_id=options.impersonator_id,
            target_user_id=options.target_user_id,
            reason=error.message,
        )
        self._audit.record(
            AuditEntry(
                action=AuditAction.IMPERSONATION_DENIED,
                category=AuditCategory.AUTHORIZATION,
                user_id=options.impersonator_id,
                organization_id=options.organization_id,
                resource_type="user",
                resource_id=options.target_user_id,
                outcome=AuditOutcome.FAILURE,
                details={"error": error.kind.value, "message": error.message},
                ip_address=options.ip_address,
                user_agent=options.user_agent,
            )
        )
        return error

    # ===== End / revoke =====

    async def end_impersonation(
        self, impersonator_id: str, session_id: str | None = None
    ) -> Result[ImpersonationSessions]:
        """
        End the caller's session, by id or the caller's current active one.

        Sessions belonging to someone else are reported as not found.
        """
        try:
            return await self._end(impersonator_id, session_id)
        except StoreUnavailableError:
            return Err(ErrorKind.UNAVAILABLE, UNAVAILABLE_MESSAGE)

    async def _end(self, impersonator_id: str, session_id: str | None) -> Result[ImpersonationSessions]:
        if session_id is not None:
            session = await self._store.find_session_by_id(session_id)
            if session is None or session.impersonator_id != impersonator_id:
                return Err(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND_MESSAGE)
        else:
            session = await self._store.find_active_session_by_impersonator(impersonator_id)
            if session is None:
                # Ending twice reports the state of the session that was already ended
                session = await self._store.find_latest_session_by_impersonator(impersonator_id)
            if session is None:
                return Err(ErrorKind.NOT_FOUND, "No active impersonation session")

        if not session.is_active:
            return _not_active(session)

        now = self._clock.now()
        if not await self._store.update_session_status(
            session.id, ImpersonationStatus.ACTIVE, ImpersonationStatus.ENDED, now
        ):
            return await self._lost_race(session.id)

        duration_ms = _duration_ms(session.started_at, now)
        self._audit.record(
            AuditEntry(
                action=AuditAction.IMPERSONATION_ENDED,
                user_id=impersonator_id,
                organization_id=session.organization_id,
                resource_type="user",
                resource_id=session.target_user_id,
                details={"session_id": session.id, "duration_ms": duration_ms},
            )
        )
        logger.info("impersonation_ended", session_id=session.id, duration_ms=duration_ms)

        session.status = ImpersonationStatus.ENDED
        session.ended_at = now
        session.active_impersonator_id = None
        return Ok(session)

    async def revoke_session(self, session_id: str, revoker_id: str) -> Result[ImpersonationSessions]:
        """Administrative termination of any impersonator's session. Super admins only."""
        try:
            return await self._revoke(session_id, revoker_id)
        except StoreUnavailableError:
            return Err(ErrorKind.UNAVAILABLE, UNAVAILABLE_MESSAGE)

    async def _revoke(self, session_id: str, revoker_id: str) -> Result[ImpersonationSessions]:
        if not await self.can_manage_sessions(revoker_id):
            return Err(ErrorKind.FORBIDDEN, "Only super admins can revoke impersonation sessions")

        session = await self._store.find_session_by_id(session_id)
        if session is None:
            return Err(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND_MESSAGE)

        if not session.is_active:
            return _not_active(session)

        now = self._clock.now()
        if not await self._store.update_session_status(
            session.id, ImpersonationStatus.ACTIVE, ImpersonationStatus.REVOKED, now
        ):
            return await self._lost_race(session.id)

        self._audit.record(
            AuditEntry(
                action=AuditAction.IMPERSONATION_REVOKED,
                user_id=revoker_id,
                organization_id=session.organization_id,
                resource_type="impersonation_session",
                resource_id=session.id,
                details={
                    "original_impersonator_id": session.impersonator_id,
                    "revoker_id": revoker_id,
                    "target_user_id": session.target_user_id,
                },
            )
        )
        logger.info(
            "impersonation_revoked",
            session_id=session.id,
            impersonator_id=session.impersonator_id,
            revoker_id=revoker_id,
        )

        session.status = ImpersonationStatus.REVOKED
        session.ended_at = now
        session.active_impersonator_id = None
        return Ok(session)

    async def _lost_race(self, session_id: str) -> Err:
        current = await self._store.find_session_by_id(session_id)
        status = current.status if current else None
        logger.info("impersonation_transition_lost_race", session_id=session_id, status=status)
        return Err(
            ErrorKind.INVALID_STATE,
            f"Session is not active (status: {status})",
            {"session_id": session_id, "status": status},
        )

    # ===== Expiry =====

    async def expire_old_sessions(self) -> Result[int]:
        """Move every active session past its expiry to ``expired``. Safe to run concurrently."""
        now = self._clock.now()
        try:
            count = await self._store.sweep_expired(now)
        except StoreUnavailableError:
            return Err(ErrorKind.UNAVAILABLE, UNAVAILABLE_MESSAGE)

        if count:
            self._audit.record(
                AuditEntry(
                    action=AuditAction.IMPERSONATION_EXPIRED_SWEEP,
                    category=AuditCategory.SYSTEM,
                    resource_type="impersonation_session",
                    details={"expired_count": count, "swept_at": now.isoformat()},
                )
            )
            logger.info("impersonation_sessions_expired", count=count)
        return Ok(count)

    # ===== Read views =====

    async def validate_session_claim(
        self, session_id: str, impersonator_id: str, target_user_id: str
    ) -> Result[bool]:
        """
        Check that an impersonation access token still refers to a live session.

        Read from the store on every call so ending or revoking a session cuts
        off its tokens immediately, on every instance.
        """
        try:
            session = await self._store.find_session_by_id(session_id)
        except StoreUnavailableError:
            return Err(ErrorKind.UNAVAILABLE, UNAVAILABLE_MESSAGE)

        return Ok(
            session is not None
            and session.is_active
            and session.expires_at > self._clock.now()
            and session.impersonator_id == impersonator_id
            and session.target_user_id == target_user_id
        )

    async def get_active_status(self, impersonator_id: str) -> Result[ImpersonationStatusView]:
        try:
            session = await self._store.find_active_session_by_impersonator(impersonator_id)
            if session is None or session.expires_at <= self._clock.now():
                return Ok(ImpersonationStatusView(is_impersonating=False))
            people = await self._users.find_many({session.impersonator_id, session.target_user_id})
        except StoreUnavailableError:
            return Err(ErrorKind.UNAVAILABLE, UNAVAILABLE_MESSAGE)

        return Ok(
            ImpersonationStatusView(
                is_impersonating=True,
                session_id=session.id,
                impersonator=people.get(session.impersonator_id),
                target=people.get(session.target_user_id),
                organization_id=session.organization_id,
                started_at=session.started_at,
                expires_at=session.expires_at,
                reason=session.reason,
            )
        )

    async def get_history(
        self, user_id: str, page: int = 1, page_size: int | None = None, as_target: bool = False
    ) -> Result[SessionPage]:
        """Sessions the user started, or with ``as_target`` the sessions that impersonated them."""
        page_size = page_size or settings.DEFAULT_PAGE_SIZE
        try:
            rows, total = await self._store.list_history(user_id, page, page_size, as_target=as_target)
            return Ok(await self._page(rows, total, page, page_size))
        except StoreUnavailableError:
            return Err(ErrorKind.UNAVAILABLE, UNAVAILABLE_MESSAGE)

    async def get_active_sessions(self, page: int = 1, page_size: int | None = None) -> Result[SessionPage]:
        page_size = page_size or settings.DEFAULT_PAGE_SIZE
        try:
            rows, total = await self._store.list_active(page, page_size)
            return Ok(await self._page(rows, total, page, page_size))
        except StoreUnavailableError:
            return Err(ErrorKind.UNAVAILABLE, UNAVAILABLE_MESSAGE)

    async def _page(
        self, rows: list[ImpersonationSessions], total: int, page: int, page_size: int
    ) -> SessionPage:
        user_ids = {row.impersonator_id for row in rows} | {row.target_user_id for row in rows}
        people = await self._users.find_many(user_ids)
        return SessionPage(
            items=[
                SessionView(
                    session=row,
                    impersonator=people.get(row.impersonator_id),
                    target=people.get(row.target_user_id),
                )
                for row in rows
            ],
            total=total,
            page=page,
            page_size=page_size,
        )


def _not_active(session: ImpersonationSessions) -> Err:
    return Err(
        ErrorKind.INVALID_STATE,
        f"Session is not active (status: {session.status})",
        {"session_id": session.id, "status": session.status},
    )
