"""
Credential store: persistence for refresh tokens and impersonation sessions.

Every state change is a conditional update whose affected-row count decides
the outcome, so concurrent requests against the same row have exactly one
winner without any separate locking:

- rotation:     UPDATE refresh_tokens SET rotated_at=? WHERE id=? AND rotated_at IS NULL AND revoked_at IS NULL
- transitions:  UPDATE impersonation_sessions SET status=? WHERE id=? AND status='active'
- sweep:        UPDATE impersonation_sessions SET status='expired' WHERE status='active' AND expires_at <= ?

Each call opens its own short session and runs under a deadline. Timeouts and
connection failures raise StoreUnavailableError. Reads are retried once;
writes are never retried.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantguard.config import ImpersonationStatus, settings
from tenantguard.core.logging import get_logger
from tenantguard.models.impersonation_session import ImpersonationSessions
from tenantguard.models.refresh_token import RefreshTokens

logger = get_logger(__name__)

T = TypeVar("T")


class StoreUnavailableError(Exception):
    """The store did not answer within its deadline or the connection failed."""


class ActiveSessionConflictError(Exception):
    """The impersonator already holds an active session (unique index violation)."""


class StoreAccess:
    """
    Deadline and retry policy shared by every component that reads the database.

    Subclasses express each query as an operation on a fresh session and run it
    through ``_read`` (retried once) or ``_write`` (never retried).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout_seconds: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.STORE_TIMEOUT_SECONDS

    async def _execute(self, operation: Callable[[AsyncSession], Awaitable[T]], name: str) -> T:
        async def run() -> T:
            async with self._session_factory() as session:
                return await operation(session)

        try:
            return await asyncio.wait_for(run(), timeout=self._timeout)
        except TimeoutError as e:
            logger.error(
                "store_timeout", component=type(self).__name__, operation=name, timeout=self._timeout
            )
            raise StoreUnavailableError(f"{name} timed out") from e
        except (OperationalError, InterfaceError) as e:
            logger.error(
                "store_unavailable",
                component=type(self).__name__,
                operation=name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise StoreUnavailableError(f"{name} failed") from e

    async def _read(self, operation: Callable[[AsyncSession], Awaitable[T]], name: str) -> T:
        try:
            return await self._execute(operation, name)
        except StoreUnavailableError:
            logger.warning("store_read_retry", component=type(self).__name__, operation=name)
            return await self._execute(operation, name)

    async def _write(self, operation: Callable[[AsyncSession], Awaitable[T]], name: str) -> T:
        return await self._execute(operation, name)


class CredentialStore(StoreAccess):
    """Database-backed store for refresh tokens and impersonation sessions."""

    # ===== Refresh tokens =====

    async def find_refresh_token_by_hash(
        self, token_hash: str, include_revoked: bool = True
    ) -> RefreshTokens | None:
        """Find a token by hash. With include_revoked=False only unrotated, unrevoked rows match."""

        async def op(session: AsyncSession) -> RefreshTokens | None:
            query = select(RefreshTokens).where(RefreshTokens.token_hash == token_hash)
            if not include_revoked:
                query = query.where(
                    RefreshTokens.rotated_at.is_(None),  # type: ignore[union-attr]
                    RefreshTokens.revoked_at.is_(None),  # type: ignore[union-attr]
                )
            result = await session.execute(query)
            return result.scalar_one_or_none()

        return await self._read(op, "find_refresh_token_by_hash")

    async def insert_refresh_token(self, row: RefreshTokens) -> RefreshTokens:
        async def op(session: AsyncSession) -> RefreshTokens:
            session.add(row)
            await session.commit()
            return row

        return await self._write(op, "insert_refresh_token")

    async def mark_rotated(self, token_id: str, now: datetime) -> bool:
        """Mark a token rotated. False when it was already rotated or revoked."""

        async def op(session: AsyncSession) -> bool:
            rotated = await self._mark_rotated(session, token_id, now)
            await session.commit()
            return rotated

        return await self._write(op, "mark_rotated")

    async def rotate_refresh_token(
        self, token_id: str, replacement: RefreshTokens, now: datetime
    ) -> bool:
        """
        Atomically mark ``token_id`` rotated and insert its replacement.

        Returns False (and inserts nothing) when the token had already been
        rotated or revoked, i.e. another request won the race.
        """

        async def op(session: AsyncSession) -> bool:
            if not await self._mark_rotated(session, token_id, now):
                await session.rollback()
                return False
            session.add(replacement)
            await session.commit()
            return True

        return await self._write(op, "rotate_refresh_token")

    @staticmethod
    async def _mark_rotated(session: AsyncSession, token_id: str, now: datetime) -> bool:
        result = await session.execute(
            update(RefreshTokens)
            .where(
                RefreshTokens.id == token_id,  # type: ignore[arg-type]
                RefreshTokens.rotated_at.is_(None),  # type: ignore[union-attr]
                RefreshTokens.revoked_at.is_(None),  # type: ignore[union-attr]
            )
            .values(rotated_at=now)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def revoke_by_id(self, token_id: str, now: datetime) -> bool:
        async def op(session: AsyncSession) -> bool:
            result = await session.execute(
                update(RefreshTokens)
                .where(
                    RefreshTokens.id == token_id,  # type: ignore[arg-type]
                    RefreshTokens.revoked_at.is_(None),  # type: ignore[union-attr]
                )
                .values(revoked_at=now)
            )
            await session.commit()
            return result.rowcount == 1  # type: ignore[attr-defined]

        return await self._write(op, "revoke_by_id")

    async def revoke_family(self, family_id: str, now: datetime) -> int:
        """Revoke every not-yet-revoked token in a family, rotated ones included."""

        async def op(session: AsyncSession) -> int:
            result = await session.execute(
                update(RefreshTokens)
                .where(
                    RefreshTokens.family_id == family_id,  # type: ignore[arg-type]
                    RefreshTokens.revoked_at.is_(None),  # type: ignore[union-attr]
                )
                .values(revoked_at=now)
            )
            await session.commit()
            return int(result.rowcount)  # type: ignore[attr-defined]

        return await self._write(op, "revoke_family")

    async def revoke_all_for_user(self, user_id: str, now: datetime) -> int:
        async def op(session: AsyncSession) -> int:
            result = await session.execute(
                update(RefreshTokens)
                .where(
                    RefreshTokens.user_id == user_id,  # type: ignore[arg-type]
                    RefreshTokens.revoked_at.is_(None),  # type: ignore[union-attr]
                )
                .values(revoked_at=now)
            )
            await session.commit()
            return int(result.rowcount)  # type: ignore[attr-defined]

        return await self._write(op, "revoke_all_for_user")

    async def list_active_refresh_tokens(self, user_id: str, now: datetime) -> list[RefreshTokens]:
        async def op(session: AsyncSession) -> list[RefreshTokens]:
            result = await session.execute(
                select(RefreshTokens)
                .where(
                    RefreshTokens.user_id == user_id,  # type: ignore[arg-type]
                    RefreshTokens.rotated_at.is_(None),  # type: ignore[union-attr]
                    RefreshTokens.revoked_at.is_(None),  # type: ignore[union-attr]
                    RefreshTokens.expires_at > now,  # type: ignore[arg-type]
                )
                .order_by(RefreshTokens.issued_at)  # type: ignore[arg-type]
            )
            return list(result.scalars().all())

        return await self._read(op, "list_active_refresh_tokens")

    # ===== Impersonation sessions =====

    async def insert_impersonation_session(self, row: ImpersonationSessions) -> ImpersonationSessions:
        """
        Insert a new active session.

        Raises:
            ActiveSessionConflictError: the impersonator already has an active session
        """
        row.active_impersonator_id = row.impersonator_id if row.is_active else None

        async def op(session: AsyncSession) -> ImpersonationSessions:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                if "active_impersonator" in str(e.orig):
                    raise ActiveSessionConflictError(row.impersonator_id) from e
                raise
            return row

        return await self._write(op, "insert_impersonation_session")

    async def find_active_session_by_impersonator(
        self, impersonator_id: str
    ) -> ImpersonationSessions | None:
        async def op(session: AsyncSession) -> ImpersonationSessions | None:
            result = await session.execute(
                select(ImpersonationSessions)
                .where(
                    ImpersonationSessions.impersonator_id == impersonator_id,  # type: ignore[arg-type]
                    ImpersonationSessions.status == ImpersonationStatus.ACTIVE,  # type: ignore[arg-type]
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

        return await self._read(op, "find_active_session_by_impersonator")

    async def find_latest_session_by_impersonator(
        self, impersonator_id: str
    ) -> ImpersonationSessions | None:
        """Most recently started session of an impersonator, in any status."""

        async def op(session: AsyncSession) -> ImpersonationSessions | None:
            result = await session.execute(
                select(ImpersonationSessions)
                .where(ImpersonationSessions.impersonator_id == impersonator_id)  # type: ignore[arg-type]
                .order_by(ImpersonationSessions.started_at.desc())  # type: ignore[attr-defined]
                .limit(1)
            )
            return result.scalar_one_or_none()

        return await self._read(op, "find_latest_session_by_impersonator")

    async def find_session_by_id(self, session_id: str) -> ImpersonationSessions | None:
        async def op(session: AsyncSession) -> ImpersonationSessions | None:
            return await session.get(ImpersonationSessions, session_id)

        return await self._read(op, "find_session_by_id")

    async def update_session_status(
        self,
        session_id: str,
        expected_status: str,
        new_status: str,
        ended_at: datetime | None,
    ) -> bool:
        """
        Compare-and-swap a session's status.

        Returns True only if the row still had ``expected_status``; a False
        result means another request (end, revoke, sweep) got there first.
        """
        values: dict[str, object] = {"status": new_status, "updated_at": ended_at}
        if new_status in ImpersonationStatus.TERMINAL:
            values["ended_at"] = ended_at
            values["active_impersonator_id"] = None

        async def op(session: AsyncSession) -> bool:
            result = await session.execute(
                update(ImpersonationSessions)
                .where(
                    ImpersonationSessions.id == session_id,  # type: ignore[arg-type]
                    ImpersonationSessions.status == expected_status,  # type: ignore[arg-type]
                )
                .values(**values)
            )
            await session.commit()
            return result.rowcount == 1  # type: ignore[attr-defined]

        return await self._write(op, "update_session_status")

    async def sweep_expired(self, now: datetime) -> int:
        """Move every active session whose expiry has passed to ``expired``."""

        async def op(session: AsyncSession) -> int:
            result = await session.execute(
                update(ImpersonationSessions)
                .where(
                    ImpersonationSessions.status == ImpersonationStatus.ACTIVE,  # type: ignore[arg-type]
                    ImpersonationSessions.expires_at <= now,  # type: ignore[arg-type]
                )
                .values(
                    status=ImpersonationStatus.EXPIRED,
                    ended_at=now,
                    updated_at=now,
                    active_impersonator_id=None,
                )
            )
            await session.commit()
            return int(result.rowcount)  # type: ignore[attr-defined]

        return await self._write(op, "sweep_expired")

    async def list_active(self, page: int, page_size: int) -> tuple[list[ImpersonationSessions], int]:
        async def op(session: AsyncSession) -> tuple[list[ImpersonationSessions], int]:
            condition = ImpersonationSessions.status == ImpersonationStatus.ACTIVE  # type: ignore[arg-type]
            return await self._page(session, condition, page, page_size)

        return await self._read(op, "list_active")

    async def list_history(
        self, user_id: str, page: int, page_size: int, as_target: bool = False
    ) -> tuple[list[ImpersonationSessions], int]:
        """Sessions started by ``user_id`` (or, with as_target, sessions impersonating them)."""

        async def op(session: AsyncSession) -> tuple[list[ImpersonationSessions], int]:
            if as_target:
                condition = ImpersonationSessions.target_user_id == user_id  # type: ignore[arg-type]
            else:
                condition = ImpersonationSessions.impersonator_id == user_id  # type: ignore[arg-type]
            return await self._page(session, condition, page, page_size)

        return await self._read(op, "list_history")

    @staticmethod
    async def _page(
        session: AsyncSession, condition: object, page: int, page_size: int
    ) -> tuple[list[ImpersonationSessions], int]:
        total = await session.scalar(
            select(func.count()).select_from(ImpersonationSessions).where(condition)  # type: ignore[arg-type]
        )
        result = await session.execute(
            select(ImpersonationSessions)
            .where(condition)  # type: ignore[arg-type]
            .order_by(ImpersonationSessions.started_at.desc())  # type: ignore[attr-defined]
            .limit(page_size)
            .offset((page - 1) * page_size)
        )
        return list(result.scalars().all()), int(total or 0)
