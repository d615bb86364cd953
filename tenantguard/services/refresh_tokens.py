"""
Refresh token engine.

Issues, rotates and revokes refresh tokens and detects theft through token
reuse.

Rotation protocol:
- Every login starts a new token family.
- Refreshing marks the presented token rotated and issues its replacement in
  the same family, in one transaction guarded by a conditional update.
- Presenting a token that was already rotated means two parties hold the
  same chain (the legitimate client has moved on, so the presenter is
  replaying a stolen copy, or vice versa). The whole family is revoked.
- A concurrent rotation that loses the conditional update is treated the
  same way as a replay.

Failure kinds are distinct internally (for audit and logs) but collapse to a
single 401 at the HTTP boundary.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from tenantguard.config import AuditAction, AuditCategory, AuditOutcome, settings
from tenantguard.core.clock import Clock
from tenantguard.core.logging import get_logger
from tenantguard.core.result import Err, ErrorKind, Ok, Result
from tenantguard.core.security import create_access_token, hash_refresh_token, verify_password
from tenantguard.models.refresh_token import RefreshTokens
from tenantguard.models.user import Users
from tenantguard.services.audit import AuditDispatcher, AuditEntry
from tenantguard.services.credential_store import CredentialStore, StoreUnavailableError
from tenantguard.services.user_directory import UserDirectory

logger = get_logger(__name__)

UNAVAILABLE_MESSAGE = "Credential store unavailable, please retry"


@dataclass(frozen=True)
class ClientMetadata:
    """Where a request came from, recorded on tokens and audit entries."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class IssuedRefreshToken:
    """A freshly issued token. ``token`` is the raw secret and is only available here."""

    token: str
    record: RefreshTokens


@dataclass(frozen=True)
class TokenPair:
    """Result of a login or a successful rotation."""

    access_token: str
    refresh_token: str
    expires_in: int
    user: Users
    record: RefreshTokens


class RefreshTokenEngine:
    def __init__(
        self,
        store: CredentialStore,
        users: UserDirectory,
        audit: AuditDispatcher,
        clock: Clock,
    ) -> None:
        self._store = store
        self._users = users
        self._audit = audit
        self._clock = clock

    # ===== Issuing =====

    def _new_token(
        self,
        user_id: str,
        family_id: str,
        now: datetime,
        metadata: ClientMetadata,
        parent_token_id: str | None = None,
    ) -> IssuedRefreshToken:
        secret = self._clock.new_secret()
        record = RefreshTokens(
            id=self._clock.new_id(),
            user_id=user_id,
            token_hash=hash_refresh_token(secret),
            family_id=family_id,
            issued_at=now,
            expires_at=now + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
            ip_address=metadata.ip_address,
            user_agent=metadata.user_agent,
            parent_token_id=parent_token_id,
        )
        return IssuedRefreshToken(token=secret, record=record)

    async def issue(self, user_id: str, metadata: ClientMetadata | None = None) -> IssuedRefreshToken:
        """
        Start a new token family for ``user_id``.

        Raises:
            StoreUnavailableError: the token could not be stored
        """
        issued = self._new_token(
            user_id, self._clock.new_id(), self._clock.now(), metadata or ClientMetadata()
        )
        await self._store.insert_refresh_token(issued.record)
        return issued

    def mint_access_token(self, user: Users, now: datetime | None = None) -> str:
        return create_access_token(user.id, user.email, now=now or self._clock.now())

    async def authenticate(
        self, email: str, password: str, metadata: ClientMetadata | None = None
    ) -> Result[TokenPair]:
        """Password login: verify credentials and start a new token family."""
        metadata = metadata or ClientMetadata()
        try:
            return await self._authenticate(email, password, metadata)
        except StoreUnavailableError:
            return Err(ErrorKind.UNAVAILABLE, UNAVAILABLE_MESSAGE)

    async def _authenticate(self, email: str, password: str, metadata: ClientMetadata) -> Result[TokenPair]:
        user = await self._users.find_by_email(email)

        if user is None or not user.password_hash or not verify_password(password, user.password_hash):
            self._record_login_failure(user, "invalid_credentials", metadata)
            return Err(ErrorKind.INVALID_CREDENTIALS, "Incorrect email or password")

        if not user.is_active:
            self._record_login_failure(user, "inactive_user", metadata)
            return Err(ErrorKind.INACTIVE_USER, "User account is inactive")

        now = self._clock.now()
        issued = await self.issue(user.id, metadata)
        await self._users.record_login(user, now)

        self._audit.record(
            AuditEntry(
                action=AuditAction.LOGIN,
                user_id=user.id,
                resource_type="refresh_token",
                resource_id=issued.record.id,
                details={"family_id": issued.record.family_id},
                ip_address=metadata.ip_address,
                user_agent=metadata.user_agent,
            )
        )
        logger.info("user_logged_in", user_id=user.id)

        return Ok(
            TokenPair(
                access_token=self.mint_access_token(user, now),
                refresh_token=issued.token,
                expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
                user=user,
                record=issued.record,
            )
        )

    def _record_login_failure(self, user: Users | None, reason: str, metadata: ClientMetadata) -> None:
        self._audit.record(
            AuditEntry(
                action=AuditAction.LOGIN,
                user_id=user.id if user else None,
                outcome=AuditOutcome.FAILURE,
                details={"reason": reason},
                ip_address=metadata.ip_address,
                user_agent=metadata.user_agent,
            )
        )

    # ===== Rotation =====

    async def rotate(
        self, presented_token_hash: str, metadata: ClientMetadata | None = None
    ) -> Result[TokenPair]:
        """
        Exchange a refresh token for a new one plus a fresh access token.

        Checks, in order: unknown token, expired, already rotated (reuse, the
        family is revoked), revoked, owner missing or inactive (family
        revoked). Only then is the token rotated.
        """
        metadata = metadata or ClientMetadata()
        try:
            return await self._rotate(presented_token_hash, metadata)
        except StoreUnavailableError:
            return Err(ErrorKind.UNAVAILABLE, UNAVAILABLE_MESSAGE)

    async def _rotate(self, presented_token_hash: str, metadata: ClientMetadata) -> Result[TokenPair]:
        now = self._clock.now()
        token = await self._store.find_refresh_token_by_hash(presented_token_hash, include_revoked=True)

        if token is None:
            return self._refresh_failed(ErrorKind.INVALID_TOKEN, "Refresh token not found", None, metadata)

        if token.expires_at <= now:
            return self._refresh_failed(ErrorKind.EXPIRED, "Refresh token expired", token, metadata)

        if token.rotated_at is not None:
            return await self._reuse_detected(token, now, metadata)

        if token.revoked_at is not None:
            return self._refresh_failed(ErrorKind.REVOKED, "Refresh token revoked", token, metadata)

        user = await self._users.find_by_id(token.user_id)
        if user is None or not user.is_active:
            revoked = await self._store.revoke_family(token.family_id, now)
            logger.warning(
                "refresh_token_owner_inactive",
                user_id=token.user_id,
                family_id=token.family_id,
                revoked_count=revoked,
            )
            return self._refresh_failed(ErrorKind.INACTIVE_USER, "User account is inactive", token, metadata)

        replacement = self._new_token(user.id, token.family_id, now, metadata, parent_token_id=token.id)
        if not await self._store.rotate_refresh_token(token.id, replacement.record, now):
            # Another request rotated or revoked this token between our read and the update
            return await self._reuse_detected(token, now, metadata)

        self._audit.record(
            AuditEntry(
                action=AuditAction.TOKEN_REFRESHED,
                user_id=user.id,
                resource_type="refresh_token",
                resource_id=replacement.record.id,
                details={"family_id": token.family_id, "previous_token_id": token.id},
                ip_address=metadata.ip_address,
                user_agent=metadata.user_agent,
            )
        )

        return Ok(
            TokenPair(
                access_token=self.mint_access_token(user, now),
                refresh_token=replacement.token,
                expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
                user=user,
                record=replacement.record,
            )
        )

    async def _reuse_detected(
        self, token: RefreshTokens, now: datetime, metadata: ClientMetadata
    ) -> Err:
        revoked = await self._store.revoke_family(token.family_id, now)
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=token.user_id,
            family_id=token.family_id,
            token_id=token.id,
            revoked_count=revoked,
            ip_address=metadata.ip_address,
        )
        self._audit.record(
            AuditEntry(
                action=AuditAction.REFRESH_TOKEN_REUSE_DETECTED,
                user_id=token.user_id,
                resource_type="refresh_token",
                resource_id=token.id,
                outcome=AuditOutcome.FAILURE,
                details={"family_id": token.family_id, "revoked_count": revoked},
                ip_address=metadata.ip_address,
                user_agent=metadata.user_agent,
            )
        )
        return Err(
            ErrorKind.REUSE_DETECTED,
            "Refresh token reuse detected",
            {"family_id": token.family_id, "revoked_count": revoked},
        )

    def _refresh_failed(
        self,
        kind: ErrorKind,
        message: str,
        token: RefreshTokens | None,
        metadata: ClientMetadata,
    ) -> Err:
        logger.info(
            "token_refresh_failed",
            reason=kind.value,
            user_id=token.user_id if token else None,
            token_id=token.id if token else None,
        )
        self._audit.record(
            AuditEntry(
                action=AuditAction.TOKEN_REFRESH_FAILED,
                user_id=token.user_id if token else None,
                resource_type="refresh_token",
                resource_id=token.id if token else None,
                outcome=AuditOutcome.FAILURE,
                details={"reason": kind.value},
                ip_address=metadata.ip_address,
                user_agent=metadata.user_agent,
            )
        )
        return Err(kind, message)

    # ===== Revocation =====

    async def revoke_family_tokens(self, family_id: str) -> int:
        """Revoke every token descended from one login. Returns the number revoked."""
        return await self._store.revoke_family(family_id, self._clock.now())

    async def revoke_by_id(self, token_id: str) -> bool:
        return await self._store.revoke_by_id(token_id, self._clock.now())

    async def revoke_all_user_tokens(self, user_id: str) -> int:
        return await self._store.revoke_all_for_user(user_id, self._clock.now())

    async def revoke_presented(
        self, presented_token_hash: str, metadata: ClientMetadata | None = None
    ) -> Result[bool]:
        """
        Logout: revoke the presented token if it is still live.

        Unknown or already revoked tokens are not an error.
        """
        metadata = metadata or ClientMetadata()
        try:
            token = await self._store.find_refresh_token_by_hash(presented_token_hash, include_revoked=False)
            if token is None:
                return Ok(False)
            revoked = await self.revoke_by_id(token.id)
        except StoreUnavailableError:
            return Err(ErrorKind.UNAVAILABLE, UNAVAILABLE_MESSAGE)

        if revoked:
            self._audit.record(
                AuditEntry(
                    action=AuditAction.LOGOUT,
                    user_id=token.user_id,
                    resource_type="refresh_token",
                    resource_id=token.id,
                    ip_address=metadata.ip_address,
                    user_agent=metadata.user_agent,
                )
            )
        return Ok(revoked)

    async def logout_all(self, user_id: str, metadata: ClientMetadata | None = None) -> Result[int]:
        """Revoke every refresh token the user holds, on every device."""
        metadata = metadata or ClientMetadata()
        try:
            count = await self.revoke_all_user_tokens(user_id)
        except StoreUnavailableError:
            return Err(ErrorKind.UNAVAILABLE, UNAVAILABLE_MESSAGE)

        self._audit.record(
            AuditEntry(
                action=AuditAction.LOGOUT_ALL,
                user_id=user_id,
                details={"revoked_count": count},
                ip_address=metadata.ip_address,
                user_agent=metadata.user_agent,
            )
        )
        logger.info("user_logged_out_everywhere", user_id=user_id, revoked_count=count)
        return Ok(count)

    async def list_active_for_user(self, user_id: str) -> Result[list[RefreshTokens]]:
        try:
            return Ok(await self._store.list_active_refresh_tokens(user_id, self._clock.now()))
        except StoreUnavailableError:
            return Err(ErrorKind.UNAVAILABLE, UNAVAILABLE_MESSAGE)
