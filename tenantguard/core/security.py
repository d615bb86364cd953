"""
Security utilities for authentication.

This module provides:
- Password hashing and verification using bcrypt
- Access token (JWT) signing and verification, including impersonation claims
- Refresh token secret hashing
"""

import base64
import hashlib
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import bcrypt
import jwt

from tenantguard.config import settings


@dataclass(frozen=True)
class ImpersonationClaims:
    """Claims carried by an access token minted for an impersonation session."""

    impersonator_id: str
    session_id: str


@dataclass(frozen=True)
class AccessTokenClaims:
    """Verified contents of an access token."""

    sub: str
    email: str
    issued_at: datetime
    expires_at: datetime
    impersonation: ImpersonationClaims | None = None

    @property
    def is_impersonation(self) -> bool:
        return self.impersonation is not None

    @property
    def acting_user_id(self) -> str:
        """The real person behind the token: the impersonator when impersonating."""
        if self.impersonation is not None:
            return self.impersonation.impersonator_id
        return self.sub


def _prepare_password_for_bcrypt(password: str) -> str:
    """
    Prepare password for bcrypt by handling long passwords.

    Bcrypt has a 72 byte limit. For passwords longer than 72 bytes,
    we SHA256 hash them first and encode as base64.
    """
    password_bytes = password.encode("utf-8")

    if len(password_bytes) <= 72:
        return password

    hashed = hashlib.sha256(password_bytes).digest()
    return base64.b64encode(hashed).decode("ascii")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain password against a bcrypt hash."""
    prepared_password = _prepare_password_for_bcrypt(plain_password)
    return bcrypt.checkpw(prepared_password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_password_hash(password: str, rounds: int = 12) -> str:
    """
    Hash a password using bcrypt.

    For passwords longer than 72 bytes (bcrypt's limit), we SHA256 hash them first.
    """
    prepared_password = _prepare_password_for_bcrypt(password)
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(prepared_password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def hash_refresh_token(token: str) -> str:
    """
    Hash a raw refresh token for storage and lookup.

    Refresh tokens are high-entropy random secrets, so a plain SHA-256 digest
    is sufficient; the raw value is never persisted.
    """
    return hashlib.sha256(token.encode()).hexdigest()


def _epoch(value: datetime) -> int:
    """Seconds since the epoch for a naive-UTC or aware datetime."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp())


def create_access_token(
    user_id: str,
    email: str,
    *,
    now: datetime,
    expires_at: datetime | None = None,
    impersonation: ImpersonationClaims | None = None,
) -> str:
    """
    Create a signed JWT access token.

    Args:
        user_id: Subject of the token (the impersonated user for impersonation tokens)
        email: Subject email
        now: Issue time (naive UTC)
        expires_at: Expiry; defaults to now + ACCESS_TOKEN_EXPIRE_MINUTES
        impersonation: Impersonation claims, if the token is minted for a session

    Returns:
        Encoded JWT token string
    """
    if expires_at is None:
        expires_at = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    payload: dict[str, object] = {
        "sub": user_id,
        "email": email,
        "type": "access",  # Custom claim to distinguish token types
        "iat": _epoch(now),
        "exp": _epoch(expires_at),
    }
    if impersonation is not None:
        payload["isImpersonation"] = True
        payload["impersonatorId"] = impersonation.impersonator_id
        payload["sessionId"] = impersonation.session_id

    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def verify_access_token(token: str) -> AccessTokenClaims | None:
    """
    Verify and decode a JWT access token.

    Returns:
        The token claims if the token is valid, None otherwise
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            options={"verify_exp": True, "verify_signature": True, "require": ["sub", "exp", "iat"]},
        )
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        # Invalid token format, signature or missing claims
        return None

    if payload.get("type") != "access":
        return None

    sub = payload.get("sub")
    email = payload.get("email")
    if not isinstance(sub, str) or not isinstance(email, str):
        return None

    impersonation = None
    if payload.get("isImpersonation"):
        impersonator_id = payload.get("impersonatorId")
        session_id = payload.get("sessionId")
        if not isinstance(impersonator_id, str) or not isinstance(session_id, str):
            return None
        impersonation = ImpersonationClaims(impersonator_id=impersonator_id, session_id=session_id)

    return AccessTokenClaims(
        sub=sub,
        email=email,
        issued_at=datetime.fromtimestamp(payload["iat"], tz=UTC).replace(tzinfo=None),
        expires_at=datetime.fromtimestamp(payload["exp"], tz=UTC).replace(tzinfo=None),
        impersonation=impersonation,
    )
