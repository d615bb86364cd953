"""Time and identifier source shared by the token engine and session manager."""

import secrets
import uuid
from datetime import UTC, datetime


class Clock:
    """
    Supplies the current time and unguessable identifiers.

    Times are naive UTC datetimes, matching how DATETIME columns round-trip
    through MariaDB and SQLite.
    """

    def now(self) -> datetime:
        return datetime.now(UTC).replace(tzinfo=None)

    def new_id(self) -> str:
        return str(uuid.uuid4())

    def new_secret(self) -> str:
        # 32 random bytes, URL-safe base64 (43 chars)
        return secrets.token_urlsafe(32)
