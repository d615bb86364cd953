"""User directory: identity lookups for token minting and display details."""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.models.user import Users
from tenantguard.services.credential_store import StoreAccess


class UserDirectory(StoreAccess):
    async def find_by_id(self, user_id: str) -> Users | None:
        async def op(session: AsyncSession) -> Users | None:
            return await session.get(Users, user_id)

        return await self._read(op, "find_user_by_id")

    async def find_by_email(self, email: str) -> Users | None:
        async def op(session: AsyncSession) -> Users | None:
            result = await session.execute(
                select(Users).where(Users.email == email.strip().lower())  # type: ignore[arg-type]
            )
            return result.scalar_one_or_none()

        return await self._read(op, "find_user_by_email")

    async def find_many(self, user_ids: set[str]) -> dict[str, Users]:
        """
        Fetch several users in a single query.

        Returns:
            Dict mapping user id to user. Missing ids are absent from the result.
        """
        if not user_ids:
            return {}

        async def op(session: AsyncSession) -> dict[str, Users]:
            result = await session.execute(
                select(Users).where(Users.id.in_(user_ids))  # type: ignore[attr-defined]
            )
            return {user.id: user for user in result.scalars().all()}

        return await self._read(op, "find_many_users")

    async def record_login(self, user: Users, when: datetime) -> None:
        async def op(session: AsyncSession) -> None:
            db_user = await session.get(Users, user.id)
            if db_user is not None:
                db_user.last_login_at = when
                await session.commit()

        await self._write(op, "record_login")
