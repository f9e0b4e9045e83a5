from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models import Space, SpacePrivate
from shared.utils import utc_now


class SpaceRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_name(self, space_name: str) -> Space | None:
        res = await self.session.execute(
            select(Space).where(Space.space_name == str(space_name)).order_by(Space.id.asc()).limit(1)
        )
        return res.scalar_one_or_none()

    async def upsert_for_link(self, space_name: str, *, token_hash: str, expires_at: datetime) -> Space:
        """Attach a fresh magic-token digest to the named space, creating it if needed.

        Any previous outstanding token is replaced and the space drops back to
        unauthenticated until the new link is consumed.
        """
        space = await self.get_by_name(space_name)
        if space is None:
            space = Space(
                space_name=str(space_name),
                magic_token_hash=str(token_hash),
                token_expires_at=expires_at,
                is_authenticated=False,
            )
            self.session.add(space)
        else:
            space.magic_token_hash = str(token_hash)
            space.token_expires_at = expires_at
            space.is_authenticated = False
            space.updated_at = utc_now()
        await self.session.flush()
        return space

    async def set_email(self, space_id: int, email: str) -> SpacePrivate:
        normalized = str(email).strip().lower()
        row = await self.session.get(SpacePrivate, int(space_id))
        if row is None:
            row = SpacePrivate(space_id=int(space_id), email=normalized)
            self.session.add(row)
        else:
            row.email = normalized
            row.updated_at = utc_now()
        await self.session.flush()
        return row
