"""Storage for the mapping of directory entries to internal usernames."""

from __future__ import annotations

from typing import cast

from sqlalchemy import CursorResult, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_scoped_session

from ..models.mapping import MappingEntry
from ..schema import UserMapping as SQLUserMapping

__all__ = ["UserMapping"]


class UserMapping:
    """Stores and retrieves (UUID, username, DN) mapping records.

    Every method runs in its own transaction, so the store may be used
    directly by the identity layer without any surrounding session handling.

    Parameters
    ----------
    session
        The database session proxy.
    """

    def __init__(self, session: async_scoped_session) -> None:
        self._session = session

    async def clear(self) -> None:
        """Delete all mapping records.

        Used primarily for testing.
        """
        async with self._session.begin():
            await self._session.execute(delete(SQLUserMapping))

    async def count(self) -> int:
        """Count the mapped users.

        Returns
        -------
        int
            Number of mapping records.
        """
        stmt = select(func.count()).select_from(SQLUserMapping)
        async with self._session.begin():
            return await self._session.scalar(stmt) or 0

    async def get_dn_by_name(self, username: str) -> str | None:
        """Return the last known DN for an internal username."""
        stmt = select(SQLUserMapping.dn).where(
            SQLUserMapping.username == username
        )
        async with self._session.begin():
            return await self._session.scalar(stmt)

    async def get_dn_by_uuid(self, uuid: str) -> str | None:
        """Return the last known DN for a UUID."""
        stmt = select(SQLUserMapping.dn).where(SQLUserMapping.uuid == uuid)
        async with self._session.begin():
            return await self._session.scalar(stmt)

    async def get_name_by_dn(self, dn: str) -> str | None:
        """Return the internal username mapped to a DN."""
        stmt = select(SQLUserMapping.username).where(SQLUserMapping.dn == dn)
        async with self._session.begin():
            return await self._session.scalar(stmt)

    async def get_name_by_uuid(self, uuid: str) -> str | None:
        """Return the internal username mapped to a UUID."""
        stmt = select(SQLUserMapping.username).where(
            SQLUserMapping.uuid == uuid
        )
        async with self._session.begin():
            return await self._session.scalar(stmt)

    async def get_uuid_by_dn(self, dn: str) -> str | None:
        """Return the UUID recorded for a DN.

        Parameters
        ----------
        dn
            DN of the entry as it was last seen.

        Returns
        -------
        str or None
            The UUID, or `None` if no mapping records that DN.
        """
        stmt = select(SQLUserMapping.uuid).where(SQLUserMapping.dn == dn)
        async with self._session.begin():
            return await self._session.scalar(stmt)

    async def list(
        self, *, limit: int | None = None, offset: int = 0
    ) -> list[MappingEntry]:
        """Return mapping records ordered by username.

        Parameters
        ----------
        limit
            Maximum number of records to return.
        offset
            Number of records to skip.

        Returns
        -------
        list of MappingEntry
            The matching mapping records.
        """
        stmt = select(SQLUserMapping).order_by(SQLUserMapping.username)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session.begin():
            result = await self._session.scalars(stmt)
            return [MappingEntry.model_validate(m) for m in result.all()]

    async def map(self, dn: str, username: str, uuid: str) -> bool:
        """Record a new mapping.

        Parameters
        ----------
        dn
            Current DN of the entry.
        username
            Internal username assigned to the entry.
        uuid
            Stable identifier of the entry.

        Returns
        -------
        bool
            `True` if the mapping was added, `False` if the username, UUID,
            or DN is already mapped.
        """
        new = SQLUserMapping(username=username, uuid=uuid, dn=dn)
        try:
            async with self._session.begin():
                self._session.add(new)
        except IntegrityError:
            return False
        return True

    async def set_dn_by_uuid(self, dn: str, uuid: str) -> bool:
        """Update the DN recorded for a UUID after a rename.

        Parameters
        ----------
        dn
            New DN of the entry.
        uuid
            Stable identifier of the entry.

        Returns
        -------
        bool
            `True` if a record was updated, `False` otherwise.
        """
        stmt = (
            update(SQLUserMapping)
            .where(SQLUserMapping.uuid == uuid)
            .values(dn=dn)
        )
        async with self._session.begin():
            result = cast("CursorResult", await self._session.execute(stmt))
            return result.rowcount > 0

    async def unmap(self, username: str) -> bool:
        """Remove all mapping records for an internal username.

        Parameters
        ----------
        username
            Internal username to unmap.

        Returns
        -------
        bool
            `True` if any record was removed, `False` otherwise.
        """
        stmt = delete(SQLUserMapping).where(
            SQLUserMapping.username == username
        )

        # See https://github.com/sqlalchemy/sqlalchemy/issues/9185
        async with self._session.begin():
            result = cast("CursorResult", await self._session.execute(stmt))
            return result.rowcount > 0
