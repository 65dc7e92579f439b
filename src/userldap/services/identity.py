"""Live and offline user identities and the manager that creates them."""

from __future__ import annotations

import hashlib
from datetime import datetime
from pathlib import Path
from typing import Literal

from safir.datetime import current_datetime, isodatetime, parse_isodatetime
from structlog.stdlib import BoundLogger

from ..cache import IdentityCache
from ..connection import ConnectionAttribute
from ..constants import USER_VALUE_NAMESPACE
from ..exceptions import FatalLookupError
from ..interfaces import AvatarManager, UserValueStore
from ..models.enums import UserValue
from ..util import is_absolute_path
from .access import DirectoryAccess

__all__ = ["IdentityManager", "OfflineUser", "User"]


class User:
    """A user whose directory entry is expected to exist.

    Instances should only be created by `IdentityManager`.

    Parameters
    ----------
    username
        Internal username.
    dn
        Last known DN of the directory entry.
    access
        Directory access service.
    user_values
        Host per-user value store.
    avatar_manager
        Host avatar manager.
    logger
        Logger to use.
    """

    def __init__(
        self,
        username: str,
        dn: str,
        *,
        access: DirectoryAccess,
        user_values: UserValueStore,
        avatar_manager: AvatarManager,
        logger: BoundLogger,
    ) -> None:
        self._username = username
        self._dn = dn
        self._access = access
        self._user_values = user_values
        self._avatar_manager = avatar_manager
        self._logger = logger.bind(user=username)

    def __repr__(self) -> str:
        return f"User({self._username!r}, {self._dn!r})"

    @property
    def dn(self) -> str:
        """Last known DN of the directory entry."""
        return self._dn

    @property
    def username(self) -> str:
        """Internal username."""
        return self._username

    async def compose_and_store_display_name(
        self, value: str, value2: str = ""
    ) -> str:
        """Build the display name and persist it if it changed.

        Parameters
        ----------
        value
            Value of the display name attribute.
        value2
            Value of the second display name attribute, if any.

        Returns
        -------
        str
            ``value``, or ``value (value2)`` if a second value is given.
        """
        display_name = f"{value} ({value2})" if value2 else value
        stored = await self._get_value(UserValue.display_name)
        if stored != display_name:
            await self._set_value(UserValue.display_name, display_name)
        return display_name

    async def get_avatar_image(self) -> bytes | None:
        """Read the avatar image from the directory.

        Returns
        -------
        bytes or None
            Raw image data from the first avatar attribute that has a value,
            or `None` if there is none or avatars are disabled.
        """
        config = self._access.connection.config
        for attr in config.avatar_attributes:
            values = await self._access.read_attribute(self._dn, attr)
            if values and values[0]:
                value = values[0]
                return value.encode() if isinstance(value, str) else value
        return None

    def get_dn(self) -> str:
        return self._dn

    async def get_home_path(
        self, value: str | None = None
    ) -> str | Literal[False]:
        """Determine the home path from the home folder naming rule.

        Parameters
        ----------
        value
            Value of the home attribute if it is already known. If not
            given, it is read from the directory.

        Returns
        -------
        str or bool
            The home path, or `False` if there is no naming rule or the
            attribute has no value. Relative values are placed under the data
            directory. The result is stored as the user's ``homePath``.
        """
        config = self._access.connection.config
        attr = config.home_attribute
        if value is None and attr:
            values = await self._access.read_attribute(self._dn, attr)
            value = values[0] if values else ""
            if isinstance(value, bytes):
                value = value.decode()
        if not value:
            await self._set_value(UserValue.home_path, "")
            return False

        if is_absolute_path(value):
            path = value
        else:
            data_directory = self._access.connection.get_attribute(
                ConnectionAttribute.data_directory
            )
            path = str(Path(data_directory) / value)
        await self._set_value(UserValue.home_path, path)
        self._logger.debug("Determined home path", home=path)
        return path

    def get_username(self) -> str:
        return self._username

    async def mark_login(self) -> None:
        """Record that the user has successfully logged in."""
        await self._set_value(UserValue.first_login, "1")

    async def update_avatar(self, data: bytes | None = None) -> bool:
        """Hand the avatar image to the host avatar manager.

        The image is only passed on if it changed since the last successful
        update, tracked by its SHA-1 checksum.

        Parameters
        ----------
        data
            Image data. If not given, it is read from the directory.

        Returns
        -------
        bool
            `True` if the image is unchanged or was accepted, `False` if
            there is no image or the avatar manager rejected it.
        """
        if data is None:
            data = await self.get_avatar_image()
        if not data:
            return False
        checksum = hashlib.sha1(data).hexdigest()
        if await self._get_value(UserValue.last_avatar_checksum) == checksum:
            return True
        if not await self._avatar_manager.set_avatar(self._username, data):
            self._logger.warning("Avatar image rejected")
            return False
        await self._set_value(UserValue.last_avatar_checksum, checksum)
        self._logger.info("Updated avatar")
        return True

    async def _get_value(self, key: UserValue) -> str | None:
        return await self._user_values.get_user_value(
            self._username, USER_VALUE_NAMESPACE, key.value
        )

    async def _set_value(self, key: UserValue, value: str) -> None:
        await self._user_values.set_user_value(
            self._username, USER_VALUE_NAMESPACE, key.value, value
        )


class OfflineUser:
    """Snapshot of a user whose directory entry has disappeared.

    Only holds what was recorded before the entry vanished and never talks
    to the directory.

    Parameters
    ----------
    username
        Internal username.
    dn
        Last known DN, if the user is still mapped.
    uuid
        Stable identifier, if the user is still mapped.
    display_name
        Last stored display name.
    home_path
        Last stored home path. The empty string means none was determined.
    detected_on
        When the entry was found to be missing.
    """

    def __init__(
        self,
        username: str,
        *,
        dn: str | None = None,
        uuid: str | None = None,
        display_name: str | None = None,
        home_path: str | None = None,
        detected_on: datetime | None = None,
    ) -> None:
        self._username = username
        self._dn = dn
        self._uuid = uuid
        self._display_name = display_name
        self._home_path = home_path
        self._detected_on = detected_on

    def __repr__(self) -> str:
        return f"OfflineUser({self._username!r}, {self._dn!r})"

    def get_detected_on(self) -> datetime | None:
        return self._detected_on

    def get_display_name(self) -> str | None:
        return self._display_name

    def get_dn(self) -> str | None:
        return self._dn

    def get_home_path(self) -> str:
        """Return the persisted home path.

        Raises
        ------
        FatalLookupError
            Raised if no home path was ever recorded for the user.
        """
        if not self._home_path:
            msg = f"No home path recorded for deleted user {self._username}"
            raise FatalLookupError(msg)
        return self._home_path

    def get_oc_name(self) -> str:
        """Return the internal username."""
        return self._username

    def get_username(self) -> str:
        return self._username

    def get_uuid(self) -> str | None:
        return self._uuid

    def has_home_path(self) -> bool:
        return bool(self._home_path)


class IdentityManager:
    """Create and cache user identities.

    Parameters
    ----------
    access
        Directory access service.
    user_values
        Host per-user value store.
    avatar_manager
        Host avatar manager.
    logger
        Logger to use.
    cache
        Identity cache. A new one is created if not given.
    """

    def __init__(
        self,
        *,
        access: DirectoryAccess,
        user_values: UserValueStore,
        avatar_manager: AvatarManager,
        logger: BoundLogger,
        cache: IdentityCache | None = None,
    ) -> None:
        self._access = access
        self._user_values = user_values
        self._avatar_manager = avatar_manager
        self._logger = logger
        self._cache = cache or IdentityCache()

    async def clear(self) -> None:
        """Drop all cached identities."""
        await self._cache.clear()

    async def get(self, identifier: str) -> User | OfflineUser | None:
        """Return the identity for a username or DN.

        Parameters
        ----------
        identifier
            Internal username or DN.

        Returns
        -------
        User or OfflineUser or None
            `OfflineUser` if the user is marked as deleted, `User` if it is
            mapped, or `None` if the identifier was never known.
        """
        identity = self._cache.get(identifier)
        if identity:
            return identity
        async with await self._cache.lock(identifier):
            identity = self._cache.get(identifier)
            if identity:
                return identity
            identity = await self._resolve(identifier)
            if identity:
                self._cache.store(identity)
            return identity

    def invalidate(self, username: str) -> None:
        """Drop the cached identity of a user."""
        self._cache.invalidate(username)

    async def is_deleted_user(self, username: str) -> bool:
        """Whether a user is marked as deleted in the per-user store."""
        value = await self._user_values.get_user_value(
            username, USER_VALUE_NAMESPACE, UserValue.deleted.value
        )
        return value == "1"

    async def mark_offline(self, username: str) -> None:
        """Mark a user as deleted and record when that was detected.

        Parameters
        ----------
        username
            Internal username.
        """
        now = isodatetime(current_datetime())
        await self._set_value(username, UserValue.deleted, "1")
        await self._set_value(username, UserValue.detected_on, now)
        self._cache.invalidate(username)
        self._logger.info("Marked user as deleted", user=username)

    async def unmark_offline(self, username: str) -> None:
        """Clear the deleted marker of a user whose entry is back."""
        for key in (UserValue.deleted, UserValue.detected_on):
            await self._user_values.delete_user_value(
                username, USER_VALUE_NAMESPACE, key.value
            )
        self._cache.invalidate(username)
        self._logger.info("User is no longer deleted", user=username)

    def _create_user(self, username: str, dn: str) -> User:
        return User(
            username,
            dn,
            access=self._access,
            user_values=self._user_values,
            avatar_manager=self._avatar_manager,
            logger=self._logger,
        )

    async def _create_offline_user(self, username: str) -> OfflineUser:
        mapping = self._access.get_user_mapper()
        dn = await mapping.get_dn_by_name(username)
        uuid = await mapping.get_uuid_by_dn(dn) if dn else None
        detected_on = await self._get_value(username, UserValue.detected_on)
        return OfflineUser(
            username,
            dn=dn,
            uuid=uuid,
            display_name=await self._get_value(
                username, UserValue.display_name
            ),
            home_path=await self._get_value(username, UserValue.home_path),
            detected_on=(
                parse_isodatetime(detected_on) if detected_on else None
            ),
        )

    async def _get_value(self, username: str, key: UserValue) -> str | None:
        return await self._user_values.get_user_value(
            username, USER_VALUE_NAMESPACE, key.value
        )

    async def _resolve(self, identifier: str) -> User | OfflineUser | None:
        if self._access.string_resembles_dn(identifier):
            username = await self._access.dn2username(identifier)
            if not username:
                return None
            if await self.is_deleted_user(username):
                return await self._create_offline_user(username)
            return self._create_user(username, identifier)

        if await self.is_deleted_user(identifier):
            return await self._create_offline_user(identifier)
        dn = await self._access.username2dn(identifier)
        if not dn:
            return None
        return self._create_user(identifier, dn)

    async def _set_value(
        self, username: str, key: UserValue, value: str
    ) -> None:
        await self._user_values.set_user_value(
            username, USER_VALUE_NAMESPACE, key.value, value
        )
