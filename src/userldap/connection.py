"""Connection to the LDAP directory."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

import bonsai
from bonsai import LDAPClient
from bonsai.asyncio import AIOConnectionPool
from structlog.stdlib import BoundLogger

from .cache import DirectoryCache, KeyLockManager
from .config import LDAPConfig
from .exceptions import DirectoryConfigError

__all__ = ["ConnectionAttribute", "DirectoryConnection"]


class ConnectionAttribute(StrEnum):
    """Names of the settings available through `DirectoryConnection`.

    Each value is the name of the corresponding `~userldap.config.LDAPConfig`
    field.
    """

    avatar_rule = "avatar_rule"
    data_directory = "data_directory"
    display_name2_attr = "display_name2_attr"
    display_name_attr = "display_name_attr"
    home_folder_naming_rule = "home_folder_naming_rule"
    internal_username_attr = "internal_username_attr"
    login_filter = "login_filter"
    turn_on_password_change = "turn_on_password_change"
    user_base_dn = "user_base_dn"
    user_filter = "user_filter"
    uuid_attr = "uuid_attr"


class DirectoryConnection:
    """Lazily established connection to the LDAP directory.

    Holds the connection pool, exposes the directory settings by name, and
    owns the per-connection result cache. Changing the configuration drops
    both the pool and the cache.

    Parameters
    ----------
    config
        Configuration for the LDAP directory.
    logger
        Logger to use.
    cache
        Result cache to use. A new one is created if not given.
    """

    def __init__(
        self,
        config: LDAPConfig,
        logger: BoundLogger,
        *,
        cache: DirectoryCache | None = None,
    ) -> None:
        self._config = config
        self._logger = logger.bind(ldap_url=str(config.url))
        self._cache = cache or DirectoryCache()
        self._pool: AIOConnectionPool | None = None

    @property
    def config(self) -> LDAPConfig:
        """Configuration of the connection."""
        return self._config

    async def aclose(self) -> None:
        """Close the connection pool and invalidate the cache."""
        if self._pool:
            await self._pool.close()
            self._pool = None
        await self._cache.clear()

    async def clear_cache(self) -> None:
        """Invalidate the result cache."""
        await self._cache.clear()

    def get_attribute(self, name: ConnectionAttribute | str) -> Any:
        """Look up a directory setting by name.

        Parameters
        ----------
        name
            Name of the setting.

        Returns
        -------
        Any
            Value of the setting, or `None` if it is unset or empty.

        Raises
        ------
        DirectoryConfigError
            Raised if the name is not a known setting.
        """
        try:
            attribute = ConnectionAttribute(name)
        except ValueError as e:
            raise DirectoryConfigError(f"Unknown setting {name}") from e
        value = getattr(self._config, attribute.value)
        if value is None or value == "":
            return None
        return value

    def get_connection_resource(self) -> AIOConnectionPool | None:
        """Return the connection pool, creating it if necessary.

        Returns
        -------
        bonsai.asyncio.AIOConnectionPool or None
            The connection pool, or `None` if it could not be created.
        """
        if self._pool:
            return self._pool
        try:
            client = LDAPClient(str(self._config.url))
            if self._config.user_dn and self._config.password:
                client.set_credentials(
                    "SIMPLE",
                    user=self._config.user_dn,
                    password=self._config.password.get_secret_value(),
                )
            self._pool = AIOConnectionPool(client)
        except bonsai.LDAPError as e:
            self._logger.exception("Cannot create LDAP pool", error=str(e))
            return None
        return self._pool

    def get_from_cache(self, key: str) -> Any:
        """Retrieve a cached result.

        Returns
        -------
        Any
            The cached value, or `None` if nothing is cached for the key.
            Cached negative results are returned as `False`.
        """
        return self._cache.get(key)

    def invalidate_cache(self, key: str) -> None:
        """Remove a single cached result."""
        self._cache.invalidate(key)

    async def lock(self, key: str) -> KeyLockManager:
        """Return the cache lock for a key, for use with ``async with``."""
        return await self._cache.lock(key)

    async def reconfigure(self, config: LDAPConfig) -> None:
        """Switch to a new configuration.

        The connection pool is closed and recreated lazily on next use, and
        all cached results are dropped.

        Parameters
        ----------
        config
            New configuration for the LDAP directory.
        """
        await self.aclose()
        self._config = config
        self._logger = self._logger.bind(ldap_url=str(config.url))

    def write_to_cache(self, key: str, value: Any) -> None:
        """Cache a result.

        Parameters
        ----------
        key
            Cache key.
        value
            Value to cache, which may be `False` for a negative result.
        """
        self._cache.store(key, value)
