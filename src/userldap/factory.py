"""Create userldap components."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass
from typing import Self

import structlog
from safir.database import create_async_session
from safir.logging import configure_logging
from sqlalchemy.ext.asyncio import AsyncEngine, async_scoped_session
from sqlalchemy.future import select
from structlog.stdlib import BoundLogger

from .backend import Backend
from .cache import DirectoryCache, IdentityCache
from .config import Config
from .connection import DirectoryConnection
from .interfaces import AvatarManager, UserValueStore
from .plugins import PluginRegistry
from .schema import UserMapping as SQLUserMapping
from .services.access import DirectoryAccess
from .services.identity import IdentityManager
from .storage.ldap import LDAPStorage
from .storage.mapping import UserMapping

__all__ = ["Factory", "ProcessContext"]


@dataclass(frozen=True, slots=True)
class ProcessContext:
    """Per-process application context.

    This object caches all of the per-process singletons that can be reused
    for every backend call and only need to be recreated if the configuration
    changes. This does not include the database session.
    """

    config: Config
    """userldap configuration."""

    connection: DirectoryConnection
    """Connection to the LDAP directory, with its result cache."""

    identity_cache: IdentityCache
    """Cache of resolved user identities."""

    plugins: PluginRegistry
    """Registry of plugins overriding native actions."""

    user_values: UserValueStore
    """Host per-user value store."""

    avatar_manager: AvatarManager
    """Host avatar manager."""

    @classmethod
    async def from_config(
        cls,
        config: Config,
        *,
        user_values: UserValueStore,
        avatar_manager: AvatarManager,
    ) -> Self:
        """Create a new process context from the userldap configuration.

        Also configures logging for the ``userldap`` logger.

        Parameters
        ----------
        config
            The userldap configuration.
        user_values
            Host per-user value store.
        avatar_manager
            Host avatar manager.

        Returns
        -------
        ProcessContext
            Shared context for a userldap process.
        """
        configure_logging(
            name="userldap",
            profile=config.profile,
            log_level=config.log_level,
            add_timestamp=True,
        )
        logger = structlog.get_logger("userldap")
        return cls(
            config=config,
            connection=DirectoryConnection(
                config.ldap, logger, cache=DirectoryCache()
            ),
            identity_cache=IdentityCache(),
            plugins=PluginRegistry(logger),
            user_values=user_values,
            avatar_manager=avatar_manager,
        )

    async def aclose(self) -> None:
        """Clean up a process context.

        Called during shutdown, or before recreating the process context using
        a different configuration.
        """
        await self.connection.aclose()
        await self.identity_cache.clear()


class Factory:
    """Build userldap components.

    Uses the contents of a `ProcessContext` to construct the components of
    the backend on demand.

    Parameters
    ----------
    context
        Shared process context.
    session
        Database session.
    logger
        Logger to use.
    """

    @classmethod
    async def create(
        cls,
        config: Config,
        engine: AsyncEngine,
        *,
        user_values: UserValueStore,
        avatar_manager: AvatarManager,
        check_db: bool = False,
    ) -> Self:
        """Create a component factory.

        If an async context manager can be used, call `standalone` rather
        than this method.

        Parameters
        ----------
        config
            userldap configuration.
        engine
            Database engine to use for connections.
        user_values
            Host per-user value store.
        avatar_manager
            Host avatar manager.
        check_db
            If set to `True`, check database connectivity before returning by
            doing a simple query.

        Returns
        -------
        Factory
            Newly-created factory. The caller must call `aclose` on the
            returned object during shutdown.
        """
        context = await ProcessContext.from_config(
            config, user_values=user_values, avatar_manager=avatar_manager
        )
        logger = structlog.get_logger("userldap")
        statement = select(SQLUserMapping) if check_db else None
        session = await create_async_session(engine, statement=statement)
        return cls(context, session, logger)

    @classmethod
    @asynccontextmanager
    async def standalone(
        cls,
        config: Config,
        engine: AsyncEngine,
        *,
        user_values: UserValueStore,
        avatar_manager: AvatarManager,
        check_db: bool = False,
    ) -> AsyncIterator[Self]:
        """Async context manager for userldap components.

        Parameters
        ----------
        config
            userldap configuration.
        engine
            Database engine to use for connections.
        user_values
            Host per-user value store.
        avatar_manager
            Host avatar manager.
        check_db
            If set to `True`, check database connectivity before returning by
            doing a simple query.

        Yields
        ------
        Factory
            The factory. Must be used as an async context manager.

        Examples
        --------
        .. code-block:: python

           async with Factory.standalone(config, engine, **host) as factory:
               backend = factory.create_backend()
               exists = await backend.user_exists("roland")
        """
        factory = await cls.create(
            config,
            engine,
            user_values=user_values,
            avatar_manager=avatar_manager,
            check_db=check_db,
        )
        async with aclosing(factory):
            yield factory

    def __init__(
        self,
        context: ProcessContext,
        session: async_scoped_session,
        logger: BoundLogger,
    ) -> None:
        self.session = session
        self._context = context
        self._logger = logger

    @property
    def connection(self) -> DirectoryConnection:
        """Underlying directory connection, mainly for tests."""
        return self._context.connection

    @property
    def plugins(self) -> PluginRegistry:
        """Registry of plugins, for registering plugins on startup."""
        return self._context.plugins

    async def aclose(self) -> None:
        """Shut down the factory.

        After this method is called, the factory object is no longer valid
        and must not be used.
        """
        try:
            await self._context.aclose()
        finally:
            await self.session.remove()

    def create_backend(self) -> Backend:
        """Create the user backend.

        Returns
        -------
        Backend
            Newly-created backend.
        """
        access = self.create_directory_access()
        return Backend(
            access=access,
            identities=self.create_identity_manager(access),
            plugins=self._context.plugins,
            logger=self._logger,
        )

    def create_directory_access(self) -> DirectoryAccess:
        """Create the directory access service.

        Returns
        -------
        DirectoryAccess
            Newly-created directory access service.
        """
        return DirectoryAccess(
            connection=self._context.connection,
            ldap=self.create_ldap_storage(),
            mapping=self.create_user_mapping(),
            logger=self._logger,
            identity_cache=self._context.identity_cache,
        )

    def create_identity_manager(
        self, access: DirectoryAccess | None = None
    ) -> IdentityManager:
        """Create the identity manager.

        Parameters
        ----------
        access
            Directory access service to use. A new one is created if not
            given.

        Returns
        -------
        IdentityManager
            Newly-created identity manager, sharing the process-wide
            identity cache.
        """
        return IdentityManager(
            access=access or self.create_directory_access(),
            user_values=self._context.user_values,
            avatar_manager=self._context.avatar_manager,
            logger=self._logger,
            cache=self._context.identity_cache,
        )

    def create_ldap_storage(self) -> LDAPStorage:
        """Create the LDAP storage layer."""
        return LDAPStorage(self._context.connection, self._logger)

    def create_user_mapping(self) -> UserMapping:
        """Create the storage layer for the user mapping."""
        return UserMapping(self.session)

