"""Shared caches.

These caches are owned by a `~userldap.connection.DirectoryConnection` or by
the `~userldap.services.identity.IdentityManager`. The common theme is some
storage wrapped in an `asyncio.Lock`, with per-key locks so that expensive
directory lookups for the same key are done only once.
"""

from __future__ import annotations

import asyncio
from abc import ABCMeta, abstractmethod
from types import TracebackType
from typing import Any, Literal

from cachetools import TTLCache

from .constants import LDAP_CACHE_LIFETIME, LDAP_CACHE_SIZE

__all__ = [
    "BaseCache",
    "DirectoryCache",
    "IdentityCache",
    "KeyLockManager",
    "PerKeyCache",
]


class BaseCache(metaclass=ABCMeta):
    """Base class for caches."""

    @abstractmethod
    async def clear(self) -> None:
        """Invalidate the cache."""


class KeyLockManager:
    """Helper class for managing per-key locks.

    This should only be created by `PerKeyCache`. It is returned by the
    `PerKeyCache.lock` method and implements the async context manager
    protocol.

    Parameters
    ----------
    general_lock
        Lock protecting the per-key locks.
    key_lock
        Per-key lock for a given key.
    """

    def __init__(
        self, general_lock: asyncio.Lock, key_lock: asyncio.Lock
    ) -> None:
        self._general_lock = general_lock
        self._key_lock = key_lock

    async def __aenter__(self) -> asyncio.Lock:
        async with self._general_lock:
            await self._key_lock.acquire()
            return self._key_lock

    async def __aexit__(
        self,
        exc_type: type[Exception] | None,
        exc: Exception | None,
        tb: TracebackType | None,
    ) -> Literal[False]:
        self._key_lock.release()
        return False


class PerKeyCache(BaseCache):
    """Base class for a cache with per-key locking.

    Notes
    -----
    When there's a cache miss for a key, the goal is to block the expensive
    directory lookup for that key until the first requester has done it and
    added the result to the cache. Subsequent requests that were blocked on
    the lock can then be answered from the cache.

    The per-key lock must be acquired before the general lock is released,
    so the `lock` method cannot simply return the per-key lock. Otherwise a
    concurrent `clear` could delete the per-key lock while a caller still
    holds a reference to it, and a third caller could then create a new lock
    for the same key. `KeyLockManager` handles this.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._key_locks: dict[str, asyncio.Lock] = {}

    async def clear(self) -> None:
        """Invalidate the cache.

        Calls the `initialize` method provided by derivative classes, with
        proper locking, to reinitialize the cache.
        """
        async with self._lock:
            for key, lock in list(self._key_locks.items()):
                async with lock:
                    del self._key_locks[key]
            self.initialize()

    @abstractmethod
    def initialize(self) -> None:
        """Initialize the cache.

        This will be called by `clear` and should also be called by the
        derived class's ``__init__`` method.
        """

    async def lock(self, key: str) -> KeyLockManager:
        """Return the per-key lock for locking.

        The return value should be used with ``async with`` to hold a lock
        around checking for a cached value and, if one is not found, looking
        it up and storing it.

        Parameters
        ----------
        key
            Per-key lock to hold.

        Returns
        -------
        KeyLockManager
            Async context manager that will take the key lock.
        """
        async with self._lock:
            if key not in self._key_locks:
                self._key_locks[key] = asyncio.Lock()
            return KeyLockManager(self._lock, self._key_locks[key])


class DirectoryCache(PerKeyCache):
    """A cache of directory lookup results.

    `None` is reserved to mean a cache miss, so any other value, including
    `False` for a cached negative result, may be stored.

    Parameters
    ----------
    maxsize
        Maximum number of entries.
    lifetime
        Lifetime of an entry in seconds.
    """

    def __init__(
        self,
        maxsize: int = LDAP_CACHE_SIZE,
        lifetime: float = LDAP_CACHE_LIFETIME,
    ) -> None:
        super().__init__()
        self._maxsize = maxsize
        self._lifetime = lifetime
        self._cache: TTLCache[str, Any]
        self.initialize()

    def get(self, key: str) -> Any:
        """Retrieve data from the cache.

        Parameters
        ----------
        key
            Cache key.

        Returns
        -------
        Any
            The cached data or `None` if there is no data in the cache.
        """
        return self._cache.get(key)

    def initialize(self) -> None:
        """Initialize the cache."""
        self._cache = TTLCache(self._maxsize, self._lifetime)

    def invalidate(self, key: str) -> None:
        """Invalidate any cached data for a key.

        Parameters
        ----------
        key
            Cache key to invalidate.
        """
        self._cache.pop(key, None)

    def store(self, key: str, data: Any) -> None:
        """Store data in the cache.

        Parameters
        ----------
        key
            Cache key.
        data
            Data to store. `None` cannot be stored, since it is
            indistinguishable from a cache miss.
        """
        if data is None:
            raise ValueError("None cannot be stored in the directory cache")
        self._cache[key] = data


class IdentityCache(PerKeyCache):
    """Cache of resolved identities, keyed by username and by DN.

    The stored objects are `~userldap.services.identity.User` or
    `~userldap.services.identity.OfflineUser` instances, which both provide
    ``get_username`` and ``get_dn``. Entries expire like directory lookup
    results, so a snapshot of a renamed or deleted entry is not kept
    forever.

    Parameters
    ----------
    maxsize
        Maximum number of entries in each index.
    lifetime
        Lifetime of an entry in seconds.
    """

    def __init__(
        self,
        maxsize: int = LDAP_CACHE_SIZE,
        lifetime: float = LDAP_CACHE_LIFETIME,
    ) -> None:
        super().__init__()
        self._maxsize = maxsize
        self._lifetime = lifetime
        self._by_name: TTLCache[str, Any]
        self._by_dn: TTLCache[str, Any]
        self.initialize()

    def get(self, identifier: str) -> Any:
        """Retrieve an identity by username or DN.

        Parameters
        ----------
        identifier
            Internal username or DN.

        Returns
        -------
        Any
            The cached identity or `None` if there is none.
        """
        return self._by_name.get(identifier) or self._by_dn.get(identifier)

    def initialize(self) -> None:
        """Initialize the cache."""
        self._by_name = TTLCache(self._maxsize, self._lifetime)
        self._by_dn = TTLCache(self._maxsize, self._lifetime)

    def invalidate(self, username: str) -> None:
        """Drop the cached identity for a username.

        Parameters
        ----------
        username
            Internal username to invalidate.
        """
        identity = self._by_name.pop(username, None)
        if identity and identity.get_dn():
            self._by_dn.pop(identity.get_dn(), None)

    def store(self, identity: Any) -> None:
        """Store an identity under its username and, if known, its DN."""
        self._by_name[identity.get_username()] = identity
        if identity.get_dn():
            self._by_dn[identity.get_dn()] = identity
