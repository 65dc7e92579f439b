"""Interfaces to services provided by the host runtime."""

from __future__ import annotations

from typing import Protocol

__all__ = ["AvatarManager", "UserValueStore"]


class AvatarManager(Protocol):
    """Host service that stores user avatars."""

    async def set_avatar(self, username: str, data: bytes) -> bool:
        """Store a new avatar image for a user.

        Parameters
        ----------
        username
            Internal username.
        data
            Raw image data.

        Returns
        -------
        bool
            `True` if the image was accepted, `False` if it was not a valid
            image.
        """
        ...


class UserValueStore(Protocol):
    """Host storage of persistent per-user values.

    Values are strings grouped by a namespace, so that different components
    of the host can keep their own keys for the same user.
    """

    async def delete_user_value(
        self, username: str, namespace: str, key: str
    ) -> None:
        """Delete a value, doing nothing if it is not set."""
        ...

    async def get_user_value(
        self, username: str, namespace: str, key: str
    ) -> str | None:
        """Return a value, or `None` if it is not set."""
        ...

    async def set_user_value(
        self, username: str, namespace: str, key: str, value: str
    ) -> None:
        """Set a value, replacing any previous one."""
        ...
