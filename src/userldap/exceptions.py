"""Exceptions for userldap."""

from __future__ import annotations

__all__ = [
    "DirectoryConfigError",
    "FatalLookupError",
    "IdentityError",
    "LDAPError",
    "NoPluginError",
    "OfflineIdentityError",
    "PolicyRejectedError",
]


class DirectoryConfigError(ValueError):
    """A configuration lookup used a name that is not a known setting."""


class IdentityError(Exception):
    """Base class for errors resolving a user identity."""


class OfflineIdentityError(IdentityError):
    """The identity was known but its directory entry has vanished.

    Raised by operations that require the identity to still resolve in the
    directory.

    Parameters
    ----------
    username
        Internal username of the offline identity.
    """

    def __init__(self, username: str) -> None:
        super().__init__(f"User {username} exists only as a deleted user")
        self.username = username


class FatalLookupError(IdentityError):
    """The identity object could not be obtained at all.

    Also raised for an offline identity when a persisted home path is
    required but was never recorded.
    """


class PolicyRejectedError(Exception):
    """The directory rejected a password change.

    Parameters
    ----------
    message
        Message from the directory explaining the rejection.
    code
        LDAP result code of the rejection.
    """

    def __init__(self, message: str, code: int) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class LDAPError(Exception):
    """Some error occurred when talking to the LDAP server.

    Parameters
    ----------
    message
        Summary of the error.
    user
        User or DN for which the operation was being performed.
    """

    def __init__(self, message: str, user: str) -> None:
        super().__init__(f"{message} (user: {user})")
        self.user = user


class NoPluginError(Exception):
    """No registered plugin implements the requested action."""
