"""General utility functions."""

from __future__ import annotations

import re
import uuid
from typing import Any

import bonsai
from bonsai.utils import escape_filter_exp

from .constants import USERNAME_INVALID_REGEX

__all__ = [
    "first_value",
    "is_absolute_path",
    "is_dn_under_base",
    "normalize_uuid",
    "sanitize_username",
    "uuid_filter_value",
]

_WINDOWS_PATH_REGEX = re.compile(r"^[A-Za-z]:[\\/]")


def first_value(entry: dict[str, list[Any]], attr: str) -> Any:
    """Return the first value of an attribute in a search result.

    Attribute names in LDAP are case-insensitive, so the lookup is as well.

    Parameters
    ----------
    entry
        Search result.
    attr
        Name of the attribute.

    Returns
    -------
    Any
        The first value, or `None` if the attribute is missing or empty.
    """
    wanted = attr.lower()
    for key, values in entry.items():
        if key.lower() == wanted and values:
            return values[0]
    return None


def is_absolute_path(path: str) -> bool:
    """Whether a home path is absolute, either POSIX or a Windows drive."""
    return path.startswith("/") or bool(_WINDOWS_PATH_REGEX.match(path))


def is_dn_under_base(dn: str, base: str) -> bool:
    """Check whether a DN lies in the subtree of a base DN.

    Parameters
    ----------
    dn
        DN to check.
    base
        Base DN of the subtree.

    Returns
    -------
    bool
        `True` if ``dn`` equals ``base`` or is below it, compared
        case-insensitively RDN by RDN. `False` if either is not a valid DN.
    """
    try:
        dn_rdns = bonsai.LDAPDN(dn).rdns
        base_rdns = bonsai.LDAPDN(base).rdns
    except (bonsai.InvalidDN, TypeError):
        return False
    if not base_rdns:
        return True
    if len(dn_rdns) < len(base_rdns):
        return False
    tail = dn_rdns[len(dn_rdns) - len(base_rdns) :]
    return [str(r).lower() for r in tail] == [
        str(r).lower() for r in base_rdns
    ]


def normalize_uuid(value: str | bytes) -> str:
    """Convert a UUID attribute value to its string form.

    Active Directory stores ``objectGUID`` as 16 bytes in mixed-endian
    order. Other servers store a string.
    """
    if isinstance(value, bytes):
        if len(value) == 16:
            return str(uuid.UUID(bytes_le=value))
        return value.decode()
    return value


def sanitize_username(name: str) -> str:
    """Turn a directory value into a valid internal username.

    Surrounding whitespace is removed, inner spaces become underscores, and
    any other character outside ``[A-Za-z0-9_.@-]`` is dropped.
    """
    name = name.strip().replace(" ", "_")
    return re.sub(USERNAME_INVALID_REGEX, "", name)


def uuid_filter_value(attr: str, value: str) -> str:
    """Format a UUID for use as an assertion value in a search filter.

    ``objectGUID`` is binary and must be searched for byte by byte, so its
    string form is converted back to escaped mixed-endian bytes.
    """
    if attr.lower() == "objectguid":
        try:
            raw = uuid.UUID(value).bytes_le
        except ValueError:
            return escape_filter_exp(value)
        return "".join(f"\\{b:02x}" for b in raw)
    return escape_filter_exp(value)
