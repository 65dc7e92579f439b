"""Directory access: searches, filters, and DN to username resolution."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Literal

import bonsai
from bonsai.utils import escape_filter_exp
from structlog.stdlib import BoundLogger

from ..cache import IdentityCache
from ..connection import ConnectionAttribute, DirectoryConnection
from ..constants import (
    MAX_USERNAME_ATTEMPTS,
    UID_PLACEHOLDER,
    UUID_ATTRIBUTES,
)
from ..exceptions import LDAPError
from ..storage.ldap import LDAPEntry, LDAPStorage
from ..storage.mapping import UserMapping
from ..util import (
    first_value,
    is_dn_under_base,
    normalize_uuid,
    sanitize_username,
    uuid_filter_value,
)

_NO_ATTRIBUTES = "1.1"
"""Attribute list OID requesting no attributes, only the DN."""

__all__ = ["DirectoryAccess"]


class DirectoryAccess:
    """Higher-level access to user entries in the directory.

    Builds search filters, runs searches under the user base DN, and
    translates between DNs and internal usernames through the persistent
    mapping.

    Parameters
    ----------
    connection
        Connection to the directory.
    ldap
        LDAP storage layer.
    mapping
        Persistent mapping between DNs, UUIDs, and internal usernames.
    logger
        Logger to use.
    identity_cache
        Cache of resolved identities. A cached identity is dropped when a
        rename of its entry is recorded.
    """

    def __init__(
        self,
        *,
        connection: DirectoryConnection,
        ldap: LDAPStorage,
        mapping: UserMapping,
        logger: BoundLogger,
        identity_cache: IdentityCache | None = None,
    ) -> None:
        self.connection = connection
        self._ldap = ldap
        self._mapping = mapping
        self._logger = logger
        self._identity_cache = identity_cache

    async def are_credentials_valid(self, dn: str, password: str) -> bool:
        """Check a password by binding as the user.

        Parameters
        ----------
        dn
            DN of the user.
        password
            Password to check.

        Returns
        -------
        bool
            Whether the bind succeeded. An empty password is always rejected,
            since the server would treat it as an anonymous bind.
        """
        if not password:
            self._logger.debug("Rejecting empty password", user=dn)
            return False
        return await self._ldap.check_credentials(dn, password)

    def combine_filter_with_and(self, parts: Iterable[str]) -> str:
        """Combine filter parts with AND, skipping empty ones."""
        return self._combine_filter("&", parts)

    def combine_filter_with_or(self, parts: Iterable[str]) -> str:
        """Combine filter parts with OR, skipping empty ones."""
        return self._combine_filter("|", parts)

    async def count_users(self) -> int | Literal[False]:
        """Count the entries matching the user filter.

        Returns
        -------
        int or bool
            Number of users, or `False` if the directory could not be
            searched.
        """
        user_filter = self.connection.get_attribute(
            ConnectionAttribute.user_filter
        )
        try:
            entries = await self._ldap.search(
                self._user_base(), user_filter, [_NO_ATTRIBUTES]
            )
        except LDAPError:
            self._logger.warning("Unable to count users")
            return False
        return len(entries)

    async def dn2username(self, dn: str) -> str | Literal[False]:
        """Resolve a DN to an internal username.

        If the DN is not mapped, the entry's UUID is read. A mapped UUID
        means the entry was renamed, so the new DN is recorded and the
        existing username is returned. Otherwise a new username is derived
        and mapped.

        Parameters
        ----------
        dn
            DN of the entry.

        Returns
        -------
        str or bool
            The internal username, or `False` if the entry cannot be read,
            does not match the user filter, or has no UUID.
        """
        username = await self._mapping.get_name_by_dn(dn)
        if username:
            return username

        logger = self._logger.bind(user=dn)
        attrs = list(self._uuid_attributes())
        internal_attr = self.connection.get_attribute(
            ConnectionAttribute.internal_username_attr
        )
        if internal_attr:
            attrs.append(internal_attr)
        user_filter = self.connection.get_attribute(
            ConnectionAttribute.user_filter
        )
        entries = await self._ldap.read(dn, user_filter, attrs)
        if not entries:
            logger.debug("Entry not readable as a user")
            return False
        entry = entries[0]
        uuid = self._get_uuid(entry)
        if not uuid:
            logger.warning("User entry has no UUID")
            return False

        username = await self._mapping.get_name_by_uuid(uuid)
        if username:
            await self._mapping.set_dn_by_uuid(dn, uuid)
            if self._identity_cache:
                self._identity_cache.invalidate(username)
            logger.info("Recorded renamed DN", username=username, uuid=uuid)
            return username

        candidate = None
        if internal_attr:
            candidate = first_value(entry, internal_attr)
            if isinstance(candidate, bytes):
                candidate = candidate.decode()
        if not candidate:
            candidate = uuid
        username = await self._create_username(sanitize_username(candidate))
        if not username:
            logger.warning("Cannot derive a username", candidate=candidate)
            return False
        if await self._mapping.map(dn, username, uuid):
            logger.info("Mapped new user", username=username, uuid=uuid)
            return username

        # Another request mapped the same entry first.
        return await self._mapping.get_name_by_uuid(uuid) or False

    def escape_filter_part(
        self, value: str, allow_asterisk: bool = False
    ) -> str:
        """Escape a value for use in a search filter.

        Parameters
        ----------
        value
            Value to escape.
        allow_asterisk
            If set, a leading ``*`` is kept as a wildcard.

        Returns
        -------
        str
            The escaped value.
        """
        prefix = ""
        if allow_asterisk and value.startswith("*"):
            prefix = "*"
            value = value[1:]
        return prefix + escape_filter_exp(value)

    async def fetch_list_of_users(
        self,
        filter_exp: str,
        attrs: list[str],
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[LDAPEntry]:
        """Search for users under the user base DN.

        Parameters
        ----------
        filter_exp
            Search filter.
        attrs
            Attributes to retrieve.
        limit
            Maximum number of entries to return, or `None` for all.
        offset
            Number of entries to skip.

        Returns
        -------
        list of dict
            The window ``[offset:offset + limit]`` of matching entries.
        """
        entries = await self._ldap.search(self._user_base(), filter_exp, attrs)
        start = offset or 0
        if limit is None:
            return entries[start:]
        return entries[start : start + limit]

    async def fetch_users_by_login_name(self, login: str) -> list[LDAPEntry]:
        """Find the entries matching a login name.

        Parameters
        ----------
        login
            Login name as typed by the user.

        Returns
        -------
        list of dict
            Matching entries, each with its DN under ``dn``.
        """
        login_filter = self.connection.get_attribute(
            ConnectionAttribute.login_filter
        )
        filter_exp = login_filter.replace(
            UID_PLACEHOLDER, self.escape_filter_part(login)
        )
        return await self.fetch_list_of_users(
            filter_exp, self.user_attributes()
        )

    def get_filter_part_for_user_search(self, search: str) -> str:
        """Build the filter part matching a user search term.

        Parameters
        ----------
        search
            Search term, already escaped.

        Returns
        -------
        str
            Substring matches of the term against the search attributes (or
            the display name attribute if none are configured), combined with
            OR. Empty if there is no search term.
        """
        if not search:
            return ""
        attrs = self.connection.config.search_attributes or [
            self.connection.get_attribute(
                ConnectionAttribute.display_name_attr
            )
        ]
        term = search if search.startswith("*") else f"*{search}"
        term = term if term.endswith("*") else f"{term}*"
        parts = [f"({a}={term})" for a in attrs]
        if len(parts) == 1:
            return parts[0]
        return self.combine_filter_with_or(parts)

    async def get_user_dn_by_uuid(self, uuid: str) -> str | None:
        """Search for the current DN of the entry with a UUID.

        Parameters
        ----------
        uuid
            Stable identifier of the entry.

        Returns
        -------
        str or None
            Current DN, or `None` if no user entry has that UUID.
        """
        uuid_part = self.combine_filter_with_or(
            f"({a}={uuid_filter_value(a, uuid)})"
            for a in self._uuid_attributes()
        )
        user_filter = self.connection.get_attribute(
            ConnectionAttribute.user_filter
        )
        filter_exp = self.combine_filter_with_and([user_filter, uuid_part])
        entries = await self.fetch_list_of_users(
            filter_exp, [_NO_ATTRIBUTES], limit=1
        )
        if not entries:
            return None
        return entries[0]["dn"][0]

    def get_user_mapper(self) -> UserMapping:
        """Return the persistent user mapping."""
        return self._mapping

    def is_dn_part_of_base(self, dn: str) -> bool:
        """Whether a DN lies under the configured user base DN."""
        return is_dn_under_base(dn, self._user_base())

    async def read_attribute(
        self, dn: str, attr: str, filter_exp: str = "(objectClass=*)"
    ) -> list[Any] | Literal[False]:
        """Read an attribute of an entry.

        Parameters
        ----------
        dn
            DN of the entry.
        attr
            Attribute to read, or the empty string to only check that the
            entry exists.
        filter_exp
            Filter the entry must match.

        Returns
        -------
        list or bool
            The attribute values, an empty list for an existence check, or
            `False` if the entry or attribute could not be read.

        Raises
        ------
        LDAPError
            Raised if the directory could not be contacted.
        """
        attrlist = [attr] if attr else [_NO_ATTRIBUTES]
        entries = await self._ldap.read(dn, filter_exp, attrlist)
        if not entries:
            self._logger.debug("Entry not readable", user=dn, attr=attr)
            return False
        if not attr:
            return []
        wanted = attr.lower()
        for key, values in entries[0].items():
            if key.lower() == wanted and values:
                return values
        return False

    async def resolve_to_usernames(
        self, entries: Iterable[LDAPEntry | str]
    ) -> list[str]:
        """Convert search results to internal usernames.

        Entries that are already usernames pass through. Entries whose DN
        does not resolve are dropped.
        """
        usernames = []
        for entry in entries:
            if isinstance(entry, str):
                usernames.append(entry)
                continue
            username = await self.dn2username(entry["dn"][0])
            if username:
                usernames.append(username)
        return usernames

    async def set_password(self, dn: str, password: str) -> Literal[True]:
        """Change the password of a user.

        Parameters
        ----------
        dn
            DN of the user.
        password
            New password.

        Returns
        -------
        bool
            Always `True`.

        Raises
        ------
        PolicyRejectedError
            Raised if the directory rejected the password.
        LDAPError
            Raised if the directory could not be contacted.
        """
        await self._ldap.modify_password(dn, password)
        return True

    def string_resembles_dn(self, value: str) -> bool:
        """Whether a string looks like a DN with more than one RDN."""
        try:
            dn = bonsai.LDAPDN(value)
        except (bonsai.InvalidDN, TypeError):
            return False
        return len(dn.rdns) > 1

    def user_attributes(self) -> list[str]:
        """Attributes to request when searching for user entries."""
        attrs = list(self._uuid_attributes())
        for name in (
            ConnectionAttribute.display_name_attr,
            ConnectionAttribute.display_name2_attr,
            ConnectionAttribute.internal_username_attr,
        ):
            if value := self.connection.get_attribute(name):
                attrs.append(value)
        if home_attr := self.connection.config.home_attribute:
            attrs.append(home_attr)
        return list(dict.fromkeys(attrs))

    async def username2dn(self, username: str) -> str | Literal[False]:
        """Return the DN of a mapped username.

        Parameters
        ----------
        username
            Internal username.

        Returns
        -------
        str or bool
            The last known DN, or `False` if the username is not mapped or
            its DN is outside the user base DN.
        """
        dn = await self._mapping.get_dn_by_name(username)
        if dn and self.is_dn_part_of_base(dn):
            return dn
        return False

    def _combine_filter(self, operator: str, parts: Iterable[str]) -> str:
        wrapped = [p if p.startswith("(") else f"({p})" for p in parts if p]
        if not wrapped:
            return ""
        return f"({operator}{''.join(wrapped)})"

    async def _create_username(self, base: str) -> str | None:
        """Find a free username, appending ``_2``, ``_3``, ... on collision."""
        if not base:
            return None
        if not await self._mapping.get_dn_by_name(base):
            return base
        for attempt in range(2, MAX_USERNAME_ATTEMPTS + 1):
            candidate = f"{base}_{attempt}"
            if not await self._mapping.get_dn_by_name(candidate):
                return candidate
        return None

    def _get_uuid(self, entry: LDAPEntry) -> str | None:
        for attr in self._uuid_attributes():
            value = first_value(entry, attr)
            if value:
                return normalize_uuid(value)
        return None

    def _user_base(self) -> str:
        return self.connection.get_attribute(ConnectionAttribute.user_base_dn)

    def _uuid_attributes(self) -> tuple[str, ...]:
        uuid_attr = self.connection.get_attribute(
            ConnectionAttribute.uuid_attr
        )
        if not uuid_attr or uuid_attr == "auto":
            return UUID_ATTRIBUTES
        return (uuid_attr,)
