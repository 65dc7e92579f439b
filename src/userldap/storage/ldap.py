"""LDAP storage layer for userldap."""

from __future__ import annotations

import asyncio
import re
from typing import Any

import bonsai
from bonsai import LDAPClient, LDAPSearchScope
from structlog.stdlib import BoundLogger

from ..connection import DirectoryConnection
from ..constants import LDAP_TIMEOUT
from ..exceptions import LDAPError, PolicyRejectedError

LDAPEntry = dict[str, list[Any]]
"""A search result: attribute names to lists of values, plus ``dn``."""

_POLICY_RESULT_CODES = frozenset({19, 53})
"""LDAP result codes meaning a password was rejected by policy.

19 is constraintViolation and 53 is unwillingToPerform, which are what
OpenLDAP ppolicy and Active Directory return for rejected passwords.
"""

_RESULT_CODE_SUFFIX = re.compile(r"\s*\(0x[0-9A-Fa-f]+ \[\d+\]\)$")
"""Suffix bonsai appends to error messages with the LDAP result code."""

__all__ = ["LDAPEntry", "LDAPStorage"]


class LDAPStorage:
    """LDAP storage layer.

    This is the only layer that talks to the LDAP server. Results are
    converted to plain dictionaries with the DN of each entry under the
    ``dn`` key as a single-element list.

    Parameters
    ----------
    connection
        Connection to the directory, which provides the connection pool.
    logger
        Logger for debug messages and errors.
    """

    def __init__(
        self, connection: DirectoryConnection, logger: BoundLogger
    ) -> None:
        self._connection = connection
        self._logger = logger.bind(ldap_url=str(connection.config.url))

    async def check_credentials(self, dn: str, password: str) -> bool:
        """Check whether a DN and password can bind to the server.

        Parameters
        ----------
        dn
            DN to bind as.
        password
            Password for that DN.

        Returns
        -------
        bool
            `True` if the bind succeeded, `False` if the server rejected the
            credentials.

        Raises
        ------
        LDAPError
            Raised if the server could not be contacted.
        """
        logger = self._logger.bind(user=dn)
        client = LDAPClient(str(self._connection.config.url))
        client.set_credentials("SIMPLE", user=dn, password=password)
        try:
            conn = await client.connect(is_async=True, timeout=LDAP_TIMEOUT)
        except bonsai.AuthenticationError:
            logger.debug("LDAP bind rejected")
            return False
        except (bonsai.LDAPError, asyncio.TimeoutError) as e:
            logger.exception("Cannot bind to LDAP", error=str(e))
            raise LDAPError("Error binding to LDAP", dn) from e
        conn.close()
        logger.debug("LDAP bind succeeded")
        return True

    async def modify_password(self, dn: str, password: str) -> None:
        """Change the password of an entry.

        Parameters
        ----------
        dn
            DN of the entry whose password should change.
        password
            New password.

        Raises
        ------
        LDAPError
            Raised if the server could not be contacted or the change failed
            for reasons other than policy.
        PolicyRejectedError
            Raised if the server rejected the new password.
        """
        logger = self._logger.bind(user=dn)
        pool = self._get_pool(dn)
        try:
            async with pool.spawn() as conn:
                await conn.modify_password(
                    dn, password, timeout=LDAP_TIMEOUT
                )
        except bonsai.LDAPError as e:
            code = getattr(e, "code", None)
            if code in _POLICY_RESULT_CODES:
                message = _RESULT_CODE_SUFFIX.sub("", str(e))
                logger.info("LDAP password rejected", error=message)
                raise PolicyRejectedError(message, code) from e
            logger.exception("Cannot change LDAP password", error=str(e))
            raise LDAPError("Error changing LDAP password", dn) from e
        logger.info("Changed LDAP password")

    async def read(
        self, dn: str, filter_exp: str, attrlist: list[str]
    ) -> list[LDAPEntry]:
        """Read a single entry.

        Parameters
        ----------
        dn
            DN of the entry.
        filter_exp
            Filter the entry must match.
        attrlist
            Attributes to retrieve.

        Returns
        -------
        list of dict
            Either a one-element list with the entry or an empty list if the
            entry does not exist or does not match the filter.

        Raises
        ------
        LDAPError
            Raised if failed to run the search.
        """
        try:
            return await self._query(
                dn, LDAPSearchScope.BASE, filter_exp, attrlist, dn
            )
        except LDAPError as e:
            if isinstance(e.__cause__, bonsai.NoSuchObjectError):
                return []
            raise

    async def search(
        self,
        base: str,
        filter_exp: str,
        attrlist: list[str],
        *,
        user: str | None = None,
    ) -> list[LDAPEntry]:
        """Search a subtree.

        Parameters
        ----------
        base
            Base DN of the search.
        filter_exp
            Search filter.
        attrlist
            List of attributes to retrieve.
        user
            User for which the query is being performed, for error reporting.

        Returns
        -------
        list of dict
            Matching entries.

        Raises
        ------
        LDAPError
            Raised if failed to run the search.
        """
        return await self._query(
            base,
            LDAPSearchScope.SUB,
            filter_exp,
            attrlist,
            user or base,
        )

    def _get_pool(self, user: str) -> Any:
        pool = self._connection.get_connection_resource()
        if not pool:
            raise LDAPError("No LDAP connection available", user)
        return pool

    async def _query(
        self,
        base: str,
        scope: LDAPSearchScope,
        filter_exp: str,
        attrlist: list[str],
        username: str,
    ) -> list[LDAPEntry]:
        """Perform an LDAP query using the connection pool.

        Parameters
        ----------
        base
            Base DN of the search.
        scope
            Scope of the search.
        filter_exp
            Search filter.
        attrlist
            List of attributes to retrieve.
        username
            User for which the query is being performed, for error reporting.

        Returns
        -------
        list of dict
            List of result entries, each of which is a dictionary of the
            requested attributes (plus possibly other attributes) to a list
            of their values, and ``dn`` to a list holding the entry DN.

        Raises
        ------
        LDAPError
            Raised if failed to run the search.

        Notes
        -----
        The bonsai connection pool does not keep track of failed connections
        and will keep returning the same connection even if the LDAP server
        has stopped responding (due to a firewall timeout, for example).
        Working around this requires setting a timeout, catching the timeout
        exception, and explicitly closing the connection so that the next
        call gets a fresh one. The failed search itself is not repeated.
        """
        logger = self._logger.bind(
            ldap_attrs=attrlist,
            ldap_base=base,
            ldap_search=filter_exp,
            user=username,
        )
        pool = self._get_pool(username)

        try:
            async with pool.spawn() as conn:
                try:
                    logger.debug("Querying LDAP")
                    results = await conn.search(
                        base=base,
                        scope=scope,
                        filter_exp=filter_exp,
                        attrlist=attrlist,
                        timeout=LDAP_TIMEOUT,
                    )
                except (bonsai.ConnectionError, asyncio.TimeoutError) as e:
                    conn.close()
                    msg = f"LDAP query timed out after {LDAP_TIMEOUT}s"
                    logger.error("Cannot query LDAP", error=msg)
                    raise LDAPError(msg, username) from e
        except bonsai.NoSuchObjectError as e:
            logger.debug("LDAP search base does not exist")
            raise LDAPError("No such LDAP object", username) from e
        except bonsai.LDAPError as e:
            logger.exception("Cannot query LDAP", error=str(e))
            raise LDAPError("Error querying LDAP", username) from e
        return [_to_entry(r) for r in results]


def _to_entry(result: Any) -> LDAPEntry:
    """Convert a bonsai search result to a plain dictionary."""
    entry: LDAPEntry = {
        k: list(v) for k, v in result.items() if k.lower() != "dn"
    }
    entry["dn"] = [str(result["dn"])]
    return entry
