"""User backend backed by an LDAP directory."""

from __future__ import annotations

from typing import Any, Literal

from structlog.stdlib import BoundLogger

from .connection import ConnectionAttribute
from .exceptions import FatalLookupError, OfflineIdentityError
from .models.actions import Action
from .plugins import PluginRegistry
from .services.access import DirectoryAccess
from .services.identity import IdentityManager, OfflineUser, User

_NATIVE_ACTIONS = (
    Action.CHECK_PASSWORD
    | Action.GET_HOME
    | Action.GET_DISPLAYNAME
    | Action.COUNT_USERS
)
"""Actions the backend always implements itself."""

__all__ = ["Backend"]


class Backend:
    """User backend resolving identities from an LDAP directory.

    Every operation first checks whether a registered plugin implements the
    corresponding action. If so, the call is delegated and the plugin's
    result is returned unmodified. Otherwise the operation is answered from
    the directory.

    Parameters
    ----------
    access
        Directory access service.
    identities
        Identity manager.
    plugins
        Registry of plugins overriding native actions.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        access: DirectoryAccess,
        identities: IdentityManager,
        plugins: PluginRegistry,
        logger: BoundLogger,
    ) -> None:
        self._access = access
        self._connection = access.connection
        self._identities = identities
        self._plugins = plugins
        self._logger = logger

    async def can_change_avatar(self, uid: str) -> bool:
        """Whether the avatar of a user comes from the directory.

        Parameters
        ----------
        uid
            Internal username.

        Returns
        -------
        bool
            `True` only if the directory has an avatar image for the user
            and the host avatar manager accepted it.
        """
        if self._plugins.implements_actions(Action.PROVIDE_AVATAR):
            return await self._plugins.can_change_avatar(uid)
        user = await self._identities.get(uid)
        if not isinstance(user, User):
            return False
        image = await user.get_avatar_image()
        if not image:
            return False
        return await user.update_avatar(image)

    async def check_password(
        self, login: str, password: str
    ) -> str | Literal[False] | Any:
        """Check the password of a user.

        Parameters
        ----------
        login
            Login name as typed by the user.
        password
            Password to check.

        Returns
        -------
        str or bool
            The internal username if the credentials are valid, otherwise
            `False`.
        """
        if self._plugins.implements_actions(Action.CHECK_PASSWORD):
            return await self._plugins.check_password(login, password)

        logger = self._logger.bind(login=login)
        entries = await self._access.fetch_users_by_login_name(login)
        for entry in entries:
            dn = entry["dn"][0]
            if not await self._access.are_credentials_valid(dn, password):
                continue
            username = await self._access.dn2username(dn)
            if not username:
                logger.warning("Cannot map authenticated user", user=dn)
                return False
            user = await self._identities.get(username)
            if not isinstance(user, User) or not user.get_username():
                logger.warning("Authenticated user is not active", user=dn)
                return False
            self._connection.write_to_cache(f"userExists-{username}", True)
            await user.mark_login()
            logger.info("Authenticated user", user=username)
            return username
        logger.info("Authentication failed")
        return False

    async def count_users(self) -> int | Literal[False] | Any:
        """Count the users in the directory."""
        if self._plugins.implements_actions(Action.COUNT_USERS):
            return await self._plugins.count_users()
        return await self._access.count_users()

    async def create_user(self, uid: str, password: str) -> Any:
        """Create a user, which only a plugin can do."""
        if self._plugins.implements_actions(Action.CREATE_USER):
            return await self._plugins.create_user(uid, password)
        return False

    async def delete_user(self, uid: str) -> bool:
        """Forget a user whose directory entry is gone.

        Live users are never deleted. For an offline user, the mapping is
        removed and the persisted home path is kept in the cache so that the
        host can still clean it up.

        Parameters
        ----------
        uid
            Internal username.

        Returns
        -------
        bool
            Whether the mapping was removed.
        """
        if self._plugins.can_delete_user():
            return await self._plugins.delete_user(uid)

        user = await self._identities.get(uid)
        if not isinstance(user, OfflineUser):
            self._logger.info("Refusing to delete active user", user=uid)
            return False
        home = user.get_home_path() if user.has_home_path() else None
        username = user.get_oc_name()
        result = await self._access.get_user_mapper().unmap(username)
        if home:
            self._connection.write_to_cache(f"getHome-{uid}", home)
        self._identities.invalidate(uid)
        self._logger.info("Deleted user", user=uid, unmapped=result)
        return result

    def get_backend_name(self) -> str:
        return "LDAP"

    async def get_display_name(self, uid: str) -> str | None | Any:
        """Return the display name of a user.

        Parameters
        ----------
        uid
            Internal username.

        Returns
        -------
        str or None
            The display name, or `None` if the user is not active, its entry
            no longer resolves, or it has no display name.
        """
        if self._plugins.implements_actions(Action.GET_DISPLAYNAME):
            return await self._plugins.get_display_name(uid)

        cache_key = f"getDisplayName-{uid}"
        display_name = self._connection.get_from_cache(cache_key)
        if display_name is not None:
            return display_name

        user = await self._identities.get(uid)
        if not isinstance(user, User):
            return None
        dn = await self._get_current_dn(user)
        if not dn:
            self._logger.info("Directory entry of user drifted", user=uid)
            return None

        attr = self._connection.get_attribute(
            ConnectionAttribute.display_name_attr
        )
        values = await self._access.read_attribute(dn, attr)
        if not values or not values[0]:
            return None
        value2 = ""
        attr2 = self._connection.get_attribute(
            ConnectionAttribute.display_name2_attr
        )
        if attr2:
            values2 = await self._access.read_attribute(dn, attr2)
            value2 = values2[0] if values2 else ""
        display_name = await user.compose_and_store_display_name(
            values[0], value2
        )
        self._connection.write_to_cache(cache_key, display_name)
        return display_name

    async def get_display_names(
        self, search: str = "", limit: int = 10, offset: int = 0
    ) -> dict[str, str | None]:
        """Return the display names of matching users.

        Parameters
        ----------
        search
            Search term.
        limit
            Maximum number of users, or 0 or less for all.
        offset
            Number of users to skip.

        Returns
        -------
        dict of str
            Mapping of internal usernames to display names.
        """
        usernames = await self.get_users(search, limit, offset)
        return {u: await self.get_display_name(u) for u in usernames}

    async def get_home(self, uid: str) -> str | Literal[False] | Any:
        """Return the home path of a user.

        Parameters
        ----------
        uid
            Internal username.

        Returns
        -------
        str or bool
            The home path, or `False` if none is defined for the user.

        Raises
        ------
        FatalLookupError
            Raised if the user is unknown, or if it is offline and no home
            path was ever recorded.
        """
        if self._plugins.implements_actions(Action.GET_HOME):
            return await self._plugins.get_home(uid)

        cache_key = f"getHome-{uid}"
        path = self._connection.get_from_cache(cache_key)
        if path is not None:
            return path

        user = await self._identities.get(uid)
        if user is None:
            raise FatalLookupError(f"Could not get user object for uid {uid}")
        if isinstance(user, OfflineUser):
            return user.get_home_path()
        path = await user.get_home_path()
        self._connection.write_to_cache(cache_key, path)
        return path

    async def get_users(
        self, search: str = "", limit: int = 10, offset: int = 0
    ) -> list[str]:
        """Return the usernames of matching users.

        Parameters
        ----------
        search
            Search term, matched as a substring.
        limit
            Maximum number of users, or 0 or less for all.
        offset
            Number of users to skip.

        Returns
        -------
        list of str
            Internal usernames.
        """
        search = self._access.escape_filter_part(search, allow_asterisk=True)
        cache_key = f"getUsers-{search}-{limit}-{offset}"
        cached = self._connection.get_from_cache(cache_key)
        if cached is not None:
            self._logger.debug("Returning cached user list", search=search)
            return cached

        user_filter = self._connection.get_attribute(
            ConnectionAttribute.user_filter
        )
        display_attr = self._connection.get_attribute(
            ConnectionAttribute.display_name_attr
        )
        filter_exp = self._access.combine_filter_with_and(
            [
                user_filter,
                f"{display_attr}=*" if display_attr else "",
                self._access.get_filter_part_for_user_search(search),
            ]
        )
        entries = await self._access.fetch_list_of_users(
            filter_exp,
            self._access.user_attributes(),
            limit=limit if limit > 0 else None,
            offset=offset,
        )
        usernames = await self._access.resolve_to_usernames(entries)
        self._logger.debug(
            "Found users", search=search, count=len(usernames)
        )
        self._connection.write_to_cache(cache_key, usernames)
        return usernames

    def has_user_listings(self) -> bool:
        return True

    def implements_actions(self, actions: Action | int) -> bool:
        """Whether the backend or a plugin implements any of the actions.

        Parameters
        ----------
        actions
            Bitmask of actions to check.

        Returns
        -------
        bool
            `True` if any bit of ``actions`` is supported.
        """
        supported = _NATIVE_ACTIONS | self._plugins.get_implemented_actions()
        avatar_rule = self._connection.get_attribute(
            ConnectionAttribute.avatar_rule
        )
        if avatar_rule != "none":
            supported |= Action.PROVIDE_AVATAR
        if self._connection.get_attribute(
            ConnectionAttribute.turn_on_password_change
        ):
            supported |= Action.SET_PASSWORD
        return bool(supported & actions)

    async def login_name2user_name(self, login: str) -> str | Literal[False]:
        """Resolve a login name to an internal username.

        Results, including negative ones, are cached. Concurrent lookups of
        the same login name search the directory only once.

        Parameters
        ----------
        login
            Login name as typed by the user.

        Returns
        -------
        str or bool
            The internal username, or `False` if no active user has that
            login name.
        """
        cache_key = f"loginName2UserName-{login}"
        username = self._connection.get_from_cache(cache_key)
        if username is not None:
            return username
        async with await self._connection.lock(cache_key):
            username = self._connection.get_from_cache(cache_key)
            if username is not None:
                return username
            username = await self._resolve_login_name(login)
            self._connection.write_to_cache(cache_key, username)
            return username

    async def set_display_name(self, uid: str, display_name: str) -> Any:
        """Change the display name, which only a plugin can do."""
        if self._plugins.implements_actions(Action.SET_DISPLAYNAME):
            return await self._plugins.set_display_name(uid, display_name)
        return False

    async def set_password(self, uid: str, password: str) -> bool | Any:
        """Change the password of a user in the directory.

        Parameters
        ----------
        uid
            Internal username.
        password
            New password.

        Returns
        -------
        bool
            `True` if the password was changed, `False` if password changes
            are disabled or the user has no username.

        Raises
        ------
        FatalLookupError
            Raised if the user is not an active user.
        PolicyRejectedError
            Raised if the directory rejected the password.
        """
        if self._plugins.implements_actions(Action.SET_PASSWORD):
            return await self._plugins.set_password(uid, password)

        user = await self._identities.get(uid)
        if not isinstance(user, User):
            raise FatalLookupError(f"Could not get user object for uid {uid}")
        if not user.get_username():
            return False
        if not self._connection.get_attribute(
            ConnectionAttribute.turn_on_password_change
        ):
            self._logger.debug("Password changes are disabled", user=uid)
            return False
        return await self._access.set_password(user.dn, password)

    async def user_exists(self, uid: str) -> bool:
        """Whether a user still exists in the directory.

        Parameters
        ----------
        uid
            Internal username.

        Returns
        -------
        bool
            `True` if the user's entry is readable, `False` if the username
            was never known.

        Raises
        ------
        OfflineIdentityError
            Raised if the user is known but its entry no longer exists. The
            user is marked as deleted.
        """
        cache_key = f"userExists-{uid}"
        if self._connection.get_from_cache(cache_key) is True:
            return True

        dn = await self._access.username2dn(uid)
        if not dn:
            mapping = self._access.get_user_mapper()
            if await mapping.get_dn_by_name(uid):
                raise OfflineIdentityError(uid)
            if await self._identities.is_deleted_user(uid):
                raise OfflineIdentityError(uid)
            self._logger.debug("No DN found for user", user=uid)
            return False

        if await self._access.read_attribute(dn, "") is False:
            uuid = await self._access.get_user_mapper().get_uuid_by_dn(dn)
            if not uuid or not await self._recover_rename(uuid):
                await self._identities.mark_offline(uid)
                raise OfflineIdentityError(uid)

        if await self._identities.is_deleted_user(uid):
            await self._identities.unmark_offline(uid)
        await self._identities.get(uid)
        self._connection.write_to_cache(cache_key, True)
        return True

    async def _get_current_dn(self, user: User) -> str | None:
        """Return the DN under which a user's entry can be read now.

        If the recorded DN is unreadable, the entry is looked up again by its
        UUID and a rename is recorded if the new DN is readable.
        """
        if await self._access.read_attribute(user.dn, "") is not False:
            return user.dn
        uuid = await self._access.get_user_mapper().get_uuid_by_dn(user.dn)
        if not uuid:
            return None
        return await self._recover_rename(uuid)

    async def _recover_rename(self, uuid: str) -> str | None:
        dn = await self._access.get_user_dn_by_uuid(uuid)
        if not dn or await self._access.read_attribute(dn, "") is False:
            return None
        mapping = self._access.get_user_mapper()
        await mapping.set_dn_by_uuid(dn, uuid)
        username = await mapping.get_name_by_uuid(uuid)
        if username:
            self._identities.invalidate(username)
        self._logger.info("Recorded renamed DN", user=username, dn=dn)
        return dn

    async def _resolve_login_name(self, login: str) -> str | Literal[False]:
        entries = await self._access.fetch_users_by_login_name(login)
        if not entries:
            self._logger.debug("No user found for login", login=login)
            return False
        user = await self._identities.get(entries[0]["dn"][0])
        if not isinstance(user, User):
            return False
        return user.get_username()
