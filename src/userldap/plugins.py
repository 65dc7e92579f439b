"""Plugins that override native backend actions."""

from __future__ import annotations

from typing import Any

from structlog.stdlib import BoundLogger

from .exceptions import NoPluginError
from .models.actions import Action

__all__ = ["PluginRegistry", "UserPlugin"]


class UserPlugin:
    """Base class for backend plugins.

    A plugin declares which actions it implements with
    `get_implemented_actions` and overrides the matching methods. Deleting
    users is declared separately with `can_delete_user`, since there is no
    action bit for it. Methods for actions the plugin does not declare are
    never called.
    """

    def can_delete_user(self) -> bool:
        """Whether the plugin implements `delete_user`."""
        return False

    def get_implemented_actions(self) -> Action:
        """Return the bitmask of actions implemented by the plugin."""
        return Action(0)

    async def can_change_avatar(self, uid: str) -> bool:
        raise NotImplementedError

    async def check_password(self, login: str, password: str) -> Any:
        raise NotImplementedError

    async def count_users(self) -> Any:
        raise NotImplementedError

    async def create_user(self, uid: str, password: str) -> Any:
        raise NotImplementedError

    async def delete_user(self, uid: str) -> bool:
        raise NotImplementedError

    async def get_display_name(self, uid: str) -> Any:
        raise NotImplementedError

    async def get_home(self, uid: str) -> Any:
        raise NotImplementedError

    async def set_display_name(self, uid: str, display_name: str) -> Any:
        raise NotImplementedError

    async def set_password(self, uid: str, password: str) -> Any:
        raise NotImplementedError


class PluginRegistry:
    """Registry of plugins, dispatching each action to one plugin.

    When more than one registered plugin implements an action, the one
    registered last handles it.

    Parameters
    ----------
    logger
        Logger to use.
    """

    def __init__(self, logger: BoundLogger) -> None:
        self._logger = logger
        self._plugins: dict[Action, UserPlugin] = {}
        self._delete_plugin: UserPlugin | None = None

    def can_delete_user(self) -> bool:
        """Whether a registered plugin handles user deletion."""
        return self._delete_plugin is not None

    def get_implemented_actions(self) -> Action:
        """Return the combined bitmask of all registered plugins."""
        actions = Action(0)
        for action in self._plugins:
            actions |= action
        return actions

    def implements_actions(self, actions: Action | int) -> bool:
        """Whether a registered plugin implements any of the actions.

        Parameters
        ----------
        actions
            Bitmask of actions to check.

        Returns
        -------
        bool
            `True` if any bit of ``actions`` is handled by a plugin.
        """
        return bool(self.get_implemented_actions() & actions)

    def register(self, plugin: UserPlugin) -> None:
        """Register a plugin for the actions it implements.

        Parameters
        ----------
        plugin
            Plugin to register.
        """
        implemented = plugin.get_implemented_actions()
        for action in Action:
            if implemented & action:
                self._plugins[action] = plugin
        if plugin.can_delete_user():
            self._delete_plugin = plugin
        self._logger.debug(
            "Registered backend plugin",
            plugin=type(plugin).__name__,
            actions=int(implemented),
        )

    async def can_change_avatar(self, uid: str) -> bool:
        plugin = self._get_plugin(Action.PROVIDE_AVATAR)
        return await plugin.can_change_avatar(uid)

    async def check_password(self, login: str, password: str) -> Any:
        plugin = self._get_plugin(Action.CHECK_PASSWORD)
        return await plugin.check_password(login, password)

    async def count_users(self) -> Any:
        plugin = self._get_plugin(Action.COUNT_USERS)
        return await plugin.count_users()

    async def create_user(self, uid: str, password: str) -> Any:
        plugin = self._get_plugin(Action.CREATE_USER)
        return await plugin.create_user(uid, password)

    async def delete_user(self, uid: str) -> bool:
        """Delete a user through the registered deletion plugin.

        Raises
        ------
        NoPluginError
            Raised if no registered plugin handles deletion.
        """
        if not self._delete_plugin:
            raise NoPluginError("No plugin implements deleting users")
        return await self._delete_plugin.delete_user(uid)

    async def get_display_name(self, uid: str) -> Any:
        plugin = self._get_plugin(Action.GET_DISPLAYNAME)
        return await plugin.get_display_name(uid)

    async def get_home(self, uid: str) -> Any:
        plugin = self._get_plugin(Action.GET_HOME)
        return await plugin.get_home(uid)

    async def set_display_name(self, uid: str, display_name: str) -> Any:
        plugin = self._get_plugin(Action.SET_DISPLAYNAME)
        return await plugin.set_display_name(uid, display_name)

    async def set_password(self, uid: str, password: str) -> Any:
        plugin = self._get_plugin(Action.SET_PASSWORD)
        return await plugin.set_password(uid, password)

    def _get_plugin(self, action: Action) -> UserPlugin:
        plugin = self._plugins.get(action)
        if not plugin:
            raise NoPluginError(f"No plugin implements {action.name}")
        return plugin
