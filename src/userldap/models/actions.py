"""Action codes for backend operations."""

from __future__ import annotations

from enum import IntFlag

__all__ = ["Action"]


class Action(IntFlag):
    """Backend actions that a backend or plugin may implement.

    The values match the action bits used by the host runtime, so a combined
    bitmask can be passed through unchanged.
    """

    CREATE_USER = 1 << 0
    SET_PASSWORD = 1 << 4
    CHECK_PASSWORD = 1 << 8
    GET_HOME = 1 << 12
    GET_DISPLAYNAME = 1 << 16
    SET_DISPLAYNAME = 1 << 20
    PROVIDE_AVATAR = 1 << 24
    COUNT_USERS = 1 << 28
