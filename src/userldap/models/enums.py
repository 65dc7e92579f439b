"""Enums used in userldap models."""

from __future__ import annotations

from enum import Enum

__all__ = ["UserValue"]


class UserValue(Enum):
    """Keys of the per-user values kept in the host per-user store."""

    deleted = "isDeleted"
    detected_on = "foundDeleted"
    display_name = "displayName"
    first_login = "firstLoginAccomplished"
    home_path = "homePath"
    last_avatar_checksum = "lastAvatarChecksum"
