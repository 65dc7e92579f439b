"""Constants for userldap."""

from datetime import timedelta

__all__ = [
    "AVATAR_ATTRIBUTES",
    "CONFIG_PATH",
    "LDAP_CACHE_LIFETIME",
    "LDAP_CACHE_SIZE",
    "LDAP_TIMEOUT",
    "MAX_USERNAME_ATTEMPTS",
    "UID_PLACEHOLDER",
    "USER_VALUE_NAMESPACE",
    "USERNAME_INVALID_REGEX",
    "UUID_ATTRIBUTES",
]

AVATAR_ATTRIBUTES = ("jpegPhoto", "thumbnailPhoto")
"""Attributes tried, in order, for the ``default`` avatar rule."""

CONFIG_PATH = "/etc/userldap/userldap.yaml"
"""Default configuration path."""

LDAP_CACHE_LIFETIME = timedelta(minutes=10).total_seconds()
"""How long (in seconds) to cache directory lookup results."""

LDAP_CACHE_SIZE = 10000
"""Maximum number of entries in the per-connection result cache."""

LDAP_TIMEOUT = 5.0
"""Timeout (in seconds) for LDAP queries."""

MAX_USERNAME_ATTEMPTS = 99
"""How many numbered alternatives to try when an internal username is taken.

The first alternative is the name with ``_2`` appended, the last is ``_99``.
"""

UID_PLACEHOLDER = "%uid"
"""Placeholder in the login filter replaced by the escaped login name."""

USER_VALUE_NAMESPACE = "user_ldap"
"""Namespace used for all values stored in the host per-user store."""

USERNAME_INVALID_REGEX = r"[^a-zA-Z0-9_.@-]"
"""Characters stripped from internal usernames derived from LDAP data."""

UUID_ATTRIBUTES = (
    "entryUUID",
    "nsUniqueId",
    "objectGUID",
    "guid",
    "ipaUniqueID",
)
"""Candidate UUID attributes probed, in order, when ``uuid_attr`` is auto."""
