"""Configuration for userldap.

userldap is configured by a YAML file provided by the host application,
which may be overridden by environment variables. Every part of the
configuration that accepts environment variables uses the ``USERLDAP_``
prefix. Only the settings with explicit ``validation_alias`` settings support
configuration via environment variable.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Self, override

import yaml
from pydantic import (
    AliasChoices,
    Field,
    SecretStr,
    UrlConstraints,
    field_validator,
)
from pydantic.alias_generators import to_camel
from pydantic_core import Url
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)
from safir.logging import LogLevel, Profile
from safir.pydantic import EnvAsyncPostgresDsn

from .constants import AVATAR_ATTRIBUTES, UID_PLACEHOLDER

LdapDsn = Annotated[
    Url, UrlConstraints(allowed_schemes=["ldap", "ldaps"], host_required=True)
]
"""DSN for connecting to an LDAP server."""

__all__ = [
    "CamelCaseSettings",
    "Config",
    "EnvFirstSettings",
    "LDAPConfig",
    "LdapDsn",
]


class CamelCaseSettings(BaseSettings):
    """Base class for Pydantic settings supporting camel-case.

    This base class also forbids all extra attributes. It should be used as
    the base class (possibly indirectly) for all userldap configuration
    models that support environment variable overrides.
    """

    model_config = SettingsConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )


class EnvFirstSettings(CamelCaseSettings):
    """Base class for Pydantic settings with environment overrides.

    Classes that inherit from this base class will prioritize environment
    variables over arguments to the class constructor.
    """

    @override
    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Override the sources of settings.

        Deactivate :file:`.env` and secret file support. Allow environment
        variables to override init parameters, since init parameters come
        from the YAML configuration file and we want environment variables to
        take precedent.
        """
        return (env_settings, init_settings)


class LDAPConfig(EnvFirstSettings):
    """Configuration for the LDAP user directory."""

    url: LdapDsn = Field(
        ...,
        title="LDAP server URL",
        description="URL of the LDAP server holding the user entries",
        validation_alias=AliasChoices("USERLDAP_LDAP_URL", "url"),
    )

    user_dn: str | None = Field(
        None,
        title="Simple bind DN for LDAP queries",
        description=(
            "DN of user to bind as with simple bind when querying the LDAP"
            " server. If not set, userldap will do an anonymous bind."
        ),
    )

    password: SecretStr | None = Field(
        None,
        title="Simple bind password",
        description=(
            "Password for simple bind authentication to the LDAP server."
            " Only used if ``user_dn`` is set."
        ),
        validation_alias=AliasChoices("USERLDAP_LDAP_PASSWORD", "password"),
    )

    user_base_dn: str = Field(
        ...,
        title="Base DN for user lookups",
        description=(
            "Base DN under which all user entries live. Mapped DNs outside"
            " this tree are ignored."
        ),
    )

    user_filter: str = Field(
        "(objectClass=inetOrgPerson)",
        title="User filter",
        description="Search filter selecting all entries that are users",
    )

    login_filter: str = Field(
        f"(&(objectClass=inetOrgPerson)(uid={UID_PLACEHOLDER}))",
        title="Login filter",
        description=(
            "Search filter used to find the entry for a login name. The"
            f" string ``{UID_PLACEHOLDER}`` is replaced by the escaped login"
            " name."
        ),
    )

    display_name_attr: str = Field(
        "displayName",
        title="Display name attribute",
        description="Attribute holding the display name of the user",
    )

    display_name2_attr: str | None = Field(
        None,
        title="Secondary display name attribute",
        description=(
            "If set, the value of this attribute is appended to the display"
            " name in parentheses"
        ),
    )

    uuid_attr: str = Field(
        "auto",
        title="UUID attribute",
        description=(
            "Attribute holding the stable identifier of an entry. If set to"
            " ``auto``, the common UUID attributes are probed in turn."
        ),
    )

    internal_username_attr: str | None = Field(
        None,
        title="Internal username attribute",
        description=(
            "Attribute from which the internal username of a newly seen"
            " entry is derived. If not set, the UUID is used."
        ),
    )

    search_attributes: list[str] = Field(
        [],
        title="User search attributes",
        description=(
            "Attributes matched against the search term when listing users."
            " If empty, only the display name attribute is searched."
        ),
    )

    avatar_rule: str = Field(
        "default",
        title="Avatar rule",
        description=(
            "Where to find the avatar of a user: ``default`` to try"
            " ``jpegPhoto`` and ``thumbnailPhoto``, ``data:<attr>`` for a"
            " specific attribute, or ``none`` to disable avatars"
        ),
    )

    turn_on_password_change: bool = Field(
        False,
        title="Allow password changes",
        description="Whether users may change their LDAP password",
    )

    home_folder_naming_rule: str = Field(
        "",
        title="Home folder naming rule",
        description=(
            "Either empty, to let the host choose home directories, or"
            " ``attr:<attr>`` to read the home directory from an attribute"
        ),
    )

    data_directory: Path = Field(
        Path("/var/lib/userldap/data"),
        title="Base data directory",
        description="Directory under which relative home paths are placed",
    )

    @field_validator("login_filter")
    @classmethod
    def _validate_login_filter(cls, v: str) -> str:
        if UID_PLACEHOLDER not in v:
            raise ValueError(f"login filter must contain {UID_PLACEHOLDER}")
        return v

    @field_validator("login_filter", "user_filter")
    @classmethod
    def _validate_filter(cls, v: str) -> str:
        if not (v.startswith("(") and v.endswith(")")):
            raise ValueError(f"invalid LDAP filter {v}")
        if v.count("(") != v.count(")"):
            raise ValueError(f"unbalanced parentheses in LDAP filter {v}")
        return v

    @field_validator("avatar_rule")
    @classmethod
    def _validate_avatar_rule(cls, v: str) -> str:
        if v in ("default", "none"):
            return v
        if v.startswith("data:") and len(v) > len("data:"):
            return v
        raise ValueError(f"invalid avatar rule {v}")

    @field_validator("home_folder_naming_rule")
    @classmethod
    def _validate_home_rule(cls, v: str) -> str:
        if v and not (v.startswith("attr:") and len(v) > len("attr:")):
            raise ValueError(f"invalid home folder naming rule {v}")
        return v

    @property
    def avatar_attributes(self) -> tuple[str, ...]:
        """Attributes to try, in order, for the user's avatar."""
        if self.avatar_rule == "none":
            return ()
        if self.avatar_rule == "default":
            return AVATAR_ATTRIBUTES
        return (self.avatar_rule.removeprefix("data:"),)

    @property
    def home_attribute(self) -> str | None:
        """Attribute holding the home directory, if any."""
        if not self.home_folder_naming_rule:
            return None
        return self.home_folder_naming_rule.removeprefix("attr:")


class Config(EnvFirstSettings):
    """Configuration for userldap."""

    database_url: EnvAsyncPostgresDsn = Field(
        ...,
        title="Database DSN",
        description="DSN for the database holding the user mapping",
        validation_alias=AliasChoices("USERLDAP_DATABASE_URL", "databaseUrl"),
    )

    database_password: SecretStr | None = Field(
        None,
        title="Database password",
        description="Password for the database",
        validation_alias=AliasChoices(
            "USERLDAP_DATABASE_PASSWORD", "databasePassword"
        ),
    )

    log_level: LogLevel = Field(
        LogLevel.INFO,
        title="Logging level",
        description="Python logging level",
        validation_alias=AliasChoices("USERLDAP_LOG_LEVEL", "logLevel"),
    )

    profile: Profile = Field(
        Profile.production,
        title="Logging profile",
        description=(
            "Logging profile, either ``production`` for JSON logs or"
            " ``development`` for human-readable logs"
        ),
        validation_alias=AliasChoices("USERLDAP_PROFILE", "profile"),
    )

    ldap: LDAPConfig = Field(
        ...,
        title="LDAP configuration",
        description="Configuration for the LDAP user directory",
    )

    @classmethod
    def from_file(cls, path: Path) -> Self:
        """Construct a Config object from a configuration file.

        Parameters
        ----------
        path
            Path to the configuration file in YAML.

        Returns
        -------
        Config
            The corresponding `Config` object.
        """
        with path.open("r") as f:
            return cls.model_validate(yaml.safe_load(f))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Construct a Config object from already-parsed settings."""
        return cls.model_validate(data)
