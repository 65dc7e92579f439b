"""Tests for the LDAP user backend."""

from __future__ import annotations

import asyncio

import pytest
from _pytest.logging import LogCaptureFixture

from userldap.backend import Backend
from userldap.exceptions import (
    FatalLookupError,
    OfflineIdentityError,
    PolicyRejectedError,
)
from userldap.factory import Factory
from userldap.models.actions import Action
from userldap.services.identity import OfflineUser, User
from userldap.storage.mapping import UserMapping

from .support.config import reconfigure
from .support.constants import (
    EDDIE_DN,
    JPEG_IMAGE,
    ROLAND_DN,
    ROLAND_PASSWORD,
    TEST_BASE_DN,
    TEST_DATA_DIRECTORY,
)
from .support.host import MockAvatarManager, MockUserValueStore
from .support.ldap import MockLDAP
from .support.logging import parse_log
from .support.plugins import RecordingPlugin


@pytest.mark.asyncio
async def test_get_users(backend: Backend, directory: MockLDAP) -> None:
    assert await backend.get_users() == [
        "gunslinger",
        "newyorker",
        "ladyofshadows",
    ]
    assert await backend.get_users("", 1, 2) == ["ladyofshadows"]
    assert await backend.get_users("", 2, 1) == [
        "newyorker",
        "ladyofshadows",
    ]
    assert await backend.get_users("", 0) == [
        "gunslinger",
        "newyorker",
        "ladyofshadows",
    ]
    assert await backend.get_users("yo") == ["newyorker", "ladyofshadows"]
    assert await backend.get_users("nix") == []

    # Repeated listings are answered from the cache.
    searches = directory.search_count
    assert await backend.get_users("yo") == ["newyorker", "ladyofshadows"]
    assert directory.search_count == searches


@pytest.mark.asyncio
async def test_get_users_no_display_attr(
    factory: Factory, directory: MockLDAP
) -> None:
    await reconfigure(factory, display_name_attr="")
    backend = factory.create_backend()

    assert await backend.get_users() == [
        "gunslinger",
        "newyorker",
        "ladyofshadows",
    ]


@pytest.mark.asyncio
async def test_get_display_names(
    backend: Backend, directory: MockLDAP
) -> None:
    assert await backend.get_display_names("yo") == {
        "newyorker": "Eddie Dean",
        "ladyofshadows": "Susannah Dean",
    }


@pytest.mark.asyncio
async def test_check_password(backend: Backend, directory: MockLDAP) -> None:
    assert await backend.check_password("roland", ROLAND_PASSWORD) == (
        "gunslinger"
    )
    assert await backend.check_password("gunslinger", ROLAND_PASSWORD) == (
        "gunslinger"
    )
    assert await backend.check_password("roland", "wrong") is False
    assert await backend.check_password("mallory", ROLAND_PASSWORD) is False
    assert await backend.check_password("roland", "") is False

    # A successful login proves the user exists.
    searches = directory.search_count
    assert await backend.user_exists("gunslinger")
    assert directory.search_count == searches


@pytest.mark.asyncio
async def test_check_password_marks_login(
    backend: Backend,
    directory: MockLDAP,
    user_values: MockUserValueStore,
) -> None:
    assert await backend.check_password("eddie", "keystone") == "newyorker"
    stored = user_values.values[("newyorker", "user_ldap")]
    assert stored["firstLoginAccomplished"] == "1"


@pytest.mark.asyncio
async def test_check_password_logging(
    backend: Backend, mapped_users: None, caplog: LogCaptureFixture
) -> None:
    caplog.clear()
    assert await backend.check_password("roland", ROLAND_PASSWORD)
    assert parse_log(caplog) == [
        {
            "event": "Authenticated user",
            "login": "roland",
            "severity": "info",
            "user": "gunslinger",
        }
    ]

    caplog.clear()
    assert not await backend.check_password("roland", "wrong")
    assert parse_log(caplog) == [
        {
            "event": "Authentication failed",
            "login": "roland",
            "severity": "info",
        }
    ]


@pytest.mark.asyncio
async def test_user_exists(backend: Backend, mapped_users: None) -> None:
    assert await backend.user_exists("gunslinger")
    assert await backend.user_exists("newyorker")
    assert not await backend.user_exists("mallory")


@pytest.mark.asyncio
async def test_user_exists_deleted(
    factory: Factory,
    mapped_users: None,
    mock_ldap: MockLDAP,
    user_values: MockUserValueStore,
) -> None:
    backend = factory.create_backend()
    mock_ldap.remove_entry(EDDIE_DN)

    with pytest.raises(OfflineIdentityError) as excinfo:
        await backend.user_exists("newyorker")
    assert excinfo.value.username == "newyorker"
    stored = user_values.values[("newyorker", "user_ldap")]
    assert stored["isDeleted"] == "1"
    assert "foundDeleted" in stored

    identities = factory.create_identity_manager()
    assert isinstance(await identities.get("newyorker"), OfflineUser)

    # Still offline on the next check.
    with pytest.raises(OfflineIdentityError):
        await backend.user_exists("newyorker")

    # The entry coming back clears the marker.
    mock_ldap.add_entry(
        EDDIE_DN,
        {
            "objectClass": ["inetOrgPerson"],
            "uid": ["newyorker"],
            "entryUUID": ["7f4e2b91-0c3d-4a6e-8b5f-2a1d9c8e6b21"],
        },
    )
    assert await backend.user_exists("newyorker")
    assert "isDeleted" not in stored
    assert not await identities.is_deleted_user("newyorker")


@pytest.mark.asyncio
async def test_user_exists_only_marked(
    factory: Factory, mapped_users: None
) -> None:
    backend = factory.create_backend()
    identities = factory.create_identity_manager()
    await identities.mark_offline("formerUser")

    with pytest.raises(OfflineIdentityError):
        await backend.user_exists("formerUser")


@pytest.mark.asyncio
async def test_user_exists_renamed(
    backend: Backend,
    mapped_users: None,
    mock_ldap: MockLDAP,
    mapping: UserMapping,
) -> None:
    new_dn = f"uid=gunslinger,ou=gilead,{TEST_BASE_DN}"
    mock_ldap.rename_entry(ROLAND_DN, new_dn)

    assert await backend.user_exists("gunslinger")
    assert await mapping.get_dn_by_name("gunslinger") == new_dn


@pytest.mark.asyncio
async def test_get_home(backend: Backend, directory: MockLDAP) -> None:
    await backend.get_users()

    assert await backend.get_home("gunslinger") == "/tmp/rolandshome/"
    assert await backend.get_home("ladyofshadows") == (
        f"{TEST_DATA_DIRECTORY}/susannah"
    )
    assert await backend.get_home("newyorker") is False

    searches = directory.search_count
    assert await backend.get_home("gunslinger") == "/tmp/rolandshome/"
    assert await backend.get_home("newyorker") is False
    assert directory.search_count == searches

    with pytest.raises(FatalLookupError):
        await backend.get_home("mallory")


@pytest.mark.asyncio
async def test_get_home_deleted(
    factory: Factory, mapped_users: None, mock_ldap: MockLDAP
) -> None:
    backend = factory.create_backend()
    mock_ldap.remove_entry(EDDIE_DN)
    with pytest.raises(OfflineIdentityError):
        await backend.user_exists("newyorker")

    # No home path was ever recorded for the user.
    with pytest.raises(FatalLookupError):
        await backend.get_home("newyorker")


@pytest.mark.asyncio
async def test_get_home_deleted_recorded(
    factory: Factory, mapped_users: None, mock_ldap: MockLDAP
) -> None:
    backend = factory.create_backend()
    assert await backend.get_home("gunslinger") == "/tmp/rolandshome/"
    mock_ldap.remove_entry(ROLAND_DN)
    with pytest.raises(OfflineIdentityError):
        await backend.user_exists("gunslinger")

    await factory.connection.clear_cache()
    assert await backend.get_home("gunslinger") == "/tmp/rolandshome/"


@pytest.mark.asyncio
async def test_delete_user(
    factory: Factory, mapped_users: None, mock_ldap: MockLDAP
) -> None:
    backend = factory.create_backend()
    mapping = factory.create_user_mapping()
    assert await backend.get_home("gunslinger") == "/tmp/rolandshome/"

    # Active and unknown users are never deleted.
    assert await backend.delete_user("gunslinger") is False
    assert await backend.delete_user("mallory") is False
    assert await mapping.get_dn_by_name("gunslinger") == ROLAND_DN

    mock_ldap.remove_entry(ROLAND_DN)
    with pytest.raises(OfflineIdentityError):
        await backend.user_exists("gunslinger")
    await factory.connection.clear_cache()

    assert await backend.delete_user("gunslinger") is True
    assert await mapping.get_dn_by_name("gunslinger") is None

    # The home path stays available for cleanup.
    assert await backend.get_home("gunslinger") == "/tmp/rolandshome/"


@pytest.mark.asyncio
async def test_get_display_name(
    factory: Factory,
    mapped_users: None,
    mock_ldap: MockLDAP,
    user_values: MockUserValueStore,
) -> None:
    backend = factory.create_backend()

    assert await backend.get_display_name("gunslinger") == "Roland Deschain"
    stored = user_values.values[("gunslinger", "user_ldap")]
    assert stored["displayName"] == "Roland Deschain"
    searches = mock_ldap.search_count
    assert await backend.get_display_name("gunslinger") == "Roland Deschain"
    assert mock_ldap.search_count == searches

    assert await backend.get_display_name("mallory") is None

    # An entry that vanished without a trace has drifted.
    mock_ldap.remove_entry(EDDIE_DN)
    assert await backend.get_display_name("newyorker") is None


@pytest.mark.asyncio
async def test_get_display_name_renamed(
    backend: Backend,
    mapped_users: None,
    mock_ldap: MockLDAP,
    mapping: UserMapping,
) -> None:
    new_dn = f"uid=gunslinger,ou=gilead,{TEST_BASE_DN}"
    mock_ldap.rename_entry(ROLAND_DN, new_dn)

    assert await backend.get_display_name("gunslinger") == "Roland Deschain"
    assert await mapping.get_dn_by_name("gunslinger") == new_dn


@pytest.mark.asyncio
async def test_check_password_renamed(
    factory: Factory,
    mapped_users: None,
    mock_ldap: MockLDAP,
    mapping: UserMapping,
    user_values: MockUserValueStore,
) -> None:
    backend = factory.create_backend()
    identities = factory.create_identity_manager()
    user = await identities.get("gunslinger")
    assert isinstance(user, User)
    assert user.dn == ROLAND_DN

    new_dn = f"uid=gunslinger,ou=gilead,{TEST_BASE_DN}"
    mock_ldap.rename_entry(ROLAND_DN, new_dn)
    assert await backend.check_password("roland", ROLAND_PASSWORD) == (
        "gunslinger"
    )
    assert await mapping.get_dn_by_name("gunslinger") == new_dn

    # The identity cached under the old DN was replaced.
    user = await identities.get("gunslinger")
    assert isinstance(user, User)
    assert user.dn == new_dn
    assert await identities.get(ROLAND_DN) is None
    assert await backend.get_display_name("gunslinger") == "Roland Deschain"
    assert await backend.get_home("gunslinger") == "/tmp/rolandshome/"
    stored = user_values.values[("gunslinger", "user_ldap")]
    assert stored["homePath"] == "/tmp/rolandshome/"
    assert await backend.set_password("gunslinger", "dt12234$") is True
    assert mock_ldap.changed_passwords == {new_dn: "dt12234$"}


@pytest.mark.asyncio
async def test_get_users_renamed(
    factory: Factory, mapped_users: None, mock_ldap: MockLDAP
) -> None:
    backend = factory.create_backend()
    identities = factory.create_identity_manager()
    assert await identities.get("gunslinger")

    new_dn = f"uid=gunslinger,ou=gilead,{TEST_BASE_DN}"
    mock_ldap.rename_entry(ROLAND_DN, new_dn)
    assert "gunslinger" in await backend.get_users()

    user = await identities.get("gunslinger")
    assert isinstance(user, User)
    assert user.dn == new_dn
    assert await backend.get_home("gunslinger") == "/tmp/rolandshome/"


@pytest.mark.asyncio
async def test_get_display_name_second_attr(
    factory: Factory, mapped_users: None
) -> None:
    await reconfigure(factory, display_name2_attr="cn")
    backend = factory.create_backend()

    assert await backend.get_display_name("gunslinger") == (
        "Roland Deschain (roland)"
    )


@pytest.mark.asyncio
async def test_count_users(backend: Backend, directory: MockLDAP) -> None:
    assert await backend.count_users() == 3


@pytest.mark.asyncio
async def test_login_name2user_name(
    backend: Backend, mapped_users: None, mock_ldap: MockLDAP
) -> None:
    assert await backend.login_name2user_name("roland") == "gunslinger"
    assert await backend.login_name2user_name("eddie") == "newyorker"
    assert await backend.login_name2user_name("mallory") is False

    # Positive and negative results are cached.
    searches = mock_ldap.search_count
    assert await backend.login_name2user_name("roland") == "gunslinger"
    assert await backend.login_name2user_name("mallory") is False
    assert mock_ldap.search_count == searches


@pytest.mark.asyncio
async def test_login_name2user_name_concurrent(
    factory: Factory, mapped_users: None, mock_ldap: MockLDAP
) -> None:
    backend = factory.create_backend()
    searches = mock_ldap.search_count
    assert await backend.login_name2user_name("roland") == "gunslinger"
    needed = mock_ldap.search_count - searches
    assert needed > 0

    await factory.connection.clear_cache()
    await factory.create_identity_manager().clear()
    searches = mock_ldap.search_count
    results = await asyncio.gather(
        *(backend.login_name2user_name("roland") for _ in range(5))
    )
    assert results == ["gunslinger"] * 5
    assert mock_ldap.search_count - searches == needed


@pytest.mark.asyncio
async def test_login_name2user_name_offline(
    factory: Factory, mapped_users: None
) -> None:
    backend = factory.create_backend()
    identities = factory.create_identity_manager()
    await identities.mark_offline("gunslinger")

    assert await backend.login_name2user_name("roland") is False


@pytest.mark.asyncio
async def test_set_password(
    factory: Factory, mapped_users: None, mock_ldap: MockLDAP
) -> None:
    backend = factory.create_backend()

    assert await backend.set_password("gunslinger", "dt12234$") is True
    assert mock_ldap.changed_passwords == {ROLAND_DN: "dt12234$"}
    assert await backend.check_password("roland", "dt12234$") == (
        "gunslinger"
    )

    with pytest.raises(PolicyRejectedError) as excinfo:
        await backend.set_password("gunslinger", "dt")
    assert excinfo.value.message == "Password fails quality checking policy."

    with pytest.raises(FatalLookupError):
        await backend.set_password("mallory", "dt12234$")

    await reconfigure(factory, turn_on_password_change=False)
    assert await backend.set_password("gunslinger", "dt12234$") is False


@pytest.mark.asyncio
async def test_can_change_avatar(
    backend: Backend,
    mapped_users: None,
    avatar_manager: MockAvatarManager,
) -> None:
    assert await backend.can_change_avatar("gunslinger") is True
    assert avatar_manager.avatars == {"gunslinger": JPEG_IMAGE}
    assert await backend.can_change_avatar("ladyofshadows") is False
    assert await backend.can_change_avatar("newyorker") is False
    assert await backend.can_change_avatar("mallory") is False


@pytest.mark.asyncio
async def test_implements_actions(factory: Factory) -> None:
    backend = factory.create_backend()

    assert backend.implements_actions(Action.CHECK_PASSWORD)
    assert backend.implements_actions(Action.GET_HOME)
    assert backend.implements_actions(Action.GET_DISPLAYNAME)
    assert backend.implements_actions(Action.COUNT_USERS)
    assert backend.implements_actions(Action.PROVIDE_AVATAR)
    assert backend.implements_actions(Action.SET_PASSWORD)
    assert not backend.implements_actions(Action.CREATE_USER)
    assert not backend.implements_actions(Action.SET_DISPLAYNAME)
    assert backend.implements_actions(
        Action.CREATE_USER | Action.CHECK_PASSWORD
    )
    assert backend.implements_actions(int(Action.GET_HOME))

    await reconfigure(factory, avatar_rule="data:selfiePhoto")
    assert backend.implements_actions(Action.PROVIDE_AVATAR)
    await reconfigure(factory, avatar_rule="none")
    assert not backend.implements_actions(Action.PROVIDE_AVATAR)
    await reconfigure(factory, turn_on_password_change=False)
    assert not backend.implements_actions(Action.SET_PASSWORD)

    factory.plugins.register(RecordingPlugin(Action.CREATE_USER))
    assert backend.implements_actions(Action.CREATE_USER)


@pytest.mark.asyncio
async def test_native_only_actions(backend: Backend) -> None:
    assert await backend.create_user("jake", "password") is False
    assert await backend.set_display_name("gunslinger", "Roland") is False
    assert backend.get_backend_name() == "LDAP"
    assert backend.has_user_listings()


@pytest.mark.asyncio
async def test_plugin(factory: Factory, mock_ldap: MockLDAP) -> None:
    plugin = RecordingPlugin(Action(sum(Action)), "plugin", delete=True)
    factory.plugins.register(plugin)
    backend = factory.create_backend()

    assert await backend.can_change_avatar("jake") == "plugin"
    assert await backend.check_password("jake", "pw") == "plugin"
    assert await backend.count_users() == "plugin"
    assert await backend.create_user("jake", "pw") == "plugin"
    assert await backend.delete_user("jake") == "plugin"
    assert await backend.get_display_name("jake") == "plugin"
    assert await backend.get_home("jake") == "plugin"
    assert await backend.set_display_name("jake", "Jake") == "plugin"
    assert await backend.set_password("jake", "pw") == "plugin"
    assert plugin.calls == [
        ("can_change_avatar", ("jake",)),
        ("check_password", ("jake", "pw")),
        ("count_users", ()),
        ("create_user", ("jake", "pw")),
        ("delete_user", ("jake",)),
        ("get_display_name", ("jake",)),
        ("get_home", ("jake",)),
        ("set_display_name", ("jake", "Jake")),
        ("set_password", ("jake", "pw")),
    ]

    # Nothing was asked of the directory.
    assert mock_ldap.search_count == 0
    assert mock_ldap.bind_count == 0


@pytest.mark.asyncio
async def test_plugin_results_unmodified(
    factory: Factory, mock_ldap: MockLDAP
) -> None:
    factory.plugins.register(
        RecordingPlugin(Action.GET_HOME | Action.COUNT_USERS, result=None)
    )
    backend = factory.create_backend()

    assert await backend.get_home("jake") is None
    assert await backend.count_users() is None
    assert mock_ldap.search_count == 0
