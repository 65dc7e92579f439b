"""Test fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import pytest
import pytest_asyncio
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from userldap.backend import Backend
from userldap.config import Config
from userldap.database import initialize_userldap_database
from userldap.factory import Factory
from userldap.services.access import DirectoryAccess
from userldap.storage.mapping import UserMapping

from .support.constants import (
    EDDIE_DN,
    EDDIE_UUID,
    JPEG_IMAGE,
    ROLAND_DN,
    ROLAND_PASSWORD,
    ROLAND_UUID,
    SUSANNAH_DN,
    SUSANNAH_UUID,
    TEST_BASE_DN,
    TEST_DATA_DIRECTORY,
    TEST_LDAP_URL,
)
from .support.host import MockAvatarManager, MockUserValueStore
from .support.ldap import MockLDAP, patch_ldap


@pytest.fixture
def avatar_manager() -> MockAvatarManager:
    return MockAvatarManager()


@pytest_asyncio.fixture
async def access(factory: Factory) -> DirectoryAccess:
    return factory.create_directory_access()


@pytest_asyncio.fixture
async def backend(factory: Factory) -> Backend:
    return factory.create_backend()


@pytest.fixture
def config() -> Config:
    """Return the default test configuration."""
    return Config.model_validate(
        {
            "databaseUrl": "postgresql://userldap@localhost/userldap",
            "ldap": {
                "url": TEST_LDAP_URL,
                "userBaseDn": TEST_BASE_DN,
                "loginFilter": (
                    "(&(objectClass=inetOrgPerson)(|(uid=%uid)(cn=%uid)))"
                ),
                "internalUsernameAttr": "uid",
                "searchAttributes": ["uid"],
                "homeFolderNamingRule": "attr:homeDirectory",
                "dataDirectory": TEST_DATA_DIRECTORY,
                "turnOnPasswordChange": True,
            },
        }
    )


@pytest.fixture
def directory(mock_ldap: MockLDAP) -> MockLDAP:
    """Populate the mock directory with the standard test users."""
    mock_ldap.add_entry(
        ROLAND_DN,
        {
            "objectClass": ["inetOrgPerson"],
            "uid": ["gunslinger"],
            "cn": ["roland"],
            "displayName": ["Roland Deschain"],
            "entryUUID": [ROLAND_UUID],
            "homeDirectory": ["/tmp/rolandshome/"],
            "jpegPhoto": [JPEG_IMAGE],
        },
        password=ROLAND_PASSWORD,
    )
    mock_ldap.add_entry(
        EDDIE_DN,
        {
            "objectClass": ["inetOrgPerson"],
            "uid": ["newyorker"],
            "cn": ["eddie"],
            "displayName": ["Eddie Dean"],
            "entryUUID": [EDDIE_UUID],
        },
        password="keystone",
    )
    mock_ldap.add_entry(
        SUSANNAH_DN,
        {
            "objectClass": ["inetOrgPerson"],
            "uid": ["ladyofshadows"],
            "cn": ["susannah"],
            "displayName": ["Susannah Dean"],
            "entryUUID": [SUSANNAH_UUID],
            "homeDirectory": ["susannah/"],
            "thumbnailPhoto": [b"not an image"],
        },
    )
    return mock_ldap


@pytest_asyncio.fixture
async def empty_database(engine: AsyncEngine, config: Config) -> None:
    """Empty the database before a test."""
    logger = structlog.get_logger(__name__)
    await initialize_userldap_database(config, logger, engine, reset=True)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """Create a database engine for testing.

    The mapping store only uses portable SQL, so tests run against a SQLite
    database in the temporary directory of the test.
    """
    url = f"sqlite+aiosqlite:///{tmp_path / 'userldap.sqlite3'}"
    engine = create_async_engine(url)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def factory(
    empty_database: None,
    config: Config,
    engine: AsyncEngine,
    mock_ldap: MockLDAP,
    user_values: MockUserValueStore,
    avatar_manager: MockAvatarManager,
) -> AsyncIterator[Factory]:
    """Return a component factory."""
    async with Factory.standalone(
        config,
        engine,
        user_values=user_values,
        avatar_manager=avatar_manager,
    ) as factory:
        yield factory


@pytest_asyncio.fixture
async def mapping(factory: Factory) -> UserMapping:
    return factory.create_user_mapping()


@pytest_asyncio.fixture
async def mapped_users(directory: MockLDAP, mapping: UserMapping) -> None:
    """Map the standard test users, as if they had been seen before."""
    await mapping.map(ROLAND_DN, "gunslinger", ROLAND_UUID)
    await mapping.map(EDDIE_DN, "newyorker", EDDIE_UUID)
    await mapping.map(SUSANNAH_DN, "ladyofshadows", SUSANNAH_UUID)


@pytest.fixture
def mock_ldap() -> Iterator[MockLDAP]:
    """Replace the bonsai LDAP API with a mock class."""
    yield from patch_ldap()


@pytest.fixture
def user_values() -> MockUserValueStore:
    return MockUserValueStore()
