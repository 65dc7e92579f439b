"""Tests for the user mapping store."""

from __future__ import annotations

import pytest

from userldap.models.mapping import MappingEntry
from userldap.storage.mapping import UserMapping

from ..support.constants import (
    EDDIE_DN,
    EDDIE_UUID,
    ROLAND_DN,
    ROLAND_UUID,
    TEST_BASE_DN,
)


@pytest.mark.asyncio
async def test_map_and_lookup(mapping: UserMapping) -> None:
    assert await mapping.map(ROLAND_DN, "gunslinger", ROLAND_UUID)

    assert await mapping.get_dn_by_name("gunslinger") == ROLAND_DN
    assert await mapping.get_dn_by_uuid(ROLAND_UUID) == ROLAND_DN
    assert await mapping.get_name_by_dn(ROLAND_DN) == "gunslinger"
    assert await mapping.get_name_by_uuid(ROLAND_UUID) == "gunslinger"
    assert await mapping.get_uuid_by_dn(ROLAND_DN) == ROLAND_UUID
    assert await mapping.count() == 1

    assert await mapping.get_dn_by_name("newyorker") is None
    assert await mapping.get_name_by_dn(EDDIE_DN) is None
    assert await mapping.get_uuid_by_dn(EDDIE_DN) is None


@pytest.mark.asyncio
async def test_map_conflicts(mapping: UserMapping) -> None:
    assert await mapping.map(ROLAND_DN, "gunslinger", ROLAND_UUID)

    # Same username, same UUID, and same DN are each rejected.
    assert not await mapping.map(EDDIE_DN, "gunslinger", EDDIE_UUID)
    assert not await mapping.map(EDDIE_DN, "newyorker", ROLAND_UUID)
    assert not await mapping.map(ROLAND_DN, "newyorker", EDDIE_UUID)
    assert await mapping.count() == 1

    # The store is still usable after a failed insert.
    assert await mapping.map(EDDIE_DN, "newyorker", EDDIE_UUID)
    assert await mapping.count() == 2


@pytest.mark.asyncio
async def test_set_dn_by_uuid(mapping: UserMapping) -> None:
    new_dn = f"uid=roland,ou=gilead,{TEST_BASE_DN}"
    assert not await mapping.set_dn_by_uuid(new_dn, ROLAND_UUID)

    await mapping.map(ROLAND_DN, "gunslinger", ROLAND_UUID)
    assert await mapping.set_dn_by_uuid(new_dn, ROLAND_UUID)
    assert await mapping.get_dn_by_name("gunslinger") == new_dn
    assert await mapping.get_name_by_dn(new_dn) == "gunslinger"
    assert await mapping.get_name_by_dn(ROLAND_DN) is None


@pytest.mark.asyncio
async def test_unmap(mapping: UserMapping) -> None:
    await mapping.map(ROLAND_DN, "gunslinger", ROLAND_UUID)
    await mapping.map(EDDIE_DN, "newyorker", EDDIE_UUID)

    assert await mapping.unmap("gunslinger")
    assert not await mapping.unmap("gunslinger")
    assert await mapping.get_dn_by_name("gunslinger") is None
    assert await mapping.get_name_by_uuid(ROLAND_UUID) is None
    assert await mapping.list() == [
        MappingEntry(uuid=EDDIE_UUID, username="newyorker", dn=EDDIE_DN)
    ]

    # The UUID can be mapped again after unmapping.
    assert await mapping.map(ROLAND_DN, "gunslinger", ROLAND_UUID)


@pytest.mark.asyncio
async def test_list(mapping: UserMapping) -> None:
    await mapping.map(ROLAND_DN, "gunslinger", ROLAND_UUID)
    await mapping.map(EDDIE_DN, "newyorker", EDDIE_UUID)

    entries = await mapping.list()
    assert [e.username for e in entries] == ["gunslinger", "newyorker"]
    entries = await mapping.list(limit=1, offset=1)
    assert entries == [
        MappingEntry(uuid=EDDIE_UUID, username="newyorker", dn=EDDIE_DN)
    ]

    await mapping.clear()
    assert await mapping.count() == 0
    assert await mapping.list() == []
