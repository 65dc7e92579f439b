"""Tests for the userldap.util package."""

from __future__ import annotations

import uuid

from bonsai.utils import escape_filter_exp

from userldap.util import (
    first_value,
    is_absolute_path,
    is_dn_under_base,
    normalize_uuid,
    sanitize_username,
    uuid_filter_value,
)

from .support.constants import ROLAND_DN, ROLAND_UUID, TEST_BASE_DN


def test_first_value() -> None:
    entry = {"displayName": ["Roland Deschain"], "mail": [], "dn": [ROLAND_DN]}
    assert first_value(entry, "displayname") == "Roland Deschain"
    assert first_value(entry, "mail") is None
    assert first_value(entry, "cn") is None


def test_is_absolute_path() -> None:
    assert is_absolute_path("/home/roland")
    assert is_absolute_path("C:\\Users\\roland")
    assert is_absolute_path("d:/users/roland")
    assert not is_absolute_path("roland")
    assert not is_absolute_path("home/roland")
    assert not is_absolute_path("")


def test_is_dn_under_base() -> None:
    assert is_dn_under_base(ROLAND_DN, TEST_BASE_DN)
    assert is_dn_under_base(ROLAND_DN.upper(), TEST_BASE_DN)
    assert is_dn_under_base(TEST_BASE_DN, TEST_BASE_DN)
    assert is_dn_under_base(f"uid=x,ou=gilead,{TEST_BASE_DN}", TEST_BASE_DN)
    groups_dn = "uid=x,ou=groups,dc=example,dc=com"
    assert not is_dn_under_base(groups_dn, TEST_BASE_DN)
    assert not is_dn_under_base("dc=com", TEST_BASE_DN)
    assert not is_dn_under_base("not a dn", TEST_BASE_DN)


def test_normalize_uuid() -> None:
    raw = uuid.UUID(ROLAND_UUID).bytes_le
    assert normalize_uuid(raw) == ROLAND_UUID
    assert normalize_uuid(ROLAND_UUID) == ROLAND_UUID
    assert normalize_uuid(b"some-unique-id") == "some-unique-id"


def test_sanitize_username() -> None:
    assert sanitize_username("gunslinger") == "gunslinger"
    assert sanitize_username("  Roland Deschain ") == "Roland_Deschain"
    assert sanitize_username("roland@gilead.example") == (
        "roland@gilead.example"
    )
    assert sanitize_username("rolând!") == "rolnd"
    assert sanitize_username("***") == ""


def test_uuid_filter_value() -> None:
    assert uuid_filter_value("entryUUID", ROLAND_UUID) == escape_filter_exp(
        ROLAND_UUID
    )

    value = uuid_filter_value("objectGUID", ROLAND_UUID)
    raw = uuid.UUID(ROLAND_UUID).bytes_le
    assert value == "".join(f"\\{b:02x}" for b in raw)
    assert uuid_filter_value("objectguid", ROLAND_UUID) == value

    # Values that are not UUIDs are escaped like any other value.
    assert uuid_filter_value("objectGUID", "a*b") == escape_filter_exp("a*b")
