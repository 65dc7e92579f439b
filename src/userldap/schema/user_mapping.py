"""The directory user mapping database table."""

from __future__ import annotations

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from .base import SchemaBase

__all__ = ["UserMapping"]


class UserMapping(SchemaBase):
    """Association of directory entries with internal usernames.

    The username and the UUID are each unique, so together they form a
    bijection. The DN is only as fresh as the last time the entry was seen.
    """

    __tablename__ = "ldap_user_mapping"

    username: Mapped[str] = mapped_column(String(64), primary_key=True)
    uuid: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    dn: Mapped[str] = mapped_column(String(4000), unique=True, index=True)
