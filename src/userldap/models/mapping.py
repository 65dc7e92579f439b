"""Representation of a directory user mapping."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

__all__ = ["MappingEntry"]


class MappingEntry(BaseModel):
    """Association of a directory entry with an internal username."""

    model_config = ConfigDict(from_attributes=True)

    uuid: str = Field(
        ...,
        title="Stable identifier",
        description="Directory-assigned identifier, unchanged by renames",
        examples=["6ba7b810-9dad-11d1-80b4-00c04fd430c8"],
    )

    username: str = Field(
        ...,
        title="Internal username",
        description="Username exposed to the host",
        examples=["gunslinger"],
    )

    dn: str = Field(
        ...,
        title="Last known DN",
        description="DN of the entry when it was last seen, possibly stale",
        examples=["uid=roland,ou=people,dc=example,dc=com"],
    )
