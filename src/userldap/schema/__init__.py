"""All database schema objects."""

from __future__ import annotations

from .base import SchemaBase
from .user_mapping import UserMapping

__all__ = ["SchemaBase", "UserMapping"]
