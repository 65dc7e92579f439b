"""Database utility functions for userldap."""

from __future__ import annotations

from safir.database import create_database_engine, initialize_database
from sqlalchemy.ext.asyncio import AsyncEngine
from structlog.stdlib import BoundLogger

from .config import Config
from .schema import SchemaBase

__all__ = ["initialize_userldap_database"]


async def initialize_userldap_database(
    config: Config,
    logger: BoundLogger,
    engine: AsyncEngine | None = None,
    *,
    reset: bool = False,
) -> None:
    """Create the user mapping table if it does not exist.

    Parameters
    ----------
    config
        userldap configuration.
    logger
        Logger to use for status reporting.
    engine
        If given, database engine to use, which avoids the need to create
        another one. It is not disposed.
    reset
        If set to `True`, drop all tables first.
    """
    if engine:
        await initialize_database(
            engine, logger, schema=SchemaBase.metadata, reset=reset
        )
        return
    engine = create_database_engine(
        config.database_url, config.database_password
    )
    try:
        await initialize_database(
            engine, logger, schema=SchemaBase.metadata, reset=reset
        )
    finally:
        await engine.dispose()
