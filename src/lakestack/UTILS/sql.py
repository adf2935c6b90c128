"""
Short-lived SQLAlchemy async engines for probes and provisioning.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool
from sqlalchemy.sql.elements import TextClause


@asynccontextmanager
async def sql_engine(dsn: str, autocommit: bool = False) -> AsyncIterator[AsyncEngine]:
    """
    Yields an engine for ``dsn`` (e.g. ``postgresql+asyncpg://user:pw@host/db``)
    and disposes of it afterwards. No pooling: every probe or action opens
    its own connection.

    :param autocommit: Run statements outside a transaction (needed for CREATE DATABASE).
    """
    options = {"isolation_level": "AUTOCOMMIT"} if autocommit else {}
    engine = create_async_engine(dsn, poolclass=NullPool, **options)
    try:
        yield engine
    finally:
        await engine.dispose()


def quote_ident(name: str) -> str:
    """Quotes a SQL identifier (schema, role or database name)."""
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quotes a SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


def ddl(statement: str) -> TextClause:
    """
    Wraps a statement whose literals are already inlined. Colons are escaped
    so that ``:word`` inside a password or name is never read as a bind parameter.
    """
    return text(statement.replace(":", "\\:"))
