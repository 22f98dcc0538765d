"""
Engine-or-connection helper shared by the relational store and the SQL
repositories.

Each of them is constructed with either an ``AsyncEngine`` (the usual case)
or an ``AsyncConnection`` owned by a caller that wants several operations in
one transaction, e.g. a phase save and its audit entry.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection for one unit of relational work.

    Args:
        conn: Engine or connection the store was constructed with.
        transactional: For an engine, commit on exit (``begin``) rather than
            open a plain read connection (``connect``). Ignored for a
            connection, whose transaction belongs to the caller.

    Example:
        >>> async with execute_with_connection(self._conn) as connection:
        ...     await connection.execute(upsert)
    """
    if not isinstance(conn, AsyncEngine):
        yield conn
        return

    if transactional:
        async with conn.begin() as connection:
            yield connection
    else:
        async with conn.connect() as connection:
            yield connection
