from typing import Optional

from sqlalchemy import Column, DateTime, Integer, LargeBinary, MetaData, String, Table

from dbsession.db.base import metadata as default_metadata


def session_table(table_name: str, metadata: Optional[MetaData] = None) -> Table:
    """
    Table definition for stored sessions.

    The table name is configurable, so the table is built on demand rather
    than declared once at import time. Asking twice for the same name on the
    same MetaData returns the already registered Table.

    Args:
        table_name: Name of the session table
        metadata: MetaData to register the table on (defaults to the shared one)
    """
    metadata = default_metadata if metadata is None else metadata
    if table_name in metadata.tables:
        return metadata.tables[table_name]

    return Table(
        table_name,
        metadata,
        Column("sessionId", String(255), primary_key=True),
        Column("sessionHash", String(64), nullable=False),
        Column("sessionData", LargeBinary, nullable=False),
        Column("createdAt", DateTime, nullable=False),
        Column("lastAccessedAt", DateTime, nullable=False),
        Column("maxInactiveInterval", Integer, nullable=False),
    )
