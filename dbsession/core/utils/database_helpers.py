"""
Database helper utilities for the session store.

Provides database-agnostic inspection helpers for both SQLite and PostgreSQL.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)


def get_database_type(database_url: str) -> str:
    """
    Get the database type from a database URL.

    Returns:
        str: Database type ('sqlite', 'postgresql', etc.)
    """
    url = database_url.lower()
    if url.startswith("sqlite"):
        return "sqlite"
    elif url.startswith("postgresql"):
        return "postgresql"
    else:
        # Extract from URL scheme, dropping any driver suffix
        scheme = url.split("://")[0] if "://" in url else "unknown"
        return scheme.split("+")[0]


def get_database_info(engine: Engine) -> Dict[str, Any]:
    """
    Get database connection information and metadata.

    Returns:
        Dict containing database type, connection status, and metadata
    """
    db_type = engine.dialect.name
    info: Dict[str, Any] = {
        "type": db_type,
        "url": engine.url.render_as_string(hide_password=True),
        "connected": False,
        "tables": [],
        "version": None,
        "error": None
    }

    try:
        with engine.connect() as conn:
            info["connected"] = True

            if db_type == "sqlite":
                result = conn.execute(text("SELECT sqlite_version()"))
                info["version"] = result.scalar()
            elif db_type == "postgresql":
                result = conn.execute(text("SELECT version()"))
                version_str = result.scalar()
                # Extract just the version number
                info["version"] = version_str.split()[1] if version_str else "unknown"

            info["tables"] = inspect(conn).get_table_names()

    except Exception as e:
        logger.error(f"Database connection error: {e}")
        info["error"] = str(e)

    return info


def check_database_health(engine: Engine, table_name: Optional[str] = None) -> Dict[str, Any]:
    """
    Perform database health check.

    Args:
        engine: Engine to check
        table_name: Session table that must exist for the store to be usable

    Returns:
        Dict containing health status and metrics
    """
    health: Dict[str, Any] = {
        "status": "healthy",
        "database_type": engine.dialect.name,
        "connected": False,
        "table_count": 0,
        "session_table_present": None,
        "connection_pool_status": "unknown",
        "last_error": None
    }

    db_info = get_database_info(engine)
    health["connected"] = db_info["connected"]
    health["table_count"] = len(db_info["tables"])
    if table_name is not None:
        health["session_table_present"] = table_name in db_info["tables"]

    if db_info["error"]:
        health["status"] = "unhealthy"
        health["last_error"] = db_info["error"]
    elif not db_info["connected"]:
        health["status"] = "unhealthy"
        health["last_error"] = "Unable to connect to database"
    elif health["session_table_present"] is False:
        health["status"] = "warning"
        health["last_error"] = f"Session table {table_name!r} not found - run ensure_schema()"

    # Connection pool info
    pool = engine.pool
    if hasattr(pool, 'status'):
        health["connection_pool_status"] = str(pool.status())

    return health
