#!/usr/bin/env python3
"""
Database setup script for the session store.

Creates the session table (if missing) for both SQLite and PostgreSQL and
reports database health.
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from dbsession.core.config import settings
from dbsession.core.logging_config import init_application_logging
from dbsession.core.utils.database_helpers import get_database_info
from dbsession.core.utils.session_store import SessionStore


def main() -> bool:
    """Create the session table based on configuration"""
    init_application_logging()
    store = SessionStore.from_settings(settings)

    print("Session Store Database Setup")
    print("=" * 40)

    db_info = get_database_info(store.engine)
    print(f"Database URL: {db_info['url']}")
    print(f"Database Type: {db_info['type']}")
    print(f"Connected: {db_info['connected']}")

    if db_info['error']:
        print(f"Connection Error: {db_info['error']}")
        return False

    if db_info['version']:
        print(f"Database Version: {db_info['version']}")

    print(f"\nEnsuring session table {store.table.name!r}...")
    if not store.ensure_schema():
        print("Session table could not be created; see the log for details")
        return False

    health = store.health()
    print(f"Health Status: {health['status']}")
    print(f"Table Count: {health['table_count']}")
    print(f"Stored Sessions: {store.count()}")

    if health['status'] != 'healthy':
        print(f"Warning: {health['last_error']}")

    return True


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
