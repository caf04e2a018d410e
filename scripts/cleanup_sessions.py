#!/usr/bin/env python3
"""Remove expired sessions once, or repeatedly with --interval."""

import argparse
import sys
import time
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from dbsession.core.config import settings
from dbsession.core.logging_config import init_application_logging
from dbsession.core.utils.session_store import SessionStore
from dbsession.core.utils.sweeper import CleanupScheduler


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--interval",
        type=float,
        nargs="?",
        const=float(settings.cleanup_interval_seconds),
        default=None,
        help="Keep running, sweeping every INTERVAL seconds; without a value uses "
        f"CLEANUP_INTERVAL_SECONDS ({settings.cleanup_interval_seconds})",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    init_application_logging()
    store = SessionStore.from_settings(settings)

    if args.interval is None:
        result = store.clean_up()
        print(
            f"Scanned {result.scanned}, expired {result.expired}, "
            f"deleted {result.deleted}, failed {result.failed}"
        )
        return 0 if result.failed == 0 else 1

    scheduler = CleanupScheduler(store, args.interval)
    scheduler.start()
    try:
        while scheduler.running:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop(timeout=10)
    return 0


if __name__ == "__main__":
    sys.exit(main())
