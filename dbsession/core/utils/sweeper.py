"""Removal of sessions whose inactivity window has elapsed.

A sweep reads every row, decides expiry client-side against one reference
time, then deletes the expired rows in one batch. Each delete matches both
the session id and the ``lastAccessedAt`` value seen during the scan, so a
session written after the scan no longer matches and survives.

The guard compares against ``lastAccessedAt`` exactly as the database stored
it. SQLite keeps timestamps as text, and a value written by a database-side
function such as ``CURRENT_TIMESTAMP`` has a different text form than the one
SQLAlchemy would render for the parsed datetime.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from threading import Event, Lock, Thread
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import String, Table, bindparam, delete, select, type_coerce
from sqlalchemy.exc import DBAPIError

from dbsession.core.logging_config import correlation_context
from dbsession.core.utils.time_helpers import is_expired, to_naive_utc, utcnow
from dbsession.db.errors import classify_storage_error
from dbsession.db.session import TransactionRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpiredSession:
    """A deletion candidate as observed during the scan."""

    session_id: str
    last_accessed_at: datetime
    # lastAccessedAt as returned by the driver without type processing
    stored_last_accessed_at: Any


@dataclass
class SweepResult:
    """Outcome of one sweep."""

    scanned: int = 0
    expired: int = 0
    deleted: int = 0
    failed: int = 0


class ExpirySweeper:
    """Finds and deletes expired session rows."""

    def __init__(
        self,
        runner: TransactionRunner,
        table: Table,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.runner = runner
        self.table = table
        self.clock = clock
        self._stored_last_accessed_at = type_coerce(table.c.lastAccessedAt, String)
        self._delete_stmt = delete(table).where(
            table.c.sessionId == bindparam("b_session_id"),
            self._stored_last_accessed_at == bindparam("b_last_accessed_at", type_=String),
        )

    def clean_up(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Run one sweep.

        Args:
            now: Reference time for every expiry decision in this sweep;
                defaults to one read of the clock

        Returns:
            SweepResult with scan and delete counts
        """
        with correlation_context():
            return self._sweep(now)

    def _sweep(self, now: Optional[datetime]) -> SweepResult:
        now = to_naive_utc(now) if now is not None else self.clock()

        scanned, candidates = self.find_expired(now)
        result = SweepResult(scanned=scanned, expired=len(candidates))
        if not candidates:
            logger.debug("No expired sessions found", extra={"scanned": scanned})
            return result

        result.deleted, result.failed = self.delete_expired(candidates)
        logger.info(
            "Session sweep removed %d of %d expired sessions",
            result.deleted,
            result.expired,
            extra={"scanned": scanned, "failed": result.failed},
        )
        return result

    def find_expired(self, now: datetime) -> Tuple[int, List[ExpiredSession]]:
        """Scan all rows and return (rows scanned, expired candidates)."""
        t = self.table
        stmt = select(
            t.c.sessionId,
            t.c.lastAccessedAt,
            self._stored_last_accessed_at.label("storedLastAccessedAt"),
            t.c.maxInactiveInterval,
        )
        rows = self.runner.run(lambda db: db.execute(stmt).all())

        candidates = [
            ExpiredSession(row.sessionId, row.lastAccessedAt, row.storedLastAccessedAt)
            for row in rows
            if is_expired(row.lastAccessedAt, row.maxInactiveInterval, now)
        ]
        return len(rows), candidates

    def delete_expired(self, candidates: List[ExpiredSession]) -> Tuple[int, int]:
        """
        Delete candidates whose lastAccessedAt is unchanged since the scan.

        Runs one batched statement; if the driver rejects the batch, falls
        back to one transaction per row so a single bad row cannot abort the
        sweep.

        Returns:
            Tuple of (rows deleted, rows that failed to delete)
        """
        params = [
            {"b_session_id": c.session_id, "b_last_accessed_at": c.stored_last_accessed_at}
            for c in candidates
        ]

        try:
            deleted = self.runner.run(lambda db: db.execute(self._delete_stmt, params).rowcount)
            return max(deleted, 0), 0
        except DBAPIError as e:
            logger.warning(
                "Batched session delete failed (%s); retrying row by row",
                classify_storage_error(e).value,
                exc_info=True,
            )

        deleted = failed = 0
        for row_params in params:
            try:
                deleted += max(self._delete_one(row_params), 0)
            except DBAPIError:
                failed += 1
                logger.error(
                    "Error deleting expired session: %s",
                    row_params["b_session_id"],
                    exc_info=True,
                    extra={"session_id": row_params["b_session_id"]},
                )
        return deleted, failed

    def _delete_one(self, row_params: Dict[str, Any]) -> int:
        return self.runner.run(lambda db: db.execute(self._delete_stmt, row_params).rowcount)


class CleanupScheduler:
    """Runs sweeps periodically on a daemon thread."""

    def __init__(self, target: Any, interval_seconds: float):
        """
        Args:
            target: Anything with a ``clean_up()`` method (ExpirySweeper or SessionStore)
            interval_seconds: Delay between the end of one sweep and the next
        """
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.target = target
        self.interval_seconds = interval_seconds
        self._stop_event = Event()
        self._lock = Lock()
        self._thread: Optional[Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop_event.clear()
            self._thread = Thread(target=self._run, name="session-cleanup", daemon=True)
            self._thread.start()
            logger.info("Session cleanup scheduled every %s seconds", self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            self._stop_event.set()
            thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)

    def run_once(self) -> Optional[SweepResult]:
        """Run one sweep; a failure is logged and reported as None."""
        try:
            return self.target.clean_up()
        except Exception:
            logger.exception("Session cleanup failed; will retry on the next interval")
            return None

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.run_once()
