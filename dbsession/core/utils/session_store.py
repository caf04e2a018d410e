"""Server-side session storage in a relational table.

Each session is one row keyed by session id holding the serialized attribute
blob, its SHA-256 digest, creation/last-access timestamps and the inactivity
window. Writes tolerate concurrent first-writers: an insert that hits the
primary key falls back to an update, and an update that matches no row falls
back to an insert.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy import MetaData, Table, case, func, insert, inspect, literal_column, select, update
from sqlalchemy.engine import Engine, Row
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from dbsession.core.config import SessionStoreConfig, Settings
from dbsession.core.exceptions import (
    AttributeDeserializationError,
    DuplicateSessionRecordError,
    SessionRowMappingError,
)
from dbsession.core.logging_config import correlation_context
from dbsession.core.schemas.session import SessionRecord
from dbsession.core.utils.codec import AttributeCodec, EncodedAttributes, codec as default_codec
from dbsession.core.utils.database_helpers import check_database_health
from dbsession.core.utils.sweeper import ExpirySweeper, SweepResult
from dbsession.core.utils.time_helpers import to_naive_utc, utcnow
from dbsession.db.base import metadata as default_metadata
from dbsession.db.errors import StorageErrorKind, classify_storage_error
from dbsession.db.models.session_table import session_table
from dbsession.db.session import TransactionRunner, create_db_engine

logger = logging.getLogger(__name__)

_INSERT = "insert"
_UPDATE = "update"

NATIVE_UPSERT_DIALECTS = ("sqlite", "postgresql")


class SessionStore:
    """Persists, loads, invalidates and sweeps session records."""

    def __init__(
        self,
        runner: TransactionRunner,
        config: Optional[SessionStoreConfig] = None,
        codec: AttributeCodec = default_codec,
        clock: Callable[[], datetime] = utcnow,
        metadata: Optional[MetaData] = None,
    ):
        self.runner = runner
        self.config = config or SessionStoreConfig()
        self.codec = codec
        self.clock = clock
        self.table: Table = session_table(
            self.config.table_name,
            default_metadata if metadata is None else metadata,
        )
        self.sweeper = ExpirySweeper(runner, self.table, clock=clock)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "SessionStore":
        """Build a store, its engine and its transaction runner from settings."""
        engine = create_db_engine(settings.database_url)
        return cls(TransactionRunner.for_engine(engine), settings.store_config(), **kwargs)

    @property
    def engine(self) -> Engine:
        return self.runner.engine

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def ensure_schema(self) -> bool:
        """
        Create the session table if it does not exist.

        Never raises: the schema may be managed out-of-band, so failures are
        logged and reported through the return value.

        Returns:
            True if the table exists afterwards, False otherwise
        """
        table_name = self.table.name
        logger.debug("Checking whether the session table %s needs creating", table_name)
        try:
            if inspect(self.engine).has_table(table_name):
                logger.info("Session table already exists: %s", table_name)
                return True
            self.table.create(bind=self.engine, checkfirst=True)
            logger.info("Successfully created the table for sessions: %s", table_name)
            return True
        except SQLAlchemyError as e:
            kind = classify_storage_error(e, exists=self._table_exists())
            if kind is StorageErrorKind.ALREADY_EXISTS:
                logger.info(
                    "Looks like the session table is already created (%s)", type(e).__name__
                )
                logger.debug("Error encountered while creating the session table", exc_info=True)
                return True
            logger.warning(
                "Unexpected %s error while creating the session table %s",
                kind.value,
                table_name,
                exc_info=True,
            )
            return False
        except Exception:
            logger.warning("Unknown error while creating the session table %s", table_name, exc_info=True)
            return False

    def _table_exists(self) -> Optional[bool]:
        try:
            return inspect(self.engine).has_table(self.table.name)
        except SQLAlchemyError:
            logger.debug("Could not inspect the session table", exc_info=True)
            return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(
        self,
        session_id: str,
        attributes: Mapping[str, Any],
        max_inactive_interval: int,
        last_accessed_at: Optional[datetime] = None,
    ) -> bool:
        """Keyword form of :meth:`persist`."""
        record = SessionRecord(
            session_id=session_id,
            attributes=dict(attributes),
            max_inactive_interval=max_inactive_interval,
            last_accessed_at=last_accessed_at,
        )
        return self.persist(record)

    def persist(self, record: SessionRecord) -> bool:
        """
        Insert or update the row for ``record.session_id``.

        Attribute serialization errors propagate before any SQL is issued.
        Storage failures are logged and the write is abandoned: a lost session
        write is recoverable by recreating the session.

        Returns:
            True if the row was written, False if the write was abandoned

        Raises:
            AttributeSerializationError: If the attributes cannot be serialized
        """
        with correlation_context():
            return self._persist(record)

    def _persist(self, record: SessionRecord) -> bool:
        session_id = record.session_id
        logger.debug("Persisting session: %s", session_id, extra={"session_id": session_id})

        encoded = self.codec.encode(record.attributes)
        timestamp = self._client_timestamp(record)

        if self._use_native_upsert():
            return self._native_upsert(record, encoded, timestamp)

        try:
            step = _UPDATE if self.is_valid(session_id) else _INSERT
        except SQLAlchemyError as e:
            self._log_write_failure(session_id, classify_storage_error(e))
            return False

        for _ in range(self.config.max_upsert_attempts):
            try:
                if step == _UPDATE:
                    if self._update(record, encoded, timestamp):
                        logger.debug("Updated session: %s", session_id, extra={"session_id": session_id})
                        return True
                    logger.debug(
                        "Session was not updated, no records found: %s (going to try for an insert)",
                        session_id,
                        extra={"session_id": session_id},
                    )
                    step = _INSERT
                else:
                    self._insert(record, encoded, timestamp)
                    logger.debug("Successfully inserted session: %s", session_id, extra={"session_id": session_id})
                    return True
            except IntegrityError as e:
                kind = classify_storage_error(e, exists=self._exists_or_none(session_id))
                if step == _INSERT and kind is StorageErrorKind.DUPLICATE_KEY:
                    # Someone else inserted the same id first
                    logger.debug(
                        "Detected a duplicate key: %s (going to try for an update)",
                        session_id,
                        extra={"session_id": session_id},
                    )
                    step = _UPDATE
                    continue
                self._log_write_failure(session_id, kind)
                return False
            except SQLAlchemyError as e:
                self._log_write_failure(session_id, classify_storage_error(e))
                return False

        logger.error(
            "Giving up on persisting session %s after %d insert/update attempts",
            session_id,
            self.config.max_upsert_attempts,
            extra={"session_id": session_id},
        )
        return False

    def _insert(self, record: SessionRecord, encoded: EncodedAttributes, timestamp: datetime) -> None:
        now = self._now_expression(timestamp)
        stmt = insert(self.table).values(
            sessionId=record.session_id,
            sessionData=encoded.data,
            sessionHash=encoded.digest,
            maxInactiveInterval=record.max_inactive_interval,
            createdAt=now,
            lastAccessedAt=now,
        )

        def unit_of_work(db) -> None:
            db.execute(stmt)
            db.flush()

        self.runner.run(unit_of_work)

    def _update(self, record: SessionRecord, encoded: EncodedAttributes, timestamp: datetime) -> bool:
        stmt = (
            update(self.table)
            .where(self.table.c.sessionId == record.session_id)
            .values(
                sessionData=encoded.data,
                sessionHash=encoded.digest,
                lastAccessedAt=self._not_before_created(self._now_expression(timestamp)),
                maxInactiveInterval=record.max_inactive_interval,
            )
        )

        def unit_of_work(db) -> int:
            result = db.execute(stmt)
            db.flush()
            return result.rowcount

        return self.runner.run(unit_of_work) > 0

    def _use_native_upsert(self) -> bool:
        return self.config.native_upsert and self.engine.dialect.name in NATIVE_UPSERT_DIALECTS

    def _native_upsert(self, record: SessionRecord, encoded: EncodedAttributes, timestamp: datetime) -> bool:
        if self.engine.dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        else:
            from sqlalchemy.dialects.sqlite import insert as dialect_insert

        now = self._now_expression(timestamp)
        stmt = dialect_insert(self.table).values(
            sessionId=record.session_id,
            sessionData=encoded.data,
            sessionHash=encoded.digest,
            maxInactiveInterval=record.max_inactive_interval,
            createdAt=now,
            lastAccessedAt=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[self.table.c.sessionId],
            set_={
                "sessionData": stmt.excluded.sessionData,
                "sessionHash": stmt.excluded.sessionHash,
                "lastAccessedAt": self._not_before_created(stmt.excluded.lastAccessedAt),
                "maxInactiveInterval": stmt.excluded.maxInactiveInterval,
            },
        )

        def unit_of_work(db) -> None:
            db.execute(stmt)
            db.flush()

        try:
            self.runner.run(unit_of_work)
        except SQLAlchemyError as e:
            self._log_write_failure(record.session_id, classify_storage_error(e))
            return False
        logger.debug("Upserted session: %s", record.session_id, extra={"session_id": record.session_id})
        return True

    def _client_timestamp(self, record: SessionRecord) -> datetime:
        if record.last_accessed_at is not None:
            return to_naive_utc(record.last_accessed_at)
        return self.clock()

    def _now_expression(self, timestamp: datetime) -> Any:
        db_function = self.config.current_timestamp_db_function
        if db_function:
            return literal_column(db_function, type_=self.table.c.lastAccessedAt.type)
        return timestamp

    def _not_before_created(self, accessed_at: Any) -> Any:
        """SQL for ``accessed_at`` raised to the row's createdAt when it is older."""
        created_at = self.table.c.createdAt
        return case((created_at > accessed_at, created_at), else_=accessed_at)

    def _exists_or_none(self, session_id: str) -> Optional[bool]:
        try:
            return self.is_valid(session_id)
        except SQLAlchemyError:
            logger.debug("Existence probe failed for session %s", session_id, exc_info=True)
            return None

    def _log_write_failure(self, session_id: str, kind: StorageErrorKind) -> None:
        logger.error(
            "Error persisting session: %s (%s)",
            session_id,
            kind.value,
            exc_info=True,
            extra={"session_id": session_id, "error_kind": kind.value},
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[SessionRecord]:
        """
        Load the record for a session id.

        Returns:
            The SessionRecord, or None if no row exists

        Raises:
            DuplicateSessionRecordError: If more than one row matches
            SessionRowMappingError: If the stored row cannot be decoded
        """
        with correlation_context():
            return self._get(session_id)

    def _get(self, session_id: str) -> Optional[SessionRecord]:
        logger.debug("Getting session data for %s", session_id, extra={"session_id": session_id})
        t = self.table
        stmt = select(
            t.c.sessionId,
            t.c.sessionData,
            t.c.sessionHash,
            t.c.createdAt,
            t.c.lastAccessedAt,
            t.c.maxInactiveInterval,
        ).where(t.c.sessionId == session_id)

        def unit_of_work(db) -> Optional[SessionRecord]:
            rows = db.execute(stmt).all()
            if not rows:
                return None
            if len(rows) > 1:
                raise DuplicateSessionRecordError(session_id, len(rows))
            return self._map_row(session_id, rows[0], 0)

        try:
            record = self.runner.run(unit_of_work)
        except DuplicateSessionRecordError:
            logger.error("More than one record with session id %s", session_id, extra={"session_id": session_id})
            raise
        except SQLAlchemyError:
            logger.error(
                "Unhandled error while getting session data for %s",
                session_id,
                exc_info=True,
                extra={"session_id": session_id},
            )
            raise

        if record is None:
            logger.debug("No session data found for %s", session_id, extra={"session_id": session_id})
        return record

    def _map_row(self, session_id: str, row: Row, row_number: int) -> SessionRecord:
        try:
            return SessionRecord(
                session_id=row.sessionId,
                attributes=self.codec.decode(row.sessionData),
                content_digest=row.sessionHash,
                created_at=row.createdAt,
                last_accessed_at=row.lastAccessedAt,
                max_inactive_interval=row.maxInactiveInterval,
            )
        except (AttributeDeserializationError, ValidationError) as e:
            logger.error(
                "Error processing row %d when fetching session data for %s",
                row_number,
                session_id,
                exc_info=True,
                extra={"session_id": session_id},
            )
            raise SessionRowMappingError(session_id, row_number, str(e)) from e

    def verify(self, session_id: str) -> bool:
        """Check that the stored digest still matches the stored blob."""
        t = self.table
        stmt = select(t.c.sessionData, t.c.sessionHash).where(t.c.sessionId == session_id)
        row = self.runner.run(lambda db: db.execute(stmt).first())
        if row is None:
            return False
        matches = self.codec.digest(row.sessionData or b"") == row.sessionHash
        if not matches:
            logger.warning("Stored digest mismatch for session %s", session_id, extra={"session_id": session_id})
        return matches

    def is_valid(self, session_id: str) -> bool:
        """True if exactly one row exists for the session id."""
        stmt = select(func.count()).select_from(self.table).where(self.table.c.sessionId == session_id)
        return self.runner.run(lambda db: db.execute(stmt).scalar_one()) == 1

    def count(self) -> int:
        """Number of stored sessions."""
        stmt = select(func.count()).select_from(self.table)
        return self.runner.run(lambda db: db.execute(stmt).scalar_one())

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    def invalidate(self, session_id: str) -> bool:
        """
        Delete the session unconditionally.

        Returns:
            True if a row was deleted, False if none existed
        """
        with correlation_context():
            return self._invalidate(session_id)

    def _invalidate(self, session_id: str) -> bool:
        logger.debug("Deleting the session %s", session_id, extra={"session_id": session_id})
        stmt = self.table.delete().where(self.table.c.sessionId == session_id)
        rows = self.runner.run(lambda db: db.execute(stmt).rowcount)
        if rows == 0:
            logger.debug(
                "No session with id %s found in the database to invalidate",
                session_id,
                extra={"session_id": session_id},
            )
            return False
        logger.debug("Successfully deleted the session %s", session_id, extra={"session_id": session_id})
        return True

    def clean_up(self, now: Optional[datetime] = None) -> SweepResult:
        """Run one expiry sweep."""
        return self.sweeper.clean_up(now)

    def health(self) -> Dict[str, Any]:
        return check_database_health(self.engine, self.table.name)
