"""
Integration tests for persisting, reading and invalidating sessions

These run against an in-memory SQLite database through the real
TransactionRunner.
"""

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import Column, DateTime, Integer, LargeBinary, String, Table, insert, update
from sqlalchemy.exc import OperationalError, ProgrammingError

from dbsession.core.config import SessionStoreConfig
from dbsession.core.exceptions import (
    AttributeDeserializationError,
    AttributeSerializationError,
    DuplicateSessionRecordError,
    SessionRowMappingError,
)
from dbsession.core.logging_config import correlation_id_ctx
from dbsession.core.utils.codec import AttributeCodec
from dbsession.core.utils.session_store import SessionStore
from tests.utils.helpers import T0
from tests.utils.factories import AttributeFactory, SessionRecordFactory

pytestmark = pytest.mark.integration


def _insert_raw(store, session_id, data, digest="0" * 64, last_accessed_at=T0, interval=60):
    with store.engine.begin() as conn:
        conn.execute(insert(store.table).values(
            sessionId=session_id,
            sessionHash=digest,
            sessionData=data,
            createdAt=T0,
            lastAccessedAt=last_accessed_at,
            maxInactiveInterval=interval,
        ))


class TestPersist:
    """Insert and update of session rows"""

    def test_first_persist_inserts_row(self, store, fetch_row):
        record = SessionRecordFactory.create(session_id="s1", max_inactive_interval=900)

        assert store.persist(record) is True

        row = fetch_row("s1")
        assert row["createdAt"] == T0
        assert row["lastAccessedAt"] == T0
        assert row["maxInactiveInterval"] == 900
        assert row["sessionHash"] == AttributeCodec().encode(record.attributes).digest
        assert len(row["sessionHash"]) == 64

    def test_second_persist_updates_in_place(self, store, clock, fetch_row, all_session_ids):
        store.save("s1", {"step": 1}, 60)
        later = clock.advance(seconds=30)

        assert store.save("s1", {"step": 2}, 120) is True

        assert all_session_ids() == ["s1"]
        row = fetch_row("s1")
        assert row["createdAt"] == T0
        assert row["lastAccessedAt"] == later
        assert row["maxInactiveInterval"] == 120
        assert store.get("s1").attributes == {"step": 2}

    def test_repeated_identical_persist_keeps_one_row(self, store, clock, fetch_row, all_session_ids):
        attributes = AttributeFactory.create_rich_attributes()
        store.save("s1", attributes, 60)
        first_hash = fetch_row("s1")["sessionHash"]
        clock.advance(seconds=5)
        store.save("s1", attributes, 60)

        row = fetch_row("s1")
        assert all_session_ids() == ["s1"]
        assert row["sessionHash"] == first_hash
        assert row["createdAt"] == T0
        assert row["lastAccessedAt"] > row["createdAt"]

    def test_caller_supplied_access_time_is_used(self, store, fetch_row):
        accessed = datetime(2024, 3, 1, 9, 0, 0)
        store.save("s1", {}, 60, last_accessed_at=accessed)

        assert fetch_row("s1")["lastAccessedAt"] == accessed
        assert fetch_row("s1")["createdAt"] == accessed

    def test_access_time_older_than_creation_is_raised_to_created_at(self, store, fetch_row):
        store.save("s1", {"v": 1}, 60)

        assert store.save("s1", {"v": 2}, 60, last_accessed_at=T0 - timedelta(hours=1)) is True

        row = fetch_row("s1")
        assert row["createdAt"] == T0
        assert row["lastAccessedAt"] == T0
        assert store.get("s1").attributes == {"v": 2}

    def test_persist_runs_under_a_correlation_id(self, store):
        seen = []
        real_insert = store._insert

        def _insert(*args):
            seen.append(correlation_id_ctx.get())
            return real_insert(*args)

        before = correlation_id_ctx.get()
        with patch.object(store, "_insert", side_effect=_insert):
            store.save("s1", {}, 60)

        assert seen[0]
        assert correlation_id_ctx.get() == before

    def test_aware_access_time_is_stored_as_utc(self, store, fetch_row):
        accessed = datetime(2024, 3, 1, 11, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        store.save("s1", {}, 60, last_accessed_at=accessed)

        assert fetch_row("s1")["lastAccessedAt"] == datetime(2024, 3, 1, 9, 0, 0)

    def test_unserializable_attributes_fail_before_any_sql(self, store, fetch_row):
        record = SessionRecordFactory.create(session_id="s1", attributes={"lock": object()})

        with patch.object(store.runner, "run", wraps=store.runner.run) as run:
            with pytest.raises(AttributeSerializationError):
                store.persist(record)
            run.assert_not_called()

        assert fetch_row("s1") is None

    def test_unserializable_update_leaves_previous_row(self, store, fetch_row):
        store.save("s1", {"ok": True}, 60)
        before = fetch_row("s1")

        with pytest.raises(AttributeSerializationError):
            store.save("s1", {"bad": {1, 2}}, 60)

        assert fetch_row("s1") == before

    def test_storage_failure_is_logged_not_raised(self, store, caplog):
        store.table.drop(store.engine)

        with caplog.at_level(logging.ERROR, logger="dbsession.core.utils.session_store"):
            assert store.save("s1", {"a": 1}, 60) is False

        assert "Error persisting session: s1" in caplog.text

    def test_non_storage_errors_propagate(self, store):
        with patch.object(store, "_insert", side_effect=RuntimeError("bug")):
            with pytest.raises(RuntimeError):
                store.save("s1", {}, 60)


class TestDatabaseTimestamps:
    """Timestamps delegated to a database expression"""

    @pytest.fixture
    def db_time_store(self, runner, clock, metadata):
        config = SessionStoreConfig(table_name="db_time_sessions", current_timestamp_db_function="CURRENT_TIMESTAMP")
        session_store = SessionStore(runner, config, clock=clock, metadata=metadata)
        assert session_store.ensure_schema()
        return session_store

    def test_insert_and_update_use_database_time(self, db_time_store):
        db_time_store.save("s1", {"a": 1}, 60)
        db_time_store.save("s1", {"a": 2}, 60)

        record = db_time_store.get("s1")
        # The fake clock is pinned to T0; the database clock is the real one
        assert record.created_at > T0 + timedelta(days=365)
        assert record.last_accessed_at >= record.created_at
        assert record.attributes == {"a": 2}


class TestNativeUpsert:
    """Single-statement ON CONFLICT upsert"""

    @pytest.fixture
    def upsert_store(self, runner, clock, metadata):
        config = SessionStoreConfig(table_name="upsert_sessions", native_upsert=True)
        session_store = SessionStore(runner, config, clock=clock, metadata=metadata)
        assert session_store.ensure_schema()
        return session_store

    def test_upsert_skips_existence_probe(self, upsert_store, clock):
        with patch.object(upsert_store, "is_valid") as is_valid:
            assert upsert_store.save("s1", {"v": 1}, 60)
            clock.advance(seconds=10)
            assert upsert_store.save("s1", {"v": 2}, 90)
            is_valid.assert_not_called()

        record = upsert_store.get("s1")
        assert record.attributes == {"v": 2}
        assert record.created_at == T0
        assert record.last_accessed_at == T0 + timedelta(seconds=10)
        assert record.max_inactive_interval == 90
        assert upsert_store.count() == 1

    def test_upsert_never_moves_access_time_before_creation(self, upsert_store):
        upsert_store.save("s1", {"v": 1}, 60)
        upsert_store.save("s1", {"v": 2}, 60, last_accessed_at=T0 - timedelta(hours=1))

        record = upsert_store.get("s1")
        assert record.created_at == T0
        assert record.last_accessed_at == T0
        assert record.attributes == {"v": 2}


class TestGet:
    """Reading and mapping session rows"""

    def test_unknown_session_is_absent(self, store):
        assert store.get("unknown-id") is None

    def test_round_trips_record(self, store):
        attributes = AttributeFactory.create_rich_attributes()
        store.save("s1", attributes, 300)

        record = store.get("s1")

        assert record.session_id == "s1"
        assert record.attributes == attributes
        assert record.max_inactive_interval == 300
        assert record.created_at == T0
        assert record.last_accessed_at == T0
        assert record.content_digest == AttributeCodec().encode(attributes).digest

    def test_returned_attributes_are_independent(self, store):
        store.save("s1", {"items": [1]}, 60)

        first = store.get("s1")
        first.attributes["items"].append(2)

        assert store.get("s1").attributes == {"items": [1]}

    def test_corrupt_blob_raises_with_context(self, store):
        _insert_raw(store, "broken", b"\x00\x01 definitely not json")

        with pytest.raises(SessionRowMappingError) as exc_info:
            store.get("broken")

        assert exc_info.value.session_id == "broken"
        assert exc_info.value.row_number == 0
        assert isinstance(exc_info.value.__cause__, AttributeDeserializationError)

    def test_corrupt_row_does_not_affect_other_sessions(self, store):
        _insert_raw(store, "broken", b"{oops")
        store.save("fine", {"a": 1}, 60)

        with pytest.raises(SessionRowMappingError):
            store.get("broken")
        assert store.get("fine").attributes == {"a": 1}

    def test_empty_blob_reads_as_empty_attributes(self, store):
        _insert_raw(store, "legacy", b"")

        record = store.get("legacy")

        assert record is not None
        assert record.attributes == {}

    def test_multiple_rows_raise(self, runner, clock):
        from dbsession.db.base import create_metadata

        metadata = create_metadata()
        # Same shape as the session table but without the primary key
        table = Table(
            "unkeyed_sessions",
            metadata,
            Column("sessionId", String(255)),
            Column("sessionHash", String(64)),
            Column("sessionData", LargeBinary),
            Column("createdAt", DateTime),
            Column("lastAccessedAt", DateTime),
            Column("maxInactiveInterval", Integer),
        )
        session_store = SessionStore(
            runner, SessionStoreConfig(table_name="unkeyed_sessions"), clock=clock, metadata=metadata
        )
        assert session_store.table is table
        assert session_store.ensure_schema()
        _insert_raw(session_store, "dup", b"{}")
        _insert_raw(session_store, "dup", b"{}")

        with pytest.raises(DuplicateSessionRecordError) as exc_info:
            session_store.get("dup")
        assert exc_info.value.row_count == 2


class TestVerify:
    """Digest integrity checks"""

    def test_fresh_write_verifies(self, store):
        store.save("s1", AttributeFactory.create_rich_attributes(), 60)
        assert store.verify("s1") is True

    def test_tampered_blob_fails_verification(self, store):
        store.save("s1", {"role": "user"}, 60)
        with store.engine.begin() as conn:
            conn.execute(
                update(store.table)
                .where(store.table.c.sessionId == "s1")
                .values(sessionData=b'{"role":"admin"}')
            )

        assert store.verify("s1") is False

    def test_absent_session_does_not_verify(self, store):
        assert store.verify("missing") is False


class TestIsValidAndInvalidate:

    def test_is_valid_reflects_existence(self, store):
        assert store.is_valid("s1") is False
        store.save("s1", {}, 60)
        assert store.is_valid("s1") is True

    def test_invalidate_deletes_row(self, store, fetch_row):
        store.save("s1", {}, 60)
        store.save("s2", {}, 60)

        assert store.invalidate("s1") is True

        assert fetch_row("s1") is None
        assert fetch_row("s2") is not None
        assert store.get("s1") is None

    def test_invalidate_unknown_session_is_noop(self, store):
        assert store.invalidate("nope") is False
        assert store.count() == 0


class TestEnsureSchema:

    def test_is_idempotent(self, store):
        assert store.ensure_schema() is True
        assert store.ensure_schema() is True

    def test_creates_missing_table(self, runner, clock, metadata):
        session_store = SessionStore(runner, SessionStoreConfig(table_name="fresh"), clock=clock, metadata=metadata)
        health = session_store.health()
        assert health["session_table_present"] is False
        assert health["status"] == "warning"

        assert session_store.ensure_schema() is True

        health = session_store.health()
        assert health["status"] == "healthy"
        assert health["session_table_present"] is True

    def test_concurrently_created_table_counts_as_success(self, runner, clock, metadata):
        session_store = SessionStore(runner, SessionStoreConfig(table_name="racy"), clock=clock, metadata=metadata)
        inspector = Mock()
        inspector.has_table.side_effect = [False, True]
        error = ProgrammingError("CREATE TABLE racy", {}, Exception("table racy already exists"))

        with patch("dbsession.core.utils.session_store.inspect", return_value=inspector), \
                patch.object(Table, "create", side_effect=error):
            assert session_store.ensure_schema() is True

    def test_unexpected_failure_is_a_warning(self, runner, clock, metadata, caplog):
        session_store = SessionStore(runner, SessionStoreConfig(table_name="doomed"), clock=clock, metadata=metadata)
        error = OperationalError("CREATE TABLE doomed", {}, Exception("disk I/O error"))

        with caplog.at_level(logging.WARNING, logger="dbsession.core.utils.session_store"), \
                patch.object(Table, "create", side_effect=error):
            assert session_store.ensure_schema() is False

        assert "doomed" in caplog.text
