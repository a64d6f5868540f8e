"""
Tests for memrecall.sqlite_store — schema, JSON columns, corrupt rows,
transactions, compaction.
"""

import json
import logging
import sqlite3

import pytest

from conftest import NOW, make_record
from memrecall.errors import (
    BackendUnavailableError,
    CorruptRecordError,
    ValidationError,
)
from memrecall.recall import RecallContext, recall_for
from memrecall.sqlite_store import SCHEMA_VERSION, SqliteStore
from memrecall.types import Expiry


@pytest.fixture
def mem_store():
    s = SqliteStore(":memory:")
    yield s
    s.close()


def _insert_raw(store, rid, **overrides):
    row = {
        "id": rid, "scope": "repo", "status": "active", "type": "note",
        "created_at": "2025-05-01T10:00:00+00:00",
        "updated_at": "2025-05-01T10:00:00+00:00",
        "content": "raw row", "source": "user", "schema_version": 1,
        "tags_json": "[]", "relevance_hints_json": "{}",
        "counters_json": "{}", "expiry_json": None,
    }
    row.update(overrides)
    cols = ", ".join(row)
    marks = ", ".join("?" for _ in row)
    store._conn.execute(
        f"INSERT INTO memory_records ({cols}) VALUES ({marks})", tuple(row.values())
    )


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_schema_version(self, mem_store):
        assert mem_store.schema_info()["schema_version"] == str(SCHEMA_VERSION)

    def test_schema_created_by(self, mem_store):
        assert mem_store.schema_info()["created_by"] == "memrecall"

    def test_tables_exist(self, mem_store):
        tables = {
            r["name"] for r in mem_store._conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        assert {"memory_records", "schema_meta"} <= tables

    def test_indexes_exist(self, mem_store):
        indexes = {
            r["name"] for r in mem_store._conn.execute(
                "SELECT name FROM sqlite_master WHERE type='index'"
            ).fetchall()
        }
        assert {
            "idx_records_scope_status", "idx_records_type", "idx_records_created",
        } <= indexes

    def test_wal_mode_on_disk(self, sqlite_store):
        mode = sqlite_store._conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode.lower() == "wal"

    def test_reopen_is_idempotent(self, tmp_path):
        db = str(tmp_path / "memory.db")
        SqliteStore(db).close()
        with SqliteStore(db) as s:
            assert s.schema_info()["schema_version"] == str(SCHEMA_VERSION)


class TestOpenFailures:
    def test_not_a_database(self, tmp_path):
        bogus = tmp_path / "memory.db"
        bogus.write_bytes(b"this is definitely not sqlite" * 100)
        with pytest.raises(BackendUnavailableError):
            SqliteStore(str(bogus))

    def test_directory_path(self, tmp_path):
        with pytest.raises(BackendUnavailableError):
            SqliteStore(str(tmp_path))


# ---------------------------------------------------------------------------
# Columns
# ---------------------------------------------------------------------------


class TestColumns:
    def test_nested_fields_stored_as_json(self, mem_store):
        mem_store.create(make_record(
            id="MEM-a", tags=["b", "a"], expiry=Expiry(ttl_secs=10),
            relevance_hints={"modules": ["core"]},
        ))
        row = mem_store._conn.execute(
            "SELECT * FROM memory_records WHERE id='MEM-a'"
        ).fetchone()
        assert json.loads(row["tags_json"]) == ["a", "b"]
        assert json.loads(row["relevance_hints_json"])["modules"] == ["core"]
        assert json.loads(row["expiry_json"]) == {"at": None, "ttl_secs": 10}
        assert json.loads(row["counters_json"])["used_count"] == 0

    def test_no_expiry_is_null(self, mem_store):
        mem_store.create(make_record(id="MEM-a"))
        row = mem_store._conn.execute(
            "SELECT expiry_json FROM memory_records WHERE id='MEM-a'"
        ).fetchone()
        assert row["expiry_json"] is None


# ---------------------------------------------------------------------------
# Corrupt rows
# ---------------------------------------------------------------------------


class TestCorruptRows:
    def test_bad_json_skipped_in_list(self, mem_store, caplog):
        mem_store.create(make_record(id="MEM-good"))
        _insert_raw(mem_store, "MEM-bad", tags_json="{oops")
        with caplog.at_level(logging.WARNING, logger="memrecall.sqlite_store"):
            ids = [r.id for r in mem_store.list()]
        assert ids == ["MEM-good"]
        assert any("MEM-bad" in r.message for r in caplog.records)

    def test_unparseable_timestamp_skipped(self, mem_store):
        mem_store.create(make_record(id="MEM-good"))
        _insert_raw(mem_store, "MEM-bad", created_at="not-a-date")
        ids = [r.id for r in mem_store.candidates_for_recall({"repo"}, NOW)]
        assert ids == ["MEM-good"]
        recalled = recall_for(mem_store, "raw row run tests", RecallContext(now=NOW))
        assert [r.id for r in recalled] == ["MEM-good"]

    def test_stats_count_only_decodable_rows(self, mem_store):
        mem_store.create(make_record(id="MEM-good"))
        _insert_raw(mem_store, "MEM-bad", tags_json="{{")
        stats = mem_store.stats()
        assert stats["total"] == len(mem_store.list()) == 1
        assert stats["corrupt"] == 1
        assert stats["by_scope"]["repo"] == 1

    def test_bad_enum_skipped_in_candidates(self, mem_store):
        mem_store.create(make_record(id="MEM-good"))
        _insert_raw(mem_store, "MEM-bad", type="mystery")
        ids = [r.id for r in mem_store.candidates_for_recall({"repo"}, NOW)]
        assert ids == ["MEM-good"]

    def test_get_corrupt_raises(self, mem_store):
        _insert_raw(mem_store, "MEM-bad", counters_json='{"used_count": -4}')
        with pytest.raises(CorruptRecordError) as exc:
            mem_store.get("MEM-bad")
        assert exc.value.record_id == "MEM-bad"

    def test_record_usage_skips_corrupt(self, mem_store):
        mem_store.create(make_record(id="MEM-good"))
        _insert_raw(mem_store, "MEM-bad", relevance_hints_json="[1, 2]")
        assert mem_store.record_usage(["MEM-good", "MEM-bad"], [], NOW) == 1


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TestTransactions:
    def test_failed_update_rolls_back(self, mem_store):
        mem_store.create(make_record(id="MEM-a"))
        with pytest.raises(ValidationError):
            mem_store.update("MEM-a", {"content": "q" * 500})
        assert not mem_store._conn.in_transaction
        assert mem_store.get("MEM-a").content == "Run tests before commit"

    def test_import_is_one_batch(self, mem_store):
        records = [make_record(id=f"MEM-{i}") for i in range(5)]
        result = mem_store.import_records(records)
        assert result.imported == 5
        assert mem_store.stats()["total"] == 5

    def test_locked_database_unavailable(self, tmp_path):
        db = str(tmp_path / "memory.db")
        holder = sqlite3.connect(db, isolation_level=None)
        SqliteStore(db).close()
        holder.execute("BEGIN EXCLUSIVE")
        try:
            with pytest.raises(BackendUnavailableError):
                store = SqliteStore(db, busy_timeout_s=0.1)
                store.create(make_record(id="MEM-a"))
        finally:
            holder.execute("ROLLBACK")
            holder.close()


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------


class TestCompaction:
    def test_vacuum_reclaims_space(self, sqlite_store):
        for i in range(200):
            sqlite_store.create(make_record(id=f"MEM-{i:03d}", content="filler " * 20))
        for i in range(200):
            sqlite_store.delete(f"MEM-{i:03d}")
        result = sqlite_store.compact()
        assert result.bytes_after <= result.bytes_before
        assert result.read == result.written == 0

    def test_drop_expired_archived(self, sqlite_store):
        sqlite_store.create(make_record(
            id="MEM-x", status="archived", expiry=Expiry(at="2025-05-02T00:00:00+00:00"),
        ))
        result = sqlite_store.compact(drop_expired_archived=True, now=NOW)
        assert result.dropped == 1
        assert sqlite_store.list() == []
