"""
Memory Store — SQLite Persistent Backend

Tables:
    memory_records - Current state of every record (one row per id)
    schema_meta    - Key/value metadata (schema version, creator)

Nested fields (tags, relevance hints, counters, expiry) are stored as JSON
text columns. Every mutation runs inside BEGIN IMMEDIATE ... COMMIT so
concurrent writers serialize on the database lock; WAL mode keeps readers
unblocked.

Thread safety: uses sqlite3 check_same_thread=False with explicit serialization.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from memrecall.backend import CompactResult, MemoryBackend, _empty_stats, bump_counters
from memrecall.errors import (
    BackendUnavailableError,
    ConflictingIdError,
    CorruptRecordError,
    NotFoundError,
    ValidationError,
)
from memrecall.policy import MemoryPolicy
from memrecall.types import (
    RECORD_SCHEMA_VERSION,
    MemoryRecord,
    RecordFilter,
    TimeLike,
    to_datetime,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memory_records (
    id                   TEXT PRIMARY KEY,
    scope                TEXT NOT NULL,
    status               TEXT NOT NULL,
    type                 TEXT NOT NULL,
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL,
    content              TEXT NOT NULL,
    source               TEXT NOT NULL DEFAULT 'user',
    schema_version       INTEGER NOT NULL DEFAULT 1,
    tags_json            TEXT NOT NULL DEFAULT '[]',   -- JSON array
    relevance_hints_json TEXT NOT NULL DEFAULT '{}',   -- JSON object
    counters_json        TEXT NOT NULL DEFAULT '{}',   -- JSON object
    expiry_json          TEXT                          -- JSON object or NULL
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_records_scope_status ON memory_records(scope, status);
CREATE INDEX IF NOT EXISTS idx_records_type ON memory_records(type);
CREATE INDEX IF NOT EXISTS idx_records_created ON memory_records(created_at);
"""

_COLUMNS = (
    "id, scope, status, type, created_at, updated_at, content, source, "
    "schema_version, tags_json, relevance_hints_json, counters_json, expiry_json"
)

_ORDER_SQL = {
    "created_asc": "created_at ASC, id ASC",
    "created_desc": "created_at DESC, id DESC",
    "updated_desc": "updated_at DESC, id DESC",
}


def _record_params(r: MemoryRecord) -> Tuple[Any, ...]:
    return (
        r.id, r.scope, r.status, r.type, r.created_at, r.updated_at,
        r.content, r.source, r.schema_version,
        json.dumps(r.tags, ensure_ascii=False),
        json.dumps(r.relevance_hints.to_dict(), ensure_ascii=False),
        json.dumps(r.counters.to_dict()),
        json.dumps(r.expiry.to_dict()) if r.expiry is not None else None,
    )


def _row_to_record(row: sqlite3.Row) -> MemoryRecord:
    """Decode a row; raises CorruptRecordError if it is not a valid record."""
    try:
        return MemoryRecord(
            id=row["id"],
            scope=row["scope"],
            status=row["status"],
            type=row["type"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            content=row["content"],
            source=row["source"],
            schema_version=row["schema_version"] or RECORD_SCHEMA_VERSION,
            tags=json.loads(row["tags_json"]),
            relevance_hints=json.loads(row["relevance_hints_json"]),
            counters=json.loads(row["counters_json"]),
            expiry=json.loads(row["expiry_json"]) if row["expiry_json"] else None,
        )
    except (ValidationError, ValueError, TypeError) as exc:
        raise CorruptRecordError(
            f"row {row['id']!r} cannot be decoded: {exc}", record_id=row["id"],
        ) from exc


class SqliteStore(MemoryBackend):
    """
    SQLite-backed persistent store for memory records.

    Thread-safe via explicit lock; cross-process safety comes from SQLite's
    own locking (busy timeout + BEGIN IMMEDIATE).
    """

    backend_name = "sqlite"

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        *,
        policy: Optional[MemoryPolicy] = None,
        wal_mode: bool = True,
        busy_timeout_s: float = 5.0,
    ):
        """Open or create the database and ensure the schema exists.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            policy: Write policy; defaults to MemoryPolicy().
            wal_mode: Enable WAL journal mode for concurrent readers.
            busy_timeout_s: How long a writer waits for the database lock.

        Raises:
            BackendUnavailableError: the database cannot be opened or
                initialized.
        """
        super().__init__(db_path, policy=policy)
        self._wal_mode = wal_mode and self._path != ":memory:"
        try:
            # Auto-create parent directory for disk-backed databases.
            if self._path != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                self._path,
                timeout=busy_timeout_s,
                check_same_thread=False,
                isolation_level=None,
            )
        except (OSError, sqlite3.Error) as exc:
            raise BackendUnavailableError(
                f"cannot open memory database {self._path}: {exc}"
            ) from exc
        self._conn.row_factory = sqlite3.Row
        try:
            if self._wal_mode:
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA_SQL)
            # Populate schema_meta (idempotent)
            with self._transaction():
                self._conn.execute(
                    "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
                    (str(SCHEMA_VERSION),),
                )
                self._conn.execute(
                    "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'memrecall')",
                )
                self._conn.execute(
                    "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_at', datetime('now'))",
                )
        except sqlite3.Error as exc:
            self._conn.close()
            raise BackendUnavailableError(
                f"cannot initialize memory database {self._path}: {exc}"
            ) from exc
        logger.info(f"SqliteStore opened: {self._path} (wal={'yes' if self._wal_mode else 'no'})")

    # -- Connection helpers ------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolling back on any exception."""
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield self._conn
        except Exception:
            self._conn.execute("ROLLBACK")
            raise
        self._conn.execute("COMMIT")

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        """Map driver failures (locked, I/O, closed) to BackendUnavailableError."""
        try:
            yield
        except sqlite3.Error as exc:
            raise BackendUnavailableError(f"{action} failed on {self._path}: {exc}") from exc

    def _fetch_row(self, record_id: str) -> sqlite3.Row:
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM memory_records WHERE id=?", (record_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(record_id)
        return row

    def _decode_rows(self, rows: Iterable[sqlite3.Row]) -> List[MemoryRecord]:
        """Decode rows, skipping corrupt ones with a warning."""
        out: List[MemoryRecord] = []
        for row in rows:
            try:
                out.append(_row_to_record(row))
            except CorruptRecordError as exc:
                logger.warning(f"{self._path}: skipping unreadable record ({exc})")
        return out

    def _db_bytes(self) -> int:
        page_count = self._conn.execute("PRAGMA page_count").fetchone()[0]
        page_size = self._conn.execute("PRAGMA page_size").fetchone()[0]
        return int(page_count) * int(page_size)

    # -- CRUD --------------------------------------------------------------

    def create(self, record: MemoryRecord, *, allow_secrets: bool = False) -> str:
        rec = self._prepare_new(record, allow_secrets)
        with self._lock, self._guard("create"), self._transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM memory_records WHERE id=?", (rec.id,)
            ).fetchone():
                raise ConflictingIdError([rec.id])
            conn.execute(
                f"INSERT INTO memory_records ({_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
                _record_params(rec),
            )
        logger.debug(f"created {rec.id} in {self._path}")
        return rec.id

    def get(self, record_id: str) -> MemoryRecord:
        with self._lock, self._guard("get"):
            return _row_to_record(self._fetch_row(record_id))

    def update(
        self,
        record_id: str,
        mutation: Dict[str, Any],
        *,
        allow_secrets: bool = False,
    ) -> MemoryRecord:
        with self._lock, self._guard("update"), self._transaction() as conn:
            current = _row_to_record(self._fetch_row(record_id))
            patched = self._apply_mutation(current, mutation, allow_secrets)
            conn.execute(
                f"INSERT OR REPLACE INTO memory_records ({_COLUMNS}) "
                "VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
                _record_params(patched),
            )
        logger.debug(f"updated {record_id}: {sorted(mutation)}")
        return patched

    def delete(self, record_id: str) -> None:
        with self._lock, self._guard("delete"), self._transaction() as conn:
            _row_to_record(self._fetch_row(record_id))
            conn.execute("DELETE FROM memory_records WHERE id=?", (record_id,))
        logger.debug(f"deleted {record_id} from {self._path}")

    def list(self, filter: Optional[RecordFilter] = None) -> List[MemoryRecord]:
        flt = filter or RecordFilter()
        clauses: List[str] = []
        params: List[Any] = []
        for column in ("scope", "status", "type"):
            value = getattr(flt, column)
            if value is not None:
                clauses.append(f"{column}=?")
                params.append(value)
        sql = f"SELECT {_COLUMNS} FROM memory_records"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {_ORDER_SQL[flt.order]}"
        with self._lock, self._guard("list"):
            rows = self._conn.execute(sql, params).fetchall()
        # tag membership and the limit are applied after decoding so that
        # corrupt rows never count toward the limit
        return flt.apply(self._decode_rows(rows))

    # -- Recall support ----------------------------------------------------

    def candidates_for_recall(
        self, scopes: Iterable[str], now: TimeLike = None,
    ) -> List[MemoryRecord]:
        wanted = self._check_scopes(scopes)
        if not wanted:
            return []
        at = to_datetime(now)
        marks = ",".join("?" for _ in wanted)
        with self._lock, self._guard("candidates_for_recall"):
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM memory_records "
                f"WHERE status='active' AND scope IN ({marks}) "
                "ORDER BY created_at ASC, id ASC",
                wanted,
            ).fetchall()
        return [r for r in self._decode_rows(rows) if not r.is_expired(at)]

    def record_usage(
        self,
        used_ids: Iterable[str],
        seen_ids: Iterable[str] = (),
        now: TimeLike = None,
    ) -> int:
        used, seen, now_iso = self._usage_sets(used_ids, seen_ids, now)
        if not used and not seen:
            return 0
        touched = 0
        with self._lock, self._guard("record_usage"), self._transaction() as conn:
            for rid in sorted(used | seen):
                try:
                    record = _row_to_record(self._fetch_row(rid))
                except NotFoundError:
                    continue
                except CorruptRecordError:
                    logger.warning(f"counter update skipped for unreadable record {rid}")
                    continue
                bumped = bump_counters(record, rid in used, now_iso)
                conn.execute(
                    "UPDATE memory_records SET counters_json=?, updated_at=? WHERE id=?",
                    (json.dumps(bumped.counters.to_dict()), bumped.updated_at, rid),
                )
                touched += 1
        return touched

    # -- Maintenance -------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Counts over decodable rows; undecodable ones go to "corrupt"."""
        out = _empty_stats(self.backend_name, self._path)
        with self._lock, self._guard("stats"):
            rows = self._conn.execute(f"SELECT {_COLUMNS} FROM memory_records").fetchall()
        for row in rows:
            try:
                record = _row_to_record(row)
            except CorruptRecordError:
                out["corrupt"] += 1
                continue
            out["total"] += 1
            out["by_scope"][record.scope] += 1
            out["by_status"][record.status] += 1
        return out

    def compact(
        self, *, drop_expired_archived: bool = False, now: TimeLike = None,
    ) -> CompactResult:
        """Optionally purge expired archived rows, then checkpoint and VACUUM."""
        at = to_datetime(now)
        result = CompactResult()
        with self._lock, self._guard("compact"):
            result.bytes_before = self._db_bytes()
            result.read = self._conn.execute(
                "SELECT COUNT(*) FROM memory_records"
            ).fetchone()[0]
            if drop_expired_archived:
                with self._transaction() as conn:
                    rows = conn.execute(
                        f"SELECT {_COLUMNS} FROM memory_records "
                        "WHERE status='archived' AND expiry_json IS NOT NULL"
                    ).fetchall()
                    for record in self._decode_rows(rows):
                        if record.is_expired(at):
                            conn.execute(
                                "DELETE FROM memory_records WHERE id=?", (record.id,)
                            )
                            result.dropped += 1
            if self._wal_mode:
                self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            self._conn.execute("VACUUM")
            result.written = result.read - result.dropped
            result.bytes_after = self._db_bytes()
        logger.info(
            f"compacted {self._path}: dropped {result.dropped} "
            f"({result.bytes_before} -> {result.bytes_after} bytes)"
        )
        return result

    def _import_records(
        self, records: List[MemoryRecord], replace_existing: bool,
    ) -> Tuple[int, int, int]:
        imported = replaced = skipped = 0
        with self._lock, self._guard("import"), self._transaction() as conn:
            for rec in records:
                exists = conn.execute(
                    "SELECT 1 FROM memory_records WHERE id=?", (rec.id,)
                ).fetchone()
                if exists and not replace_existing:
                    skipped += 1
                    continue
                conn.execute(
                    f"INSERT OR REPLACE INTO memory_records ({_COLUMNS}) "
                    "VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
                    _record_params(rec),
                )
                if exists:
                    replaced += 1
                else:
                    imported += 1
        return imported, replaced, skipped

    def schema_info(self) -> Dict[str, str]:
        """Contents of schema_meta."""
        with self._lock, self._guard("schema_info"):
            rows = self._conn.execute("SELECT key, value FROM schema_meta").fetchall()
        return {row["key"]: row["value"] for row in rows}

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()
