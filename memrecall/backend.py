"""
Backend Interface — The Capability Set Every Store Implements

MemoryBackend is the only type callers depend on. JsonlStore and SqliteStore
implement the abstract operations; the shared parts (create-time
preparation, patch semantics, counter bumps, JSONL export/import parsing)
live here so both backends expose identical behavior.

Concurrency: each public call takes the handle's lock and is atomic with
respect to other calls on the same handle.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Dict, Iterable, List, Optional, Tuple, Union

from memrecall.errors import ValidationError
from memrecall.policy import MemoryPolicy
from memrecall.types import (
    VALID_SCOPES,
    Counters,
    MemoryRecord,
    RecordFilter,
    TimeLike,
    _now_iso,
    parse_timestamp,
    to_iso,
)

logger = logging.getLogger(__name__)

# Fields a caller may patch through update(); everything else is either
# immutable (id, created_at, scope) or owned by the store (updated_at,
# counters, schema_version).
MUTABLE_FIELDS = frozenset({
    "content", "type", "status", "tags", "relevance_hints", "expiry", "source",
})


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class ImportResult:
    """Counts from an import operation."""

    total_lines: int = 0
    imported: int = 0
    replaced: int = 0
    skipped_existing: int = 0
    skipped_policy: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_lines": self.total_lines,
            "imported": self.imported,
            "replaced": self.replaced,
            "skipped_existing": self.skipped_existing,
            "skipped_policy": self.skipped_policy,
            "errors": self.errors,
        }


@dataclass
class CompactResult:
    """Counts from a compaction run."""

    read: int = 0
    written: int = 0
    dropped: int = 0
    bytes_before: int = 0
    bytes_after: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "read": self.read,
            "written": self.written,
            "dropped": self.dropped,
            "bytes_before": self.bytes_before,
            "bytes_after": self.bytes_after,
        }


def _empty_stats(backend: str, path: str) -> Dict[str, Any]:
    return {
        "backend": backend,
        "path": path,
        "total": 0,
        "by_scope": {"global": 0, "repo": 0, "dir": 0},
        "by_status": {"active": 0, "archived": 0},
        "corrupt": 0,
    }


# ---------------------------------------------------------------------------
# MemoryBackend
# ---------------------------------------------------------------------------


class MemoryBackend(ABC):
    """
    Abstract memory store.

    Errors: NotFoundError, ValidationError, CorruptRecordError,
    BackendUnavailableError, ConflictingIdError, RedactionRejectedError
    (see memrecall.errors).
    """

    backend_name: str = ""

    def __init__(self, path: Union[str, Path], *, policy: Optional[MemoryPolicy] = None):
        self._path = path if isinstance(path, str) else str(path)
        self._policy = policy or MemoryPolicy()
        self._lock = threading.Lock()

    @property
    def path(self) -> str:
        """Location of the underlying file or database."""
        return self._path

    @property
    def max_content_length(self) -> int:
        return self._policy.config.max_content_length

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._path!r})"

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- Abstract operations -----------------------------------------------

    @abstractmethod
    def create(self, record: MemoryRecord, *, allow_secrets: bool = False) -> str:
        """Persist a new record durably and return its id."""

    @abstractmethod
    def get(self, record_id: str) -> MemoryRecord:
        """Return the record or raise NotFoundError."""

    @abstractmethod
    def update(
        self,
        record_id: str,
        mutation: Dict[str, Any],
        *,
        allow_secrets: bool = False,
    ) -> MemoryRecord:
        """Apply a partial patch; unspecified fields are left untouched."""

    @abstractmethod
    def delete(self, record_id: str) -> None:
        """Remove a record or raise NotFoundError."""

    @abstractmethod
    def list(self, filter: Optional[RecordFilter] = None) -> List[MemoryRecord]:
        """Records matching filter, created_at ascending unless asked otherwise."""

    @abstractmethod
    def candidates_for_recall(
        self, scopes: Iterable[str], now: TimeLike = None,
    ) -> List[MemoryRecord]:
        """Active, non-expired records whose scope is in scopes."""

    @abstractmethod
    def record_usage(
        self,
        used_ids: Iterable[str],
        seen_ids: Iterable[str] = (),
        now: TimeLike = None,
    ) -> int:
        """Bump recall counters in one atomic write. Returns records touched."""

    @abstractmethod
    def stats(self) -> Dict[str, Any]:
        """Counts by scope and status over the records list() returns, plus skipped corrupt ones."""

    @abstractmethod
    def compact(
        self, *, drop_expired_archived: bool = False, now: TimeLike = None,
    ) -> CompactResult:
        """Reclaim physical space without changing the listed record set."""

    @abstractmethod
    def close(self) -> None:
        """Release the handle."""

    @abstractmethod
    def _import_records(
        self, records: List[MemoryRecord], replace_existing: bool,
    ) -> Tuple[int, int, int]:
        """Write a batch atomically. Returns (imported, replaced, skipped_existing)."""

    # -- Concrete operations -----------------------------------------------

    def archive(self, record_id: str, archived: bool = True) -> MemoryRecord:
        """Move a record between active and archived."""
        return self.update(record_id, {"status": "archived" if archived else "active"})

    def export_lines(
        self, output: IO[str], filter: Optional[RecordFilter] = None,
    ) -> int:
        """Write records as JSONL (one JSON object per line). Returns count."""
        count = 0
        for record in self.list(filter):
            output.write(record.to_json_line() + "\n")
            count += 1
        logger.info(f"[export] {count} record(s) exported from {self._path}")
        return count

    def import_lines(
        self,
        source: Union[IO[str], str],
        *,
        replace_existing: bool = False,
        allow_secrets: bool = False,
    ) -> ImportResult:
        """Import records from JSONL, preserving ids, timestamps and counters.

        Malformed or invalid lines are counted and skipped with a warning.
        Existing ids are skipped unless replace_existing is set. Every record
        passes the secret check unless allow_secrets is set. The whole batch
        is written in one atomic step.

        Args:
            source: File path (str) or readable IO stream.
            replace_existing: Overwrite records whose id already exists.
            allow_secrets: Bypass the secret-likelihood check.

        Returns:
            ImportResult with counts.
        """
        records: List[MemoryRecord] = []
        total = errors = 0

        if isinstance(source, str):
            fh = open(source, "r", encoding="utf-8")
            should_close_fh = True
        else:
            fh = source
            should_close_fh = False

        try:
            for raw in fh:
                line = raw.strip()
                if not line:
                    continue
                total += 1
                try:
                    records.append(MemoryRecord.from_json_line(line))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.warning(f"[import] invalid record on line {total}: {e}")
                    errors += 1
        finally:
            if should_close_fh:
                fh.close()

        result = self.import_records(
            records, replace_existing=replace_existing, allow_secrets=allow_secrets,
        )
        result.total_lines = total
        result.errors += errors
        return result

    def import_records(
        self,
        records: Iterable[MemoryRecord],
        *,
        replace_existing: bool = False,
        allow_secrets: bool = False,
    ) -> ImportResult:
        """Write already-built records as one batch, keeping their identity.

        Same rules as import_lines(); used directly by migration.
        """
        result = ImportResult()
        batch: Dict[str, MemoryRecord] = {}
        for record in records:
            result.total_lines += 1
            try:
                record.validate(self.max_content_length)
            except ValidationError as e:
                logger.warning(f"[import] {record.id} skipped: {e}")
                result.errors += 1
                continue
            if not allow_secrets and self._policy.check(record.content).rejected:
                logger.warning(f"[import] {record.id} rejected by secret check")
                result.skipped_policy += 1
                continue
            # a later entry for the same id supersedes an earlier one
            batch.pop(record.id, None)
            batch[record.id] = record

        if batch:
            imported, replaced, skipped = self._import_records(
                list(batch.values()), replace_existing,
            )
            result.imported = imported
            result.replaced = replaced
            result.skipped_existing = skipped

        logger.info(
            f"[import] {result.imported} imported, {result.replaced} replaced, "
            f"{result.skipped_existing} existing, {result.skipped_policy} policy, "
            f"{result.errors} error(s)"
        )
        return result

    # -- Helpers for implementations ---------------------------------------

    def _prepare_new(self, record: MemoryRecord, allow_secrets: bool) -> MemoryRecord:
        """Validate and secret-check a record about to be created."""
        record.validate(self.max_content_length)
        self._policy.enforce(record.content, allow_secrets=allow_secrets)
        return MemoryRecord.from_dict(record.to_dict())

    def _apply_mutation(
        self,
        record: MemoryRecord,
        mutation: Dict[str, Any],
        allow_secrets: bool,
    ) -> MemoryRecord:
        """Return a patched copy of record; the original is not modified."""
        if not isinstance(mutation, dict):
            raise ValidationError("mutation must be a dict of field -> value")
        disallowed = sorted(set(mutation) - MUTABLE_FIELDS)
        if disallowed:
            raise ValidationError(f"fields cannot be updated: {', '.join(disallowed)}")

        data = record.to_dict()
        for key, value in mutation.items():
            if hasattr(value, "to_dict"):
                value = value.to_dict()
            data[key] = value
        data["updated_at"] = _advance(record.updated_at, _now_iso())
        patched = MemoryRecord.from_dict(data)
        patched.validate(self.max_content_length)
        if "content" in mutation and patched.content != record.content:
            self._policy.enforce(patched.content, allow_secrets=allow_secrets)
        return patched

    @staticmethod
    def _check_scopes(scopes: Iterable[str]) -> List[str]:
        out = sorted(set(scopes))
        bad = [s for s in out if s not in VALID_SCOPES]
        if bad:
            raise ValidationError(f"Invalid scope(s): {', '.join(bad)}")
        return out

    @staticmethod
    def _usage_sets(
        used_ids: Iterable[str], seen_ids: Iterable[str], now: TimeLike,
    ) -> Tuple[set, set, str]:
        used = set(used_ids)
        seen = set(seen_ids) - used
        return used, seen, to_iso(now)


def bump_counters(record: MemoryRecord, used: bool, now_iso: str) -> MemoryRecord:
    """Copy of record with recall counters advanced (used or merely seen)."""
    c = record.counters
    if used:
        counters = Counters(
            seen_count=c.seen_count,
            used_count=c.used_count + 1,
            last_used_at=now_iso,
        )
    else:
        counters = Counters(
            seen_count=c.seen_count + 1,
            used_count=c.used_count,
            last_used_at=c.last_used_at,
        )
    data = record.to_dict()
    data["counters"] = counters.to_dict()
    data["updated_at"] = _advance(record.updated_at, now_iso)
    return MemoryRecord.from_dict(data)


def _advance(previous: str, candidate: str) -> str:
    """updated_at never moves backwards."""
    if parse_timestamp(candidate) < parse_timestamp(previous):
        return previous
    return candidate
