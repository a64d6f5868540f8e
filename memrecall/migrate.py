"""
Migration & Compaction

Copies records between backends (identity preserved: ids, timestamps and
counters), compacts stores, and archives expired records.

migrate() checks for id conflicts before writing anything, so a failed
migration leaves the destination untouched. The source is never mutated.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from memrecall.backend import CompactResult, MemoryBackend
from memrecall.errors import ConflictingIdError, ValidationError
from memrecall.jsonl_store import JsonlStore
from memrecall.policy import MemoryPolicy
from memrecall.sqlite_store import SqliteStore
from memrecall.types import RecordFilter, TimeLike, to_datetime

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class MigrationResult:
    """Statistics from a migration."""

    migrated: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "migrated": self.migrated,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "dry_run": self.dry_run,
        }


def migrate(
    source: MemoryBackend,
    destination: MemoryBackend,
    *,
    dry_run: bool = False,
) -> MigrationResult:
    """Copy every record from source into destination.

    Records were already admitted by the secret check when first written, so
    it is bypassed here. Records that fail the destination's validation
    (e.g. a smaller max_content_length) are skipped with a warning.

    Args:
        source: Backend to read from (not modified).
        destination: Backend to write into.
        dry_run: Report what would be migrated without writing.

    Returns:
        MigrationResult with counts.

    Raises:
        ConflictingIdError: destination already holds one of the source ids.
    """
    result = MigrationResult(dry_run=dry_run)
    records = source.list()
    existing = {r.id for r in destination.list()}
    conflicts = [r.id for r in records if r.id in existing]
    if conflicts:
        raise ConflictingIdError(conflicts)

    batch = []
    for record in records:
        try:
            record.validate(destination.max_content_length)
        except ValidationError as exc:
            logger.warning(f"[migrate] skipping {record.id}: {exc}")
            result.skipped += 1
            result.errors.append(f"{record.id}: {exc}")
            continue
        batch.append(record)

    if dry_run:
        result.migrated = len(batch)
    elif batch:
        written = destination.import_records(batch, allow_secrets=True)
        result.migrated = written.imported
        result.skipped += written.skipped_existing + written.errors

    logger.info(
        f"[migrate] {source.path} -> {destination.path}: "
        f"{result.migrated} migrated, {result.skipped} skipped"
        f"{' (dry run)' if dry_run else ''}"
    )
    return result


def migrate_jsonl_to_sqlite(
    jsonl_path: PathLike,
    sqlite_path: PathLike,
    *,
    policy: Optional[MemoryPolicy] = None,
    dry_run: bool = False,
) -> MigrationResult:
    """Migrate a JSONL file into a SQLite database (created if missing)."""
    with JsonlStore(jsonl_path, policy=policy) as src, \
            SqliteStore(sqlite_path, policy=policy) as dst:
        return migrate(src, dst, dry_run=dry_run)


def migrate_sqlite_to_jsonl(
    sqlite_path: PathLike,
    jsonl_path: PathLike,
    *,
    policy: Optional[MemoryPolicy] = None,
    dry_run: bool = False,
) -> MigrationResult:
    """Migrate a SQLite database into a JSONL file (created if missing)."""
    with SqliteStore(sqlite_path, policy=policy) as src, \
            JsonlStore(jsonl_path, policy=policy) as dst:
        return migrate(src, dst, dry_run=dry_run)


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------


def compact(
    backend: MemoryBackend,
    *,
    drop_expired_archived: bool = False,
    now: TimeLike = None,
) -> CompactResult:
    """Compact a store in place. Never drops active records; idempotent."""
    return backend.compact(drop_expired_archived=drop_expired_archived, now=now)


def compact_jsonl(
    input_path: PathLike,
    output_path: Optional[PathLike] = None,
) -> CompactResult:
    """Rewrite a JSONL file with one line per id (the last one wins).

    With output_path set to another file, the input is left untouched and
    the compacted copy is written there.
    """
    if not os.path.exists(input_path):
        raise FileNotFoundError(f"JSONL file not found: {input_path}")
    target = input_path
    if output_path is not None and os.path.abspath(output_path) != os.path.abspath(input_path):
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(input_path, output_path)
        target = output_path
    with JsonlStore(target) as store:
        return store.compact()


def archive_expired(backend: MemoryBackend, now: TimeLike = None) -> int:
    """Archive every active record whose expiry has passed. Returns count."""
    at = to_datetime(now)
    count = 0
    for record in backend.list(RecordFilter(status="active")):
        if record.is_expired(at):
            backend.archive(record.id)
            count += 1
    if count:
        logger.info(f"[archive] {count} expired record(s) archived in {backend.path}")
    return count
