"""
Memory Store — JSONL Append-Only Backend

One JSON object per line. Creates append a line and fsync; every other
mutation rewrites the whole file through a temp file in the same directory
followed by os.replace, so a crash leaves either the old or the new file,
never a mix.

Reading rules:
    - blank lines are ignored
    - a line that is not a valid record is skipped with a warning
    - when an id appears on several lines, the last line wins

Rewrites triggered by update/delete/record_usage keep unreadable lines
verbatim; only compact() drops them.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
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
from memrecall.types import MemoryRecord, RecordFilter, TimeLike, to_datetime

logger = logging.getLogger(__name__)

# Undecodable bytes survive a read/rewrite cycle unchanged
_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


@dataclass
class _Line:
    """One non-blank physical line of the store file."""

    lineno: int
    raw: str
    record: Optional[MemoryRecord] = None
    record_id: Optional[str] = None
    error: Optional[str] = None


def _parse_line(lineno: int, raw: str) -> _Line:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        return _Line(lineno, raw, error=f"malformed JSON: {exc}")
    rid = data.get("id") if isinstance(data, dict) else None
    if not isinstance(rid, str):
        rid = None
    try:
        record = MemoryRecord.from_dict(data)
    except ValidationError as exc:
        return _Line(lineno, raw, record_id=rid, error=str(exc))
    return _Line(lineno, raw, record=record, record_id=record.id)


class JsonlStore(MemoryBackend):
    """
    Line-delimited JSON store.

    Human-readable and diff-friendly; every read scans the file.
    """

    backend_name = "jsonl"

    def __init__(
        self,
        path: Union[str, Path],
        *,
        policy: Optional[MemoryPolicy] = None,
    ):
        """Open (or prepare to create) a JSONL store at path.

        The file itself is created on the first write. The parent directory
        is created immediately.

        Raises:
            BackendUnavailableError: path is a directory or its parent
                cannot be created.
        """
        super().__init__(path, policy=policy)
        p = Path(self._path)
        if p.is_dir():
            raise BackendUnavailableError(f"memory store path is a directory: {p}")
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackendUnavailableError(
                f"cannot create directory for memory store {p}: {exc}"
            ) from exc
        logger.info(f"JsonlStore opened: {p}")

    # -- File primitives ---------------------------------------------------

    def _iter_lines(self) -> Iterator[_Line]:
        try:
            fh = open(self._path, "r", encoding=_ENCODING, errors=_ERRORS)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise BackendUnavailableError(f"cannot read {self._path}: {exc}") from exc
        with fh:
            for lineno, raw in enumerate(fh, 1):
                text = raw.strip()
                if not text:
                    continue
                yield _parse_line(lineno, text)

    def _read(self) -> Tuple[List[_Line], Dict[str, int]]:
        """All lines plus id -> index of the line that wins for that id."""
        lines = list(self._iter_lines())
        index: Dict[str, int] = {}
        for i, line in enumerate(lines):
            if line.record_id is not None:
                index[line.record_id] = i
        return lines, index

    def _effective(self, lines: List[_Line], index: Dict[str, int]) -> List[MemoryRecord]:
        """Readable winning records, warning once per unreadable line."""
        out: List[MemoryRecord] = []
        for i, line in enumerate(lines):
            if line.error is not None:
                logger.warning(
                    f"{self._path}:{line.lineno}: skipping unreadable record ({line.error})"
                )
                continue
            if index.get(line.record_id) == i:
                out.append(line.record)
        return out

    def _append(self, text: str) -> None:
        """Append one line and fsync before returning."""
        try:
            prefix = ""
            try:
                if os.path.getsize(self._path) > 0:
                    with open(self._path, "rb") as fb:
                        fb.seek(-1, os.SEEK_END)
                        if fb.read(1) != b"\n":
                            # terminate a partial trailing line first
                            prefix = "\n"
            except FileNotFoundError:
                pass
            with open(self._path, "a", encoding=_ENCODING, errors=_ERRORS) as fh:
                fh.write(prefix + text + "\n")
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as exc:
            raise BackendUnavailableError(f"cannot append to {self._path}: {exc}") from exc

    def _rewrite(self, texts: Iterable[str]) -> None:
        """Atomically replace the file with texts, one per line."""
        directory = os.path.dirname(os.path.abspath(self._path))
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                prefix=os.path.basename(self._path) + ".", suffix=".tmp", dir=directory,
            )
            with os.fdopen(fd, "w", encoding=_ENCODING, errors=_ERRORS) as fh:
                for text in texts:
                    fh.write(text + "\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self._path)
            tmp_path = None
        except OSError as exc:
            raise BackendUnavailableError(f"cannot rewrite {self._path}: {exc}") from exc
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                try:
                    os.unlink(tmp_path)
                except OSError as exc:
                    logger.warning(f"could not remove temp file {tmp_path}: {exc}")

    def _rewrite_with(
        self,
        lines: List[_Line],
        index: Dict[str, int],
        replacements: Dict[str, Optional[str]],
        appended: Iterable[str] = (),
    ) -> None:
        """Rewrite keeping every line except superseded snapshots of replaced ids.

        replacements maps id -> new JSON text, or None to remove the id.
        """
        out: List[str] = []
        for i, line in enumerate(lines):
            rid = line.record_id
            if rid is not None and rid in replacements:
                if index[rid] != i:
                    continue
                text = replacements[rid]
                if text is not None:
                    out.append(text)
                continue
            out.append(line.raw)
        out.extend(appended)
        self._rewrite(out)

    def _target(self, lines: List[_Line], index: Dict[str, int], record_id: str) -> MemoryRecord:
        if record_id not in index:
            raise NotFoundError(record_id)
        line = lines[index[record_id]]
        if line.record is None:
            raise CorruptRecordError(
                f"{self._path}:{line.lineno}: {line.error}", record_id=record_id,
            )
        return line.record

    # -- CRUD --------------------------------------------------------------

    def create(self, record: MemoryRecord, *, allow_secrets: bool = False) -> str:
        rec = self._prepare_new(record, allow_secrets)
        with self._lock:
            _, index = self._read()
            if rec.id in index:
                raise ConflictingIdError([rec.id])
            self._append(rec.to_json_line())
        logger.debug(f"created {rec.id} in {self._path}")
        return rec.id

    def get(self, record_id: str) -> MemoryRecord:
        with self._lock:
            lines, index = self._read()
            return self._target(lines, index, record_id)

    def update(
        self,
        record_id: str,
        mutation: Dict[str, Any],
        *,
        allow_secrets: bool = False,
    ) -> MemoryRecord:
        with self._lock:
            lines, index = self._read()
            current = self._target(lines, index, record_id)
            patched = self._apply_mutation(current, mutation, allow_secrets)
            self._rewrite_with(lines, index, {record_id: patched.to_json_line()})
        logger.debug(f"updated {record_id}: {sorted(mutation)}")
        return patched

    def delete(self, record_id: str) -> None:
        with self._lock:
            lines, index = self._read()
            self._target(lines, index, record_id)
            self._rewrite_with(lines, index, {record_id: None})
        logger.debug(f"deleted {record_id} from {self._path}")

    def list(self, filter: Optional[RecordFilter] = None) -> List[MemoryRecord]:
        flt = filter or RecordFilter()
        with self._lock:
            lines, index = self._read()
            records = self._effective(lines, index)
        return flt.apply(records)

    # -- Recall support ----------------------------------------------------

    def candidates_for_recall(
        self, scopes: Iterable[str], now: TimeLike = None,
    ) -> List[MemoryRecord]:
        wanted = set(self._check_scopes(scopes))
        at = to_datetime(now)
        return [
            r for r in self.list()
            if r.scope in wanted and r.is_recallable(at)
        ]

    def record_usage(
        self,
        used_ids: Iterable[str],
        seen_ids: Iterable[str] = (),
        now: TimeLike = None,
    ) -> int:
        used, seen, now_iso = self._usage_sets(used_ids, seen_ids, now)
        if not used and not seen:
            return 0
        with self._lock:
            lines, index = self._read()
            replacements: Dict[str, Optional[str]] = {}
            for rid in sorted(used | seen):
                if rid not in index:
                    continue
                record = lines[index[rid]].record
                if record is None:
                    logger.warning(f"counter update skipped for unreadable record {rid}")
                    continue
                bumped = bump_counters(record, rid in used, now_iso)
                replacements[rid] = bumped.to_json_line()
            if replacements:
                self._rewrite_with(lines, index, replacements)
        return len(replacements)

    # -- Maintenance -------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Counts over readable records; unreadable winning lines go to "corrupt"."""
        out = _empty_stats(self.backend_name, self._path)
        with self._lock:
            lines, index = self._read()
        out["corrupt"] = sum(
            1 for i, line in enumerate(lines)
            if line.error is not None and index.get(line.record_id, i) == i
        )
        for r in self._effective(lines, index):
            out["total"] += 1
            out["by_scope"][r.scope] += 1
            out["by_status"][r.status] += 1
        return out

    def compact(
        self, *, drop_expired_archived: bool = False, now: TimeLike = None,
    ) -> CompactResult:
        """Rewrite the file with one canonical line per live record.

        Drops unreadable lines and superseded duplicates; with
        drop_expired_archived, also archived records past their expiry.
        Active records are never dropped. Idempotent.
        """
        at = to_datetime(now)
        result = CompactResult()
        with self._lock:
            if not os.path.exists(self._path):
                return result
            result.bytes_before = os.path.getsize(self._path)
            lines, index = self._read()
            result.read = len(lines)
            kept: List[str] = []
            for record in self._effective(lines, index):
                if (
                    drop_expired_archived
                    and record.status == "archived"
                    and record.is_expired(at)
                ):
                    continue
                kept.append(record.to_json_line())
            self._rewrite(kept)
            result.written = len(kept)
            result.dropped = result.read - result.written
            result.bytes_after = os.path.getsize(self._path)
        logger.info(
            f"compacted {self._path}: {result.read} lines -> {result.written} "
            f"({result.bytes_before} -> {result.bytes_after} bytes)"
        )
        return result

    def _import_records(
        self, records: List[MemoryRecord], replace_existing: bool,
    ) -> Tuple[int, int, int]:
        imported = replaced = skipped = 0
        with self._lock:
            lines, index = self._read()
            replacements: Dict[str, Optional[str]] = {}
            appended: List[str] = []
            for rec in records:
                if rec.id in index:
                    if replace_existing:
                        replacements[rec.id] = rec.to_json_line()
                        replaced += 1
                    else:
                        skipped += 1
                    continue
                appended.append(rec.to_json_line())
                imported += 1
            if replacements or appended:
                self._rewrite_with(lines, index, replacements, appended)
        return imported, replaced, skipped

    def close(self) -> None:
        """Nothing to release; files are opened per operation."""
