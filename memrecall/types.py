"""
Memory Data Model — The Record Schema

Defines the canonical memory record persisted by every backend, its nested
value objects (relevance hints, counters, expiry) and the list filter
shared by both backends.

Timestamps are ISO-8601 strings. Records convert every timestamp they carry
to UTC on construction, so both backends can order records by comparing
the strings; a timestamp that does not parse makes the record invalid.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Literal, Optional, Union

from memrecall.errors import ValidationError

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

MemoryScope = Literal["global", "repo", "dir"]
MemoryStatus = Literal["active", "archived"]
MemoryType = Literal["pref", "fact", "instruction", "profile", "note"]
ListOrder = Literal["created_asc", "created_desc", "updated_desc"]

# Valid values for runtime checks
VALID_SCOPES: set = {"global", "repo", "dir"}
VALID_STATUSES: set = {"active", "archived"}
VALID_TYPES: set = {"pref", "fact", "instruction", "profile", "note"}
VALID_ORDERS: set = {"created_asc", "created_desc", "updated_desc"}

RECORD_SCHEMA_VERSION = 1
DEFAULT_MAX_CONTENT_LENGTH = 240

TimeLike = Union[str, datetime, None]


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _generate_id(prefix: str = "MEM") -> str:
    """Generate a unique record ID with prefix."""
    short = uuid.uuid4().hex[:12]
    return f"{prefix}-{short}"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string; naive values are taken as UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_datetime(value: TimeLike = None) -> datetime:
    """Coerce None / ISO string / datetime into an aware datetime."""
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return parse_timestamp(value)


def to_iso(value: TimeLike = None) -> str:
    """Coerce None / ISO string / datetime into the store's timestamp form (UTC)."""
    return to_datetime(value).astimezone(timezone.utc).isoformat()


def _canonical_timestamp(name: str, value: Any) -> str:
    """UTC ISO form of value, so stored strings sort chronologically."""
    try:
        return to_iso(value)
    except (TypeError, ValueError, AttributeError) as exc:
        raise ValidationError(f"{name}: invalid timestamp {value!r}") from exc


def _string_list(name: str, value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
        raise ValidationError(f"{name}: expected a list of strings, got {type(value).__name__}")
    out = []
    for v in value:
        if not isinstance(v, str):
            raise ValidationError(f"{name}: expected strings, got {type(v).__name__}")
        out.append(v)
    return out


def normalize_tags(tags: Iterable[str]) -> List[str]:
    """Tags are a set: strip, drop empties, deduplicate, sort."""
    return sorted({t.strip() for t in tags if t and t.strip()})


# ---------------------------------------------------------------------------
# Nested value objects
# ---------------------------------------------------------------------------

@dataclass
class RelevanceHints:
    """Context the record relates to. Boosts recall score, never filters."""

    files: List[str] = field(default_factory=list)
    modules: List[str] = field(default_factory=list)
    languages: List[str] = field(default_factory=list)
    commands: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.files = _string_list("relevance_hints.files", self.files)
        self.modules = _string_list("relevance_hints.modules", self.modules)
        self.languages = _string_list("relevance_hints.languages", self.languages)
        self.commands = _string_list("relevance_hints.commands", self.commands)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> RelevanceHints:
        data = dict(d)
        # older snapshots used "crates"/"langs"
        if "modules" not in data and "crates" in data:
            data["modules"] = data["crates"]
        if "languages" not in data and "langs" in data:
            data["languages"] = data["langs"]
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class Counters:
    """Recall bookkeeping. Only the recall engine moves these, never downward."""

    seen_count: int = 0
    used_count: int = 0
    last_used_at: Optional[str] = None

    def __post_init__(self):
        for name in ("seen_count", "used_count"):
            v = getattr(self, name)
            if isinstance(v, bool) or not isinstance(v, int) or v < 0:
                raise ValidationError(f"counters.{name}: expected non-negative int, got {v!r}")
        if self.last_used_at is not None:
            self.last_used_at = _canonical_timestamp("counters.last_used_at", self.last_used_at)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Counters:
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


@dataclass
class Expiry:
    """Absolute deadline, relative TTL, or both (the earlier one applies)."""

    at: Optional[str] = None
    ttl_secs: Optional[int] = None

    def __post_init__(self):
        if self.ttl_secs is not None and (
            isinstance(self.ttl_secs, bool)
            or not isinstance(self.ttl_secs, int)
            or self.ttl_secs < 0
        ):
            raise ValidationError(f"expiry.ttl_secs: expected non-negative int, got {self.ttl_secs!r}")
        if self.at is not None:
            self.at = _canonical_timestamp("expiry.at", self.at)

    def deadline(self, created_at: str) -> Optional[datetime]:
        """Return the moment the record expires, or None."""
        candidates = []
        if self.at is not None:
            candidates.append(parse_timestamp(self.at))
        if self.ttl_secs is not None:
            candidates.append(parse_timestamp(created_at) + timedelta(seconds=self.ttl_secs))
        return min(candidates) if candidates else None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Expiry:
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


# ---------------------------------------------------------------------------
# Memory Record (canonical)
# ---------------------------------------------------------------------------

@dataclass
class MemoryRecord:
    """
    Canonical memory record — the sole persisted entity.

    Rules:
    - id, created_at and scope never change after creation.
    - content is short (<= 240 chars by default); it is rendered verbatim.
    - counters are moved by recall only; CRUD never touches them.
    - archived or expired records are never recall candidates.
    """

    id: str = field(default_factory=lambda: _generate_id("MEM"))
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = ""
    schema_version: int = RECORD_SCHEMA_VERSION
    source: str = "user"
    scope: MemoryScope = "repo"
    status: MemoryStatus = "active"
    type: MemoryType = "note"
    content: str = ""
    tags: List[str] = field(default_factory=list)
    relevance_hints: RelevanceHints = field(default_factory=RelevanceHints)
    counters: Counters = field(default_factory=Counters)
    expiry: Optional[Expiry] = None

    def __post_init__(self):
        """Check enums, coerce nested dicts, canonicalize tags."""
        if not self.updated_at:
            self.updated_at = self.created_at
        if self.scope not in VALID_SCOPES:
            raise ValidationError(f"Invalid scope: {self.scope!r}")
        if self.status not in VALID_STATUSES:
            raise ValidationError(f"Invalid status: {self.status!r}")
        if self.type not in VALID_TYPES:
            raise ValidationError(f"Invalid type: {self.type!r}")
        if isinstance(self.relevance_hints, dict):
            self.relevance_hints = RelevanceHints.from_dict(self.relevance_hints)
        if isinstance(self.counters, dict):
            self.counters = Counters.from_dict(self.counters)
        if isinstance(self.expiry, dict):
            self.expiry = Expiry.from_dict(self.expiry)
        if not isinstance(self.relevance_hints, RelevanceHints):
            raise ValidationError("relevance_hints: expected an object")
        if not isinstance(self.counters, Counters):
            raise ValidationError("counters: expected an object")
        if self.expiry is not None and not isinstance(self.expiry, Expiry):
            raise ValidationError("expiry: expected an object or null")
        for name in ("id", "content", "created_at", "updated_at", "source"):
            if not isinstance(getattr(self, name), str):
                raise ValidationError(f"{name}: expected a string")
        self.created_at = _canonical_timestamp("created_at", self.created_at)
        self.updated_at = _canonical_timestamp("updated_at", self.updated_at)
        self.tags = normalize_tags(_string_list("tags", self.tags))

    # -- Validation --------------------------------------------------------

    def validate(self, max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH) -> None:
        """Raise ValidationError unless the record may be persisted."""
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValidationError("id must be a non-empty string")
        if not isinstance(self.content, str) or not self.content.strip():
            raise ValidationError("content must be a non-empty string")
        if len(self.content) > max_content_length:
            raise ValidationError(
                f"content too long ({len(self.content)} chars > {max_content_length})"
            )
        try:
            created = parse_timestamp(self.created_at)
            updated = parse_timestamp(self.updated_at)
        except (TypeError, ValueError, AttributeError) as exc:
            raise ValidationError(f"invalid timestamp on {self.id}: {exc}") from exc
        if updated < created:
            raise ValidationError("updated_at precedes created_at")

    # -- Expiry ------------------------------------------------------------

    def expires_at(self) -> Optional[datetime]:
        """Deadline after which the record leaves the candidate set."""
        if self.expiry is None:
            return None
        return self.expiry.deadline(self.created_at)

    def is_expired(self, now: TimeLike = None) -> bool:
        deadline = self.expires_at()
        return deadline is not None and deadline <= to_datetime(now)

    def is_recallable(self, now: TimeLike = None) -> bool:
        """Active and not expired."""
        return self.status == "active" and not self.is_expired(now)

    # -- Serialization -----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryRecord:
        """Deserialize from dict, ignoring unknown keys.

        Raises ValidationError for anything that is not a well-formed record.
        """
        if not isinstance(d, dict):
            raise ValidationError(f"expected a JSON object, got {type(d).__name__}")
        data = dict(d)
        # older snapshots used "kind" for the record type
        if "type" not in data and "kind" in data:
            data["type"] = data["kind"]
        for key in ("scope", "status", "type"):
            if isinstance(data.get(key), str):
                data[key] = data[key].lower()
        if isinstance(data.get("expiry"), str):
            data["expiry"] = {"at": data["expiry"]}
        known = set(cls.__dataclass_fields__.keys())
        filtered = {k: v for k, v in data.items() if k in known}
        if "id" not in filtered or "content" not in filtered:
            raise ValidationError("record is missing 'id' or 'content'")
        try:
            return cls(**filtered)
        except TypeError as exc:
            raise ValidationError(str(exc)) from exc

    def to_json_line(self) -> str:
        """Serialize to a single JSONL line (no trailing newline)."""
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json_line(cls, line: str) -> MemoryRecord:
        return cls.from_dict(json.loads(line))


# ---------------------------------------------------------------------------
# List filter (shared by both backends)
# ---------------------------------------------------------------------------

@dataclass
class RecordFilter:
    """Any combination of scope, status, type and tag membership (any-of)."""

    scope: Optional[str] = None
    status: Optional[str] = None
    type: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    order: ListOrder = "created_asc"
    limit: Optional[int] = None

    def __post_init__(self):
        if self.scope is not None and self.scope not in VALID_SCOPES:
            raise ValidationError(f"Invalid scope filter: {self.scope!r}")
        if self.status is not None and self.status not in VALID_STATUSES:
            raise ValidationError(f"Invalid status filter: {self.status!r}")
        if self.type is not None and self.type not in VALID_TYPES:
            raise ValidationError(f"Invalid type filter: {self.type!r}")
        if self.order not in VALID_ORDERS:
            raise ValidationError(f"Invalid order: {self.order!r}")
        if self.limit is not None and self.limit < 0:
            raise ValidationError("limit must be >= 0")
        self.tags = normalize_tags(_string_list("tags", self.tags))

    def matches(self, record: MemoryRecord) -> bool:
        if self.scope is not None and record.scope != self.scope:
            return False
        if self.status is not None and record.status != self.status:
            return False
        if self.type is not None and record.type != self.type:
            return False
        if self.tags and not set(self.tags) & set(record.tags):
            return False
        return True

    def apply(self, records: Iterable[MemoryRecord]) -> List[MemoryRecord]:
        """Filter, order and limit in Python (same result as the SQL path)."""
        out = sort_records((r for r in records if self.matches(r)), self.order)
        if self.limit is not None:
            out = out[: self.limit]
        return out


def sort_records(records: Iterable[MemoryRecord], order: str = "created_asc") -> List[MemoryRecord]:
    """Deterministic ordering; ties on the timestamp fall back to id."""
    if order == "created_asc":
        return sorted(records, key=lambda r: (r.created_at, r.id))
    if order == "created_desc":
        return sorted(records, key=lambda r: (r.created_at, r.id), reverse=True)
    if order == "updated_desc":
        return sorted(records, key=lambda r: (r.updated_at, r.id), reverse=True)
    raise ValidationError(f"Invalid order: {order!r}")
