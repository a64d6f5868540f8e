"""
memrecall — A local, per-project memory store for coding assistants.

Short memory records persist across sessions in an append-only JSONL file
or an embedded SQLite database, and a deterministic recall engine picks the
few worth re-surfacing for each prompt.
"""

__version__ = "0.1.0"

from memrecall.errors import (
    StoreError,
    NotFoundError,
    ValidationError,
    CorruptRecordError,
    BackendUnavailableError,
    ConflictingIdError,
    RedactionRejectedError,
)
from memrecall.types import (
    MemoryRecord,
    RelevanceHints,
    Counters,
    Expiry,
    RecordFilter,
)
from memrecall.config import MemoryConfig, StoreConfig, PolicyConfig, RecallConfig, load_config
from memrecall.policy import MemoryPolicy, redact_candidate
from memrecall.backend import MemoryBackend, ImportResult, CompactResult
from memrecall.jsonl_store import JsonlStore
from memrecall.sqlite_store import SqliteStore
from memrecall.recall import RecallContext, RecallEngine, recall_for
from memrecall.migrate import (
    MigrationResult,
    migrate,
    migrate_jsonl_to_sqlite,
    migrate_sqlite_to_jsonl,
    compact,
    compact_jsonl,
    archive_expired,
)
from memrecall.factory import (
    Backend,
    choose_backend,
    open_store,
    open_repo_store,
    open_home_store,
)

__all__ = [
    "__version__",
    "StoreError",
    "NotFoundError",
    "ValidationError",
    "CorruptRecordError",
    "BackendUnavailableError",
    "ConflictingIdError",
    "RedactionRejectedError",
    "MemoryRecord",
    "RelevanceHints",
    "Counters",
    "Expiry",
    "RecordFilter",
    "MemoryConfig",
    "StoreConfig",
    "PolicyConfig",
    "RecallConfig",
    "load_config",
    "MemoryPolicy",
    "redact_candidate",
    "MemoryBackend",
    "ImportResult",
    "CompactResult",
    "JsonlStore",
    "SqliteStore",
    "RecallContext",
    "RecallEngine",
    "recall_for",
    "MigrationResult",
    "migrate",
    "migrate_jsonl_to_sqlite",
    "migrate_sqlite_to_jsonl",
    "compact",
    "compact_jsonl",
    "archive_expired",
    "Backend",
    "choose_backend",
    "open_store",
    "open_repo_store",
    "open_home_store",
]
