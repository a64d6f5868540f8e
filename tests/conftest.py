"""
Shared fixtures: a store per backend, and record builders.
"""

import pytest

from memrecall.jsonl_store import JsonlStore
from memrecall.sqlite_store import SqliteStore
from memrecall.types import MemoryRecord

NOW = "2025-06-01T12:00:00+00:00"


def make_record(content="Run tests before commit", **kw):
    """MemoryRecord with stable timestamps unless overridden."""
    kw.setdefault("created_at", "2025-05-01T10:00:00+00:00")
    return MemoryRecord(content=content, **kw)


def open_backend(kind, tmp_path, name="memory"):
    if kind == "jsonl":
        return JsonlStore(str(tmp_path / f"{name}.jsonl"))
    return SqliteStore(str(tmp_path / f"{name}.db"))


@pytest.fixture(params=["jsonl", "sqlite"])
def store(request, tmp_path):
    """Each backend in turn, on disk under tmp_path."""
    s = open_backend(request.param, tmp_path)
    yield s
    s.close()


@pytest.fixture
def jsonl_store(tmp_path):
    s = JsonlStore(str(tmp_path / "memory.jsonl"))
    yield s
    s.close()


@pytest.fixture
def sqlite_store(tmp_path):
    s = SqliteStore(str(tmp_path / "memory.db"))
    yield s
    s.close()
