"""
Backend Selector

Opens the repo-scoped and home-scoped stores with the configured backend:

    <repo>/.memrecall/memory.jsonl | memory.db
    ~/.memrecall/memory.jsonl      | memory.db

Precedence (invariant):
    explicit StoreConfig field  >  MEMRECALL_* env var  >  compiled default

Configuration is passed in, never read from module state, so a repo
handle and a home handle may use different backends in one process.
"""

from __future__ import annotations

import dataclasses
import logging
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from memrecall.backend import MemoryBackend
from memrecall.config import MemoryConfig, StoreConfig
from memrecall.jsonl_store import JsonlStore
from memrecall.policy import MemoryPolicy
from memrecall.sqlite_store import SqliteStore

logger = logging.getLogger(__name__)

STORE_DIRNAME = ".memrecall"
JSONL_FILENAME = "memory.jsonl"
DB_FILENAME = "memory.db"

PathLike = Union[str, Path]


class Backend(Enum):
    """Persistence backend."""

    JSONL = "jsonl"
    SQLITE = "sqlite"


def choose_backend(value: Union[str, Backend, None] = None) -> Backend:
    """Map a backend name to Backend. Unset or unknown values mean JSONL."""
    if isinstance(value, Backend):
        return value
    if value is None or not str(value).strip():
        return Backend.JSONL
    try:
        return Backend(str(value).strip().lower())
    except ValueError:
        logger.warning(f"Unknown memory backend {value!r}; falling back to jsonl")
        return Backend.JSONL


def effective_store_config(config: Optional[MemoryConfig] = None) -> StoreConfig:
    """Fill unset StoreConfig fields from MEMRECALL_* variables."""
    explicit = config.store if config is not None else StoreConfig()
    return StoreConfig.from_env(**dataclasses.asdict(explicit))


def resolve_store_path(
    root: PathLike,
    backend: Backend,
    override: Optional[PathLike] = None,
) -> Path:
    """Store file for root: the override when set, else the conventional path."""
    if override:
        return Path(override).expanduser()
    name = JSONL_FILENAME if backend is Backend.JSONL else DB_FILENAME
    return Path(root) / STORE_DIRNAME / name


def open_store(
    path: PathLike,
    backend: Union[str, Backend, None] = None,
    config: Optional[MemoryConfig] = None,
) -> MemoryBackend:
    """Open a store at an explicit path."""
    cfg = config or MemoryConfig()
    policy = MemoryPolicy(cfg.policy)
    be = choose_backend(backend)
    if be is Backend.SQLITE:
        return SqliteStore(
            path,
            policy=policy,
            wal_mode=cfg.store.wal_mode,
            busy_timeout_s=cfg.store.busy_timeout_s,
        )
    return JsonlStore(path, policy=policy)


def _open_scoped(
    root: PathLike,
    config: Optional[MemoryConfig],
    jsonl_field: str,
    db_field: str,
) -> MemoryBackend:
    cfg = config or MemoryConfig()
    store_cfg = effective_store_config(cfg)
    be = choose_backend(store_cfg.backend)
    override = getattr(store_cfg, jsonl_field if be is Backend.JSONL else db_field)
    path = resolve_store_path(root, be, override)
    logger.debug(f"opening {be.value} store at {path}")
    return open_store(path, be, dataclasses.replace(cfg, store=store_cfg))


def open_repo_store(
    repo_root: PathLike,
    config: Optional[MemoryConfig] = None,
) -> MemoryBackend:
    """Open the store for repository-local memory."""
    return _open_scoped(repo_root, config, "repo_jsonl", "repo_db")


def open_home_store(
    home_dir: Optional[PathLike] = None,
    config: Optional[MemoryConfig] = None,
) -> MemoryBackend:
    """Open the store for user-wide memory (defaults to the home directory)."""
    return _open_scoped(home_dir or Path.home(), config, "home_jsonl", "home_db")
