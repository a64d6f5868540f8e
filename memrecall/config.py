"""
Memory Store Configuration

Configuration dataclasses for memrecall: store/backend selection, write
policy, and recall weights.  Includes load_config() for reading a JSON
config file with silent fallback to compiled defaults, and
StoreConfig.from_env() for the MEMRECALL_* environment variables.

Precedence (invariant):
    explicit argument  >  MEMRECALL_* env var  >  compiled default
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from memrecall.errors import ValidationError

# Environment variable names
ENV_BACKEND = "MEMRECALL_BACKEND"
ENV_REPO_JSONL = "MEMRECALL_REPO_JSONL"
ENV_REPO_DB = "MEMRECALL_REPO_DB"
ENV_HOME_JSONL = "MEMRECALL_HOME_JSONL"
ENV_HOME_DB = "MEMRECALL_HOME_DB"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        expected = (
            "/".join(t.__name__ for t in typ) if isinstance(typ, tuple) else typ.__name__
        )
        errors.append(f"{name}: expected {expected}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """Backend selection and store path overrides.

    ``backend`` is ``"jsonl"`` or ``"sqlite"``; anything else (or None) falls
    back to jsonl when the store is opened.  Path overrides replace the
    conventional ``<root>/.memrecall/memory.{jsonl,db}`` locations.
    """
    backend: Optional[str] = None
    repo_jsonl: Optional[str] = None
    repo_db: Optional[str] = None
    home_jsonl: Optional[str] = None
    home_db: Optional[str] = None
    wal_mode: bool = True
    busy_timeout_s: float = 5.0

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any,
    ) -> StoreConfig:
        """Build from MEMRECALL_* variables; non-None overrides win."""
        env = os.environ if environ is None else environ
        cfg = cls(
            backend=env.get(ENV_BACKEND) or None,
            repo_jsonl=env.get(ENV_REPO_JSONL) or None,
            repo_db=env.get(ENV_REPO_DB) or None,
            home_jsonl=env.get(ENV_HOME_JSONL) or None,
            home_db=env.get(ENV_HOME_DB) or None,
        )
        for key, value in overrides.items():
            if key not in cls.__dataclass_fields__:
                raise TypeError(f"Unknown StoreConfig field: {key}")
            if value is not None:
                setattr(cfg, key, value)
        return cfg

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "store.busy_timeout_s",
                     self.busy_timeout_s, 0.0, 600.0, (int, float))
        return errors


@dataclass
class PolicyConfig:
    """Write governance configuration."""
    max_content_length: int = 240
    secret_detection_enabled: bool = True
    entropy_threshold: float = 4.5
    entropy_min_length: int = 20

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "policy.max_content_length",
                     self.max_content_length, 1, 100000, int)
        _check_range(errors, "policy.entropy_threshold",
                     self.entropy_threshold, 0.0, 8.0, (int, float))
        _check_range(errors, "policy.entropy_min_length",
                     self.entropy_min_length, 8, 1000, int)
        return errors


@dataclass
class RecallConfig:
    """Deterministic recall ranking configuration."""
    overlap_weight: float = 1.0
    hint_weight: float = 0.5
    recency_weight: float = 0.2
    frequency_weight: float = 0.1
    half_life_days: float = 7.0
    min_candidates: int = 5
    top_n: int = 5
    token_budget: int = 200

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        for name in ("overlap_weight", "hint_weight", "recency_weight", "frequency_weight"):
            _check_range(errors, f"recall.{name}",
                         getattr(self, name), 0.0, 100.0, (int, float))
        _check_range(errors, "recall.half_life_days",
                     self.half_life_days, 0.01, 3650.0, (int, float))
        _check_range(errors, "recall.min_candidates",
                     self.min_candidates, 0, 10000, int)
        _check_range(errors, "recall.top_n",
                     self.top_n, 0, 10000, int)
        _check_range(errors, "recall.token_budget",
                     self.token_budget, 0, 1000000, int)
        return errors


@dataclass
class MemoryConfig:
    """Top-level memrecall configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    recall: RecallConfig = field(default_factory=RecallConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "policy" in d:
            kwargs["policy"] = PolicyConfig(**d["policy"])
        if "recall" in d:
            kwargs["recall"] = RecallConfig(**d["recall"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.policy.validate())
        errors.extend(self.recall.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> MemoryConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        MemoryConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = MemoryConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = MemoryConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError, AttributeError):
            cfg = MemoryConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
