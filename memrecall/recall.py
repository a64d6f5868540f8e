"""
Recall Engine — Deterministic Relevance Ranking

Chooses the few records worth re-surfacing for a prompt:

    1. candidates: active, non-expired repo records; global records are
       added when the repo yields fewer than ``min_candidates``
    2. score: prompt coverage + relevance hints + recency + frequency
    3. rank: score desc, created_at desc, id asc
    4. select greedily under ``top_n`` and a word-count ``token_budget``
    5. persist counters: selected -> used, scored but unselected -> seen

No randomness and no model calls: identical store contents, prompt,
context and ``now`` always produce the identical selection.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from memrecall.backend import MemoryBackend, bump_counters
from memrecall.config import RecallConfig
from memrecall.similarity import coverage, estimate_tokens, tokenize, tokenize_all
from memrecall.types import MemoryRecord, RelevanceHints, parse_timestamp, to_datetime, to_iso

logger = logging.getLogger(__name__)

# Hint boosts, capped at 1.0 in total
FILE_HINT_BOOST = 0.4
MODULE_HINT_BOOST = 0.3
LANGUAGE_HINT_BOOST = 0.2
COMMAND_HINT_BOOST = 0.1

_SECONDS_PER_DAY = 86400.0


@dataclass
class RecallContext:
    """Where the user is working when the prompt is sent."""

    active_files: List[str] = field(default_factory=list)
    modules: List[str] = field(default_factory=list)
    languages: List[str] = field(default_factory=list)
    command: Optional[str] = None
    now: Optional[str] = None


@dataclass
class ScoredRecord:
    """A candidate with its score components (useful for debugging ranks)."""

    record: MemoryRecord
    backend: MemoryBackend
    score: float = 0.0
    overlap: float = 0.0
    hints: float = 0.0
    recency: float = 0.0
    frequency: float = 0.0
    cost: int = 0


# ---------------------------------------------------------------------------
# Score components
# ---------------------------------------------------------------------------


def hint_score(hints: RelevanceHints, context: RecallContext) -> float:
    """Boost for relevance hints matching the working context."""
    score = 0.0
    if any(af.endswith(h) for h in hints.files if h for af in context.active_files):
        score += FILE_HINT_BOOST
    if set(hints.modules) & set(context.modules):
        score += MODULE_HINT_BOOST
    wanted = {lang.lower() for lang in context.languages}
    if any(h.lower() in wanted for h in hints.languages):
        score += LANGUAGE_HINT_BOOST
    if context.command and context.command in hints.commands:
        score += COMMAND_HINT_BOOST
    return min(score, 1.0)


def recency_score(record: MemoryRecord, now, half_life_days: float) -> float:
    """Exponential decay since last use (or creation if never used)."""
    then = parse_timestamp(record.counters.last_used_at or record.created_at)
    age_days = max(0.0, (now - then).total_seconds() / _SECONDS_PER_DAY)
    return 0.5 ** (age_days / half_life_days)


def frequency_score(record: MemoryRecord) -> float:
    return math.log1p(record.counters.used_count)


def _rank_key(s: ScoredRecord) -> Tuple[float, float, str]:
    created = parse_timestamp(s.record.created_at).timestamp()
    return (-s.score, -created, s.record.id)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class RecallEngine:
    """
    Ranks and selects records from a repo backend (plus an optional global
    backend) and records usage counters on the backend that owns each one.
    """

    def __init__(
        self,
        backend: MemoryBackend,
        *,
        global_backend: Optional[MemoryBackend] = None,
        config: Optional[RecallConfig] = None,
    ):
        self._backend = backend
        self._global_backend = global_backend
        self._config = config or RecallConfig()

    @property
    def config(self) -> RecallConfig:
        return self._config

    def candidates(self, now) -> List[Tuple[MemoryRecord, MemoryBackend]]:
        """Repo candidates first, topped up with global ones when scarce."""
        out = [(r, self._backend) for r in self._backend.candidates_for_recall({"repo"}, now)]
        if len(out) < self._config.min_candidates:
            source = self._global_backend or self._backend
            known = {r.id for r, _ in out}
            for r in source.candidates_for_recall({"global"}, now):
                if r.id not in known:
                    out.append((r, source))
                    known.add(r.id)
        return out

    def score(
        self,
        prompt_text: str,
        context: Optional[RecallContext] = None,
    ) -> List[ScoredRecord]:
        """Score and rank every candidate without touching counters."""
        ctx = context or RecallContext()
        now = to_datetime(ctx.now)
        cfg = self._config
        prompt_tokens = tokenize(prompt_text, drop_stop_words=True)

        scored: List[ScoredRecord] = []
        for record, owner in self.candidates(now):
            s = ScoredRecord(record=record, backend=owner)
            s.overlap = coverage(prompt_tokens, tokenize_all([record.content, *record.tags]))
            s.hints = hint_score(record.relevance_hints, ctx)
            s.recency = recency_score(record, now, cfg.half_life_days)
            s.frequency = frequency_score(record)
            s.score = (
                cfg.overlap_weight * s.overlap
                + cfg.hint_weight * s.hints
                + cfg.recency_weight * s.recency
                + cfg.frequency_weight * s.frequency
            )
            s.cost = estimate_tokens(record.content)
            scored.append(s)
        scored.sort(key=_rank_key)
        return scored

    def recall_for(
        self,
        prompt_text: str,
        context: Optional[RecallContext] = None,
        top_n: Optional[int] = None,
        token_budget: Optional[int] = None,
    ) -> List[MemoryRecord]:
        """Select the records to surface for prompt_text.

        Args:
            prompt_text: The user's prompt.
            context: Working context (files, modules, languages, command, now).
            top_n: Maximum number of records (default: config.top_n).
            token_budget: Maximum total word count (default: config.token_budget).

        Returns:
            Selected records in rank order, carrying their updated counters.
        """
        ctx = context or RecallContext()
        now_iso = to_iso(ctx.now)
        ctx = RecallContext(
            active_files=ctx.active_files,
            modules=ctx.modules,
            languages=ctx.languages,
            command=ctx.command,
            now=now_iso,
        )
        limit = self._config.top_n if top_n is None else top_n
        remaining = self._config.token_budget if token_budget is None else token_budget

        ranked = self.score(prompt_text, ctx)
        selected: List[ScoredRecord] = []
        for s in ranked:
            if len(selected) >= limit:
                break
            if s.cost > remaining:
                continue
            selected.append(s)
            remaining -= s.cost

        chosen = {s.record.id for s in selected}
        self._persist_usage(ranked, chosen, now_iso)

        logger.debug(
            f"recall: {len(ranked)} candidate(s), selected "
            f"{[s.record.id for s in selected]}"
        )
        return [
            bump_counters(s.record, True, now_iso) for s in selected
        ]

    def _persist_usage(
        self, ranked: List[ScoredRecord], chosen: set, now_iso: str,
    ) -> None:
        """One record_usage call per owning backend."""
        groups: Dict[int, Tuple[MemoryBackend, List[str], List[str]]] = {}
        for s in ranked:
            backend, used, seen = groups.setdefault(id(s.backend), (s.backend, [], []))
            (used if s.record.id in chosen else seen).append(s.record.id)
        for backend, used, seen in groups.values():
            backend.record_usage(used, seen, now_iso)


def recall_for(
    backend: MemoryBackend,
    prompt_text: str,
    context: Optional[RecallContext] = None,
    top_n: Optional[int] = None,
    token_budget: Optional[int] = None,
    *,
    global_backend: Optional[MemoryBackend] = None,
    config: Optional[RecallConfig] = None,
) -> List[MemoryRecord]:
    """Convenience wrapper around RecallEngine(...).recall_for(...)."""
    engine = RecallEngine(backend, global_backend=global_backend, config=config)
    return engine.recall_for(prompt_text, context, top_n=top_n, token_budget=token_budget)
