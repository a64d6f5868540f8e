"""
Write Governance — Secret-Likelihood Check

Runs before a record is persisted. Content that looks like it carries a
credential (API keys, tokens, SSH/PEM keys, high-entropy strings) is
rejected unless the caller passes an explicit override.

redact_candidate() also returns a masked copy of the text, so callers can
show the user what tripped the check.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Tuple

from memrecall.config import PolicyConfig
from memrecall.errors import RedactionRejectedError

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# ---------------------------------------------------------------------------
# Pattern sets
# ---------------------------------------------------------------------------

# NAME=VALUE where VALUE is long; only the value is masked
_API_KEY_RE = re.compile(
    r"(?i)(api[_-]?key|token|secret|password)[\s:=]+([A-Za-z0-9_\-]{16,})"
)
_SSH_KEY_RE = re.compile(r"ssh-(?:rsa|ed25519) [A-Za-z0-9+/=]{20,}")
_PEM_KEY_RE = re.compile(
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]+?-----END [A-Z ]*PRIVATE KEY-----"
)

# Well-known token shapes (conservative)
_TOKEN_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"ghp_[A-Za-z0-9]{36,}"), "possible GitHub token"),
    (re.compile(r"sk-[A-Za-z0-9]{20,}"), "possible API key"),
    (re.compile(r"AKIA[0-9A-Z]{16}"), "possible AWS access key"),
    (re.compile(r"eyJ[A-Za-z0-9_-]{20,}\.[A-Za-z0-9_-]{20,}"), "possible JWT"),
]

# Candidate runs for the entropy test
_ENTROPY_RUN = r"[A-Za-z0-9+/=_-]{%d,}"


def shannon_entropy(text: str) -> float:
    """Shannon entropy in bits per character (byte-wise)."""
    data = text.encode("utf-8")
    if not data:
        return 0.0
    n = len(data)
    return -sum((c / n) * math.log2(c / n) for c in Counter(data).values())


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


@dataclass
class Redaction:
    """Result of scanning a candidate string."""

    masked: str
    issues: List[str] = field(default_factory=list)
    blocked: bool = False


def redact_candidate(
    text: str,
    *,
    entropy_threshold: float = 4.5,
    entropy_min_length: int = 20,
) -> Redaction:
    """Scan text for likely secrets and mask every hit with [REDACTED]."""
    issues: List[str] = []
    spans: List[Tuple[int, int]] = []

    def push(start: int, end: int, issue: str) -> None:
        if any(start >= s and end <= e for s, e in spans):
            return
        spans.append((start, end))
        issues.append(issue)

    for m in _API_KEY_RE.finditer(text):
        push(m.start(2), m.end(2), "possible API key")
    for m in _SSH_KEY_RE.finditer(text):
        push(m.start(), m.end(), "possible SSH key")
    for m in _PEM_KEY_RE.finditer(text):
        push(m.start(), m.end(), "possible private key")
    for pattern, issue in _TOKEN_PATTERNS:
        for m in pattern.finditer(text):
            push(m.start(), m.end(), issue)

    for m in re.finditer(_ENTROPY_RUN % entropy_min_length, text):
        if any(m.start() < e and m.end() > s for s, e in spans):
            continue
        if shannon_entropy(m.group()) >= entropy_threshold:
            push(m.start(), m.end(), "high-entropy string")

    merged: List[List[int]] = []
    for start, end in sorted(spans):
        if merged and start <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], end)
            continue
        merged.append([start, end])

    parts: List[str] = []
    last = 0
    for start, end in merged:
        parts.append(text[last:start])
        parts.append(REDACTED)
        last = end
    parts.append(text[last:])

    return Redaction(masked="".join(parts), issues=issues, blocked=bool(issues))


# ---------------------------------------------------------------------------
# Policy Engine
# ---------------------------------------------------------------------------

PolicyAction = Literal["accept", "reject"]


@dataclass
class PolicyVerdict:
    """Result of policy evaluation on a candidate content string."""

    action: PolicyAction
    reasons: List[str] = field(default_factory=list)
    masked: str = ""

    @property
    def accepted(self) -> bool:
        """Return True if the verdict is accept."""
        return self.action == "accept"

    @property
    def rejected(self) -> bool:
        """Return True if the verdict is reject."""
        return self.action == "reject"


class MemoryPolicy:
    """
    Secret-likelihood gate used by every backend before create/update.

    Subclass and override check() to plug in a different detector; the
    backends only rely on check() returning a PolicyVerdict.
    """

    def __init__(self, config: Optional[PolicyConfig] = None):
        """Initialize policy engine with detection configuration."""
        self._config = config or PolicyConfig()

    @property
    def config(self) -> PolicyConfig:
        return self._config

    def check(self, text: str) -> PolicyVerdict:
        """Evaluate candidate content. Returns verdict with action and reasons."""
        if not self._config.secret_detection_enabled:
            return PolicyVerdict(action="accept", masked=text)
        red = redact_candidate(
            text,
            entropy_threshold=self._config.entropy_threshold,
            entropy_min_length=self._config.entropy_min_length,
        )
        if red.blocked:
            return PolicyVerdict(action="reject", reasons=red.issues, masked=red.masked)
        return PolicyVerdict(action="accept", masked=text)

    def enforce(self, text: str, *, allow_secrets: bool = False) -> None:
        """Raise RedactionRejectedError unless text passes or is overridden."""
        verdict = self.check(text)
        if verdict.accepted:
            return
        if allow_secrets:
            logger.warning(
                f"Secret check overridden by caller: {'; '.join(verdict.reasons)}"
            )
            return
        raise RedactionRejectedError(verdict.reasons)
