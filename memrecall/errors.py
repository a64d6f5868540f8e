"""
Typed Failures

Every failure a store operation can surface to its caller. Bulk reads
recover locally from corrupt lines/rows (skip + warning); everything else
propagates as one of these.
"""

from __future__ import annotations

from typing import List, Optional


class StoreError(Exception):
    """Base class for all memrecall store failures."""


class NotFoundError(StoreError, KeyError):
    """Operation targets an id that does not exist in the store."""

    def __init__(self, record_id: str):
        super().__init__(record_id)
        self.record_id = record_id

    def __str__(self) -> str:
        return f"memory record not found: {self.record_id}"


class ValidationError(StoreError, ValueError):
    """Input violates the record schema (length bound, enum value, ...)."""

    pass


class CorruptRecordError(StoreError):
    """A stored line/row cannot be decoded into a record."""

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message)
        self.record_id = record_id


class BackendUnavailableError(StoreError, OSError):
    """The underlying file or database cannot be opened or written."""

    pass


class ConflictingIdError(StoreError):
    """Destination already holds one or more of the ids being written."""

    def __init__(self, ids: List[str]):
        self.ids = sorted(ids)
        shown = ", ".join(self.ids[:5])
        more = f" (+{len(self.ids) - 5} more)" if len(self.ids) > 5 else ""
        super().__init__(f"conflicting id(s) in destination: {shown}{more}")


class RedactionRejectedError(StoreError):
    """Secret-likelihood check flagged the content; overridable by the caller."""

    def __init__(self, issues: List[str]):
        self.issues = list(issues)
        super().__init__(
            "content looks like it contains a secret: " + "; ".join(self.issues)
        )
