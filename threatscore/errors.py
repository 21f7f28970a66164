from __future__ import annotations

from typing import Optional


class ThreatScoreError(Exception):
    """Base class for pipeline errors."""


class NoDataError(ThreatScoreError):
    """The indicator has no events to compute features from."""

    def __init__(self, indicator_id: str):
        super().__init__(f"No events recorded for indicator {indicator_id}")
        self.indicator_id = indicator_id


class StorageUnavailable(ThreatScoreError):
    """The storage collaborator failed; the run for this item is aborted."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class StorageTimeout(StorageUnavailable):
    """A storage call did not complete within the configured bound."""


class MalformedRuleError(ThreatScoreError):
    """A rule definition is invalid or its predicate raised."""


class DuplicateRuleError(ThreatScoreError):
    """A rule with the same identifier is already registered."""
