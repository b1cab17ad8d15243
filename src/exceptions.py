"""
Exception hierarchy for the sync pipeline.

Only the trigger API turns these into HTTP errors. Inside the pipeline
they are caught at the unit they belong to (record, page, agent) and
reflected in logs and report counters.
"""

from __future__ import annotations


class SyncServiceError(Exception):
    """Base class for every error raised by this service."""


class PlatformError(SyncServiceError):
    """The voice agent platform could not be reached or returned an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedRecordError(SyncServiceError):
    """A remote execution record cannot be normalized (e.g. it has no id)."""


class ExtractionError(SyncServiceError):
    """The extraction backend failed or returned an unparseable payload."""


class SheetSinkError(SyncServiceError):
    """A Google Sheets call or the credential refresh before it failed."""


class TokenCipherError(SheetSinkError):
    """A stored OAuth token could not be decrypted with the configured key."""
