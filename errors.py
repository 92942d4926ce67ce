"""Error taxonomy for the explorer pipeline.

Routing- and description-stage errors are recovered inside the pipeline.
Completion and persistence errors reach the caller so it can retry or tell
the user.
"""

from __future__ import annotations


class ExplorerError(Exception):
    """Base class for every error raised by this package."""

    status_code = 500


class ConfigError(ExplorerError):
    """Credentials or required configuration are missing."""

    status_code = 400


class ClassificationParseError(ExplorerError):
    """The table-relevance answer from the model could not be decoded."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class DescriptionGenerationError(ExplorerError):
    """Per-table description summarization failed."""


class CompletionError(ExplorerError):
    """A call to the completion service failed or timed out."""

    status_code = 502

    def __init__(self, message: str, purpose: str = "answer"):
        super().__init__(message)
        self.purpose = purpose


class MetadataIOError(ExplorerError):
    """Reading or writing a persisted snapshot artifact failed."""


class DatabaseUnavailableError(ExplorerError):
    status_code = 503


class SnapshotInProgressError(ExplorerError):
    status_code = 409
