# core/exceptions.py
"""Exception hierarchy for the Reader Panel core."""

from __future__ import annotations


class ReaderPanelError(Exception):
    """Base class for all Reader Panel errors."""


class UnsupportedInputError(ReaderPanelError):
    """Manuscript input was rejected before analysis (wrong type, too short)."""


class AnalysisAlreadyRunningError(ReaderPanelError):
    """A controller was asked to start while a run is in progress."""


class ProgressCallbackError(ReaderPanelError):
    """The host's progress callback raised. Aborts the run like any bookkeeping error."""


class CompletionError(ReaderPanelError):
    """Failure of a single completion task. Never aborts a whole run."""


class ApiError(CompletionError):
    """Non-2xx response from the completion endpoint."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Completion API error {status_code}: {body[:500]}")

    @property
    def is_transient(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


class TransportError(CompletionError):
    """Timeout or connection failure before a response was received."""

    is_transient = True


class ParseError(CompletionError):
    """Response text could not be coerced into a structured payload."""


class IncompleteResponse(ParseError):
    """Structurally valid JSON that does not match the expected schema."""


def is_transient(exc: BaseException) -> bool:
    """Whether a task failure is worth retrying."""
    return bool(getattr(exc, "is_transient", False))
