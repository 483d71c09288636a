"""Errors raised while reconciling a thread's comments."""

from typing import Optional


class ReconciliationError(Exception):
    """Base error for a reconciliation run.

    ``help_url`` optionally points the user at an explanation of the failure
    (e.g. what to do about rate limiting). When a run fails after collecting
    data, ``partial_result`` holds the best-effort ``ReconcileResult``.
    """

    def __init__(self, message: str, help_url: Optional[str] = None):
        super().__init__(message)
        self.help_url = help_url
        self.partial_result = None


class ArchiveFetchError(ReconciliationError):
    """An archive page (or archived post) request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 help_url: Optional[str] = None):
        super().__init__(message, help_url=help_url)
        self.status_code = status_code


class LiveSourceError(ReconciliationError):
    """A request to the live Reddit API failed."""


class LiveBatchFetchError(LiveSourceError):
    """A batched lookup of comment ids failed as a whole."""

    def __init__(self, message: str, ids=None, help_url: Optional[str] = None):
        super().__init__(message, help_url=help_url)
        self.ids = list(ids or [])


class ConfigurationError(ReconciliationError, ValueError):
    """Invalid batch size, page size or comment count."""
