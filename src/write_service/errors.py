"""
errors.py
---------
Exceptions that fail a whole run. Per-record and per-date problems are
never raised; they are tallied in a BatchOutcome instead.
"""


class ComplaintClubError(Exception):
    """Base class for run-level failures."""


class UpstreamFetchError(ComplaintClubError):
    """The NYC Open Data endpoint could not be reached or returned garbage."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class PreconditionError(ComplaintClubError):
    """Required reference data (e.g. neighborhoods) is missing."""


class RecordValidationError(ComplaintClubError):
    """A single upstream record does not have the shape we need."""
