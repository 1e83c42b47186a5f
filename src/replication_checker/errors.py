"""Exceptions raised by the replication checker."""

from __future__ import annotations


class ReplicationCheckerError(Exception):
    """Base class for replication checker errors."""


class InvalidInput(ReplicationCheckerError, ValueError):
    """A caller-supplied record cannot be checked (e.g. empty or malformed DOI).

    Only affects the offending record; the orchestrator counts it and moves on.
    """


class LookupFailed(ReplicationCheckerError):
    """The remote prefix lookup could not be completed.

    Attributes:
        prefix_count: Number of prefixes in the failed request
        cause: Underlying exception or a short description
        batch: 1-based number of the failing batch (set by the orchestrator)
        unprocessed: Local IDs of records that had not been processed yet
    """

    def __init__(
        self,
        message: str,
        prefix_count: int,
        cause: BaseException | str | None = None,
        batch: int | None = None,
        unprocessed: tuple[str, ...] = (),
    ) -> None:
        super().__init__(message)
        self.prefix_count = prefix_count
        self.cause = cause
        self.batch = batch
        self.unprocessed = unprocessed


class SuppressionStoreUnavailable(ReplicationCheckerError):
    """The suppression store could not be read or written."""
