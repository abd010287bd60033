"""
Error taxonomy shared by the media core, the planner and the HTTP layer.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tripkit.types import BatchResult


class TripkitError(Exception):
    """Base class for every error surfaced to a user as a notification."""

    code = "error"


class ValidationError(TripkitError):
    """Input rejected before any gateway call was made."""

    code = "invalid"


class FolderNotEmptyError(ValidationError):
    code = "folder_not_empty"


class FeedPayloadError(ValidationError):
    """A change-feed message did not match any known event shape."""

    code = "bad_feed_payload"


class NotAuthenticatedError(TripkitError):
    code = "not_authenticated"


class NotFoundError(TripkitError):
    code = "not_found"


class GatewayWriteError(TripkitError):
    """An insert, update or delete against the record store failed."""

    code = "gateway_write_failed"


class OrphanedStateError(GatewayWriteError):
    """
    A blob operation succeeded but its metadata write did not.

    The blob and its row now disagree; an entry was written to the orphan
    ledger (when possible) so a reconciliation sweep can repair it. This is
    not a plain retryable failure.
    """

    code = "orphaned"

    def __init__(self, message: str, *, orphan_id: str | None = None):
        super().__init__(message)
        self.orphan_id = orphan_id


class BlobOperationError(TripkitError):
    """Upload, move or delete of blob bytes failed."""

    code = "blob_operation_failed"


class PartialBatchError(TripkitError):
    """Every item of a bulk operation failed."""

    code = "batch_failed"

    def __init__(self, message: str, result: "BatchResult"):
        super().__init__(message)
        self.result = result
