"""Exception taxonomy for Peik.

``OperationCancelled`` (see :mod:`peik.cancellation`) is intentionally not
part of this hierarchy: a cancelled send is control flow, not a failure.
"""

from __future__ import annotations


class PeikError(Exception):
    """Base class for all Peik failures."""

    default_message = "An unexpected error occurred."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(PeikError):
    """Bad user input; never retried, never mutates state."""

    default_message = "Invalid input."


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

class ProviderError(PeikError):
    """Non-retryable HTTP failure (400/401/403/404)."""

    default_message = "The provider rejected the request."

    def __init__(self, message: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientNetworkError(PeikError):
    """Connectivity failure or retryable HTTP status."""

    default_message = "Could not connect to the server."

    def __init__(self, message: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class StorageError(PeikError):
    default_message = "A storage error occurred."


class StorageCapacityError(StorageError):
    default_message = "Storage is full. Delete some old chats and try again."


class StorageAccessError(StorageError):
    default_message = "Storage could not be accessed."


class StorageVersionError(StorageError):
    default_message = (
        "A newer version of the app is open elsewhere. "
        "Close other windows and try again."
    )


class GenericStorageError(StorageError):
    default_message = "Saving data failed."
