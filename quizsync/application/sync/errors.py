from typing import Optional


class SyncError(Exception):
    """Base class for every failure raised by the sync subsystem."""

    def __init__(self, message: str, context: str = "", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.context = context
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class ConnectivityError(SyncError):
    """Remote store unreachable or timed out. Retryable."""


class StoreWriteError(SyncError):
    """A single record could not be written to one of the stores."""


class StoreReadError(SyncError):
    """The embedded store could not be read, e.g. while another writer holds it."""


class ResolutionError(SyncError):
    """The conflict resolver could not apply its rule to a record."""


class QueueError(SyncError):
    """A deferred sync operation could not be persisted."""


class PayloadFormatError(ValueError):
    """Serialized answers/options could not be decoded."""
