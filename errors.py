"""Failures raised by the ledger engine and the batch registry.

Every error carries a human readable message; the HTTP layer maps each class
to a status code (see ``app.py``).
"""


class LedgerError(Exception):
    """Base class for ledger and registry failures."""


class NotFoundError(LedgerError):
    """A referenced batch, user or scan token does not exist."""


class ValidationError(LedgerError):
    """Missing or malformed fields for a record kind or batch."""


class StatusTransitionError(ValidationError):
    """Batch status change that would move the lifecycle backward."""


class ConflictError(LedgerError):
    """Another append claimed the same chain position for the batch."""


class StorageError(LedgerError):
    """The underlying store failed; nothing from the operation was persisted."""


class IntegrityError(LedgerError):
    """A stored chain failed link or content hash recomputation."""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result
