from __future__ import annotations


class LedgerError(Exception):
    """Base class for errors raised by the ledger core."""


class ValidationError(LedgerError, ValueError):
    """Raised when an input cannot be used for a computation."""


class NotFoundError(LedgerError, LookupError):
    def __init__(self, kind: str, identifier: object) -> None:
        super().__init__(f"{kind} not found.")
        self.kind = kind
        self.identifier = identifier


class ConflictError(LedgerError):
    """Raised when a write would duplicate an existing row."""


class DuplicateInstanceError(ConflictError):
    def __init__(self, template_id: int, window_start: object) -> None:
        super().__init__(
            f"Template {template_id} already has an instance for the salary month starting {window_start}."
        )
        self.template_id = template_id
        self.window_start = window_start


class StorageError(LedgerError, RuntimeError):
    """Raised when the storage backend fails."""
