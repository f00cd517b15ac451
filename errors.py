from typing import Optional


class ValidationError(ValueError):
    """Malformed input to a core operation. Never retried automatically."""


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class IntegrityAnomaly(ValueError):
    """A persisted record violates an invariant the engine relies on."""

    def __init__(self, message: str, expense_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.expense_id = expense_id


class TransientStoreError(RuntimeError):
    """Store unreachable or transaction aborted; safe to retry the operation."""


class TransientQueueError(RuntimeError):
    """Broker unreachable or publish rejected; safe to retry the publish."""
