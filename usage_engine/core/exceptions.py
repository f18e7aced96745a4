"""Custom exception types."""

from __future__ import annotations


class EngineError(Exception):
    """Base class for errors raised by the usage engine."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RecordRejectedError(EngineError):
    """Raised when a single telemetry record cannot be accepted.

    Never aborts the batch: the normalizer turns it into a rejection entry.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class RecordValidationError(RecordRejectedError):
    """Raised when a record is missing mandatory identity fields."""


class AttributionError(RecordRejectedError):
    """Raised when a record cannot be attributed to a customer."""


class StoreUnavailableError(EngineError):
    """Raised when the backing store cannot be reached; the caller may retry."""

    def __init__(self, message: str = "Store unavailable") -> None:
        super().__init__(message)


class DeadlineExceededError(EngineError):
    """Raised when a read operation runs past its caller-supplied deadline."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation} exceeded its deadline")
        self.operation = operation


class ToolProfileNotFoundError(EngineError):
    """Raised when a tenant has no profile for the requested vendor."""

    def __init__(self, customer_id: str, vendor: str) -> None:
        super().__init__(f"Tool profile '{vendor}' not found")
        self.customer_id = customer_id
        self.vendor = vendor


class KeyNotFoundError(EngineError):
    """Raised by key management helpers for an unknown key hash."""

    def __init__(self, key_hash: str) -> None:
        super().__init__("Key not found")
        self.key_hash = key_hash


class InvalidKeyScopeError(EngineError):
    """Raised when a key is not scoped to exactly one of user or team."""

    def __init__(self) -> None:
        super().__init__("A key must be scoped to exactly one of user_id or team_id")


class ReservationNotFoundError(EngineError):
    """Raised when a settlement names a reservation the key does not own."""

    def __init__(self, reservation_id: str) -> None:
        super().__init__(f"Reservation '{reservation_id}' not found")
        self.reservation_id = reservation_id


class GuardrailNotFoundError(EngineError):
    def __init__(self, guardrail_id: int) -> None:
        super().__init__(f"Guardrail {guardrail_id} not found")
        self.guardrail_id = guardrail_id
