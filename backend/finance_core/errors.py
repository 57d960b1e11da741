"""
FINANCE ENGINE ERROR TAXONOMY

Every error raised by the engine carries:
- a stable machine-readable ``kind``
- a human message
- the HTTP status the boundary should answer with

Routes translate these into HTTPException; nothing below the routes knows
about HTTP beyond the status number.
"""

from typing import Any, Dict, Optional


class FinanceEngineError(Exception):
    """Base class for all engine errors."""

    kind = "internal_error"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(FinanceEngineError):
    """Bad input shape or range. Never retried automatically."""

    kind = "validation_error"
    http_status = 400


class CurrencyMismatch(ValidationError):
    """Two monetary values (or a payment and its invoice) disagree on currency."""

    kind = "currency_mismatch"

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Currency mismatch: expected {expected}, got {actual}",
            {"expected": expected, "actual": actual},
        )


class CalculationError(FinanceEngineError):
    """A calculation invariant was violated."""

    kind = "calculation_error"
    http_status = 400


class NotFoundError(FinanceEngineError):
    kind = "not_found"
    http_status = 404

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class LockedResource(FinanceEngineError):
    """Edit attempted on a locked entity without force-edit capability."""

    kind = "locked_resource"
    http_status = 403

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(reason, {"entity_type": entity_type, "entity_id": entity_id})


class InvalidTransition(FinanceEngineError):
    """Status edge not present in the adjacency table."""

    kind = "invalid_transition"
    http_status = 409

    def __init__(self, entity: str, from_state: str, to_state: str, allowed=None, reason: str = ""):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = list(allowed or [])
        message = f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'."
        if reason:
            message = f"{message} {reason}"
        elif self.allowed:
            message = f"{message} Allowed transitions from '{from_state}': {self.allowed}"
        super().__init__(message, {"from": from_state, "to": to_state, "allowed": self.allowed})


class IdempotencyConflict(FinanceEngineError):
    """Same idempotency key, different payload (or still in flight)."""

    kind = "idempotency_conflict"
    http_status = 409


class AlreadyVoided(FinanceEngineError):
    kind = "already_voided"
    http_status = 409

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} is already void")


class StorageError(FinanceEngineError):
    """Collaborator failure. Safe to retry with the same idempotency key."""

    kind = "storage_error"
    http_status = 503
