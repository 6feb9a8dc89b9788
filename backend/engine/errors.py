"""
ENGINE ERROR TAXONOMY

Every business rule failure raised by the engine is an EngineError subclass
carrying a stable `code`, a human readable message and a `details` dict.
The HTTP layer maps `status_code` onto the response; nothing in the engine
depends on FastAPI.
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for all engine failures."""

    code = "ENGINE_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


class ValidationError(EngineError):
    """Malformed or semantically invalid input."""
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(EngineError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = str(entity_id)
        super().__init__(
            f"{entity} not found: {entity_id}",
            {"entity": entity, "id": str(entity_id)}
        )


class PermissionDeniedError(EngineError):
    code = "PERMISSION_DENIED"
    status_code = 403


class InvalidStateError(EngineError):
    """Operation not allowed in the entity's current state."""
    code = "INVALID_STATE"
    status_code = 400


class InsufficientAreaError(EngineError):
    code = "INSUFFICIENT_AREA"
    status_code = 400

    def __init__(self, requested, available, rs_number: Optional[str] = None,
                 message: Optional[str] = None):
        self.requested = float(requested)
        self.available = float(available)
        details = {"requested": self.requested, "available": self.available}
        if rs_number:
            details["rs_number"] = rs_number
        super().__init__(
            message or f"Requested area {self.requested} exceeds available area {self.available}",
            details
        )


class OverpaymentError(EngineError):
    code = "OVERPAYMENT"
    status_code = 400

    def __init__(self, amount, due, sale_number: Optional[str] = None):
        self.amount = float(amount)
        self.due = float(due)
        details = {"amount": self.amount, "due": self.due}
        if sale_number:
            details["sale_number"] = sale_number
        super().__init__(
            f"Payment of {self.amount} exceeds the outstanding due amount {self.due}",
            details
        )


class OverrefundError(EngineError):
    code = "OVERREFUND"
    status_code = 400

    def __init__(self, amount, remaining):
        self.amount = float(amount)
        self.remaining = float(remaining)
        super().__init__(
            f"Refund of {self.amount} exceeds the remaining refundable amount {self.remaining}",
            {"amount": self.amount, "remaining": self.remaining}
        )


class ConcurrencyConflictError(EngineError):
    """A conditional write matched nothing; retry from fresh state."""
    code = "CONCURRENCY_CONFLICT"
    status_code = 409

    def __init__(self, entity_type: str, entity_id: Any, message: Optional[str] = None):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(
            message or f"{entity_type} {entity_id} was modified concurrently. Reload and retry.",
            {"entity_type": entity_type, "id": str(entity_id)}
        )


class InvariantViolationError(EngineError):
    """Raised before commit when a mutation would break a stored invariant."""
    code = "INVARIANT_VIOLATION"
    status_code = 409

    def __init__(self, violation_type: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.violation_type = violation_type
        details = dict(details or {})
        details.setdefault("violation_type", violation_type)
        super().__init__(message, details)
