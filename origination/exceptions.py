"""Error taxonomy for the origination core."""

from typing import Any, Dict, Optional


def _code_of(status: Any) -> str:
    return getattr(status, "code", str(status))


class OriginationError(Exception):
    """Base exception for all origination errors."""

    code = "ORIGINATION_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ValidationFailure(OriginationError, ValueError):
    """Recoverable failure caused by the caller's input or the application's state."""

    code = "VALIDATION_FAILED"


class InvalidTransitionError(ValidationFailure):
    """Raised when a status change is not in the transition table."""

    code = "INVALID_TRANSITION"

    def __init__(self, current_status: Any, attempted_status: Any, message: Optional[str] = None):
        self.current_status = current_status
        self.attempted_status = attempted_status
        current, attempted = _code_of(current_status), _code_of(attempted_status)
        super().__init__(
            message or f"Cannot change status from '{current}' to '{attempted}'",
            {"current_status": current, "attempted_status": attempted},
        )


class FieldValidationError(ValidationFailure):
    """Raised when a single field holds an unacceptable value."""

    code = "INVALID_FIELD"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message, {"field": field})


class MissingRequiredFieldError(FieldValidationError):
    """Raised when a required field is absent or blank."""

    code = "MISSING_REQUIRED_FIELD"

    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(field, message or f"Field '{field}' is required")


class InvalidCalculationInputError(FieldValidationError):
    """Raised before any computation when loan inputs are out of range."""

    code = "INVALID_CALCULATION_INPUT"


class ProductRuleError(ValidationFailure):
    """Raised when requested terms fall outside a product's rules."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        super().__init__(message, details)


class CounterOfferError(ValidationFailure):
    """Raised when a counter offer cannot be answered."""

    code = "COUNTER_OFFER_UNAVAILABLE"


class ApplicationNotEditableError(ValidationFailure):
    """Raised when an application can no longer be edited in its current status."""

    code = "APPLICATION_NOT_EDITABLE"


class ConcurrentModificationError(ValidationFailure):
    """Raised when an application changed after it was read (lost optimistic lock)."""

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, application_id: str, expected_version: int, actual_version: int):
        self.application_id = application_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Application {application_id} was modified concurrently",
            {"expected_version": expected_version, "actual_version": actual_version},
        )


class NotFoundError(OriginationError, LookupError):
    """Raised when an application or product id is unknown."""

    code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found",
                         {"entity_type": entity_type, "entity_id": entity_id})


class ConvergenceFailureError(OriginationError, ArithmeticError):
    """Raised when the CAT root-find does not converge. A service fault, not a user error."""

    code = "CONVERGENCE_FAILURE"

    def __init__(self, iterations: int, last_rate: Any = None):
        self.iterations = iterations
        self.last_rate = last_rate
        super().__init__(
            f"CAT did not converge after {iterations} iterations",
            {"iterations": iterations, "last_rate": str(last_rate)},
        )
