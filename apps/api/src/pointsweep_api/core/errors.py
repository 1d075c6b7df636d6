"""Error taxonomy shared by the settlement pipeline services and API."""

from __future__ import annotations

from typing import Any


class PipelineError(RuntimeError):
    """Base exception for pipeline failures surfaced to callers."""

    status_code: int = 500
    error_type: str = "pipeline_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "error": self.message, "error_type": self.error_type}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(PipelineError):
    """A required field is missing or malformed; nothing was mutated."""

    status_code = 400
    error_type = "validation_error"


class AuthenticationError(PipelineError):
    """Inbound caller could not be authenticated or its signature did not match."""

    status_code = 401
    error_type = "authentication_error"


class EligibilityError(PipelineError):
    """The entity exists but does not qualify for the requested transition."""

    status_code = 409
    error_type = "eligibility_error"


class NotFoundError(EligibilityError):
    """The referenced entity does not exist."""

    status_code = 404
    error_type = "not_found"


class ConcurrencyConflict(PipelineError):
    """A row already moved past the state the caller expected."""

    status_code = 409
    error_type = "concurrency_conflict"


class ExternalDeliveryError(PipelineError):
    """Network, timeout or non-2xx failure talking to a broker, merchant or bank."""

    status_code = 502
    error_type = "external_delivery_error"


class PersistenceError(PipelineError):
    """Storage layer failure; the surrounding transaction was rolled back."""

    status_code = 500
    error_type = "persistence_error"


def require(value: Any, field: str) -> Any:
    """Reject missing or blank identifiers before any query runs."""

    if value is None:
        raise ValidationError(f"{field} is required")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{field} is required")
    return value.strip() if isinstance(value, str) else value


__all__ = [
    "AuthenticationError",
    "ConcurrencyConflict",
    "EligibilityError",
    "ExternalDeliveryError",
    "NotFoundError",
    "PersistenceError",
    "PipelineError",
    "ValidationError",
    "require",
]
