"""
Canonical exception hierarchy for the service layer.

Every service raises these types; blueprints register handlers against them
once and get consistent HTTP status codes everywhere:

    ValidationError → 422
    NotFoundError   → 404
    ConflictError   → 409
    anything else   → 500 (opaque body, full traceback in the log)

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Incident", resource_id=42)
    raise ValidationError("Title is required", details={"title": "required"})
"""


class NotFoundError(Exception):
    """Raised when a referenced incident, quarter, job or other record does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Incident", "Quarter").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint) — this
    exception signals that the data was well-formed but violated a business
    rule (disallowed transition, timestamp ordering, missing override, ...).
    Always recoverable by the caller correcting its input.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional structured breakdown for API responses
                 (field errors, allowed transitions, missing overrides).
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a uniqueness rule.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field (or rule) that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)
