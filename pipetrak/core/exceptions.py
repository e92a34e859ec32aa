"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere. The client-side engine
(coordinator, bulk orchestrator, gateways) uses the same hierarchy so a
caller can tell local validation failures apart from remote ones.

Usage:
    from pipetrak.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Component", resource_id=42)
    raise ValidationError("value must be between 0 and 100", details={"value": 150})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used both for genuinely missing records and for records that exist in a
    different project, so a caller cannot probe other projects by id.

    Args:
        resource: Human-readable entity name (e.g. "Component", "Milestone").
        resource_id: The PK that was looked up.
        project_id: Optional project scope that was enforced.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        project_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.project_id = project_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if project_id is not None:
            msg += f" (project={project_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation.

    Distinct from a malformed request body (caught in the blueprint): the
    data was well-formed but violated a rule, e.g. a percentage above 100 or
    completing a milestone whose gate is still open.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class BulkUpdateValidationError(ValidationError):
    """Raised before dispatch when a bulk request cannot be sent.

    Carries every validation error found; ``str(exc)`` is the first one, which
    is what the UI surfaces.
    """

    def __init__(self, errors: list[str], warnings: list[str] | None = None) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        first = self.errors[0] if self.errors else "Invalid bulk update request"
        super().__init__(first, details={"errors": self.errors, "warnings": self.warnings})


class TransportError(Exception):
    """Raised when a persistence call did not complete.

    Covers network failures, timeouts and 5xx responses once retries are
    exhausted. No partial result exists when this is raised.

    Args:
        message: Human-readable description of the last failure.
        status_code: Last HTTP status seen, or None for network-level errors.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class UpdateRejectedError(Exception):
    """Raised when the persistence layer answered but refused a single update.

    The message is the server's error text, unchanged.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class SequenceBlockedError(ValidationError):
    """Raised when a single milestone change violates the sequencing rules.

    Maps to HTTP 409 (the request is valid, the component's state forbids it).
    """
