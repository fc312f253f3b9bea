"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere. Collaborator services
(learner directory, institution directory) raise the same types so the
transfer engine can let them propagate unchanged.

Usage:
    from casebridge.core.exceptions import NotFoundError, InvalidStateError

    raise NotFoundError(resource="Transfer", resource_id=transfer_id)
    raise InvalidStateError("Transfer", "review", "approved", "must be pending")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist or is soft-deleted.

    Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "Transfer", "Learner").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: str | int | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ForbiddenError(Exception):
    """Raised when the caller's institution or role does not satisfy an access rule.

    Maps to HTTP 403. Unlike tenant-scoped lookups elsewhere, transfers are
    visible to two institutions, so a denied caller is told the record exists.
    """

    def __init__(self, message: str = "You do not have access to this resource") -> None:
        super().__init__(message)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint) — this
    exception signals that the data was well-formed but violated a business
    rule (e.g. an immutable field in an update, same source and destination).

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a uniqueness rule.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class InvalidStateError(Exception):
    """Raised when an operation is not permitted in the entity's current state.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        action: The attempted operation (e.g. "review", "complete").
        current_status: Status at the time of the attempt.
        reason: Optional extra explanation.
        details: Optional structured payload (e.g. failing checklist items).
    """

    def __init__(
        self,
        resource: str,
        action: str,
        current_status: str,
        reason: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.resource = resource
        self.action = action
        self.current_status = current_status
        self.details = details or {}
        msg = f"Cannot '{action}' {resource} (status={current_status})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
