"""Error taxonomy for the routing engine.

Validation errors subclass ``ValueError`` and lookup failures subclass
``LookupError`` so the operator API can map whole families to HTTP status
codes. Systemic errors are plain ``Exception`` subclasses and propagate to the
caller, which decides whether to enqueue the message for retry.
"""

from __future__ import annotations


class RoutingValidationError(ValueError):
    """Raised synchronously when an input is missing or malformed."""


class MissingFieldError(RoutingValidationError):
    """A required field (message, organization, sender) was absent or blank."""

    def __init__(self, field_name: str) -> None:
        super().__init__(f"Missing required field: {field_name}")
        self.field_name = field_name


class InvalidIdentityError(RoutingValidationError):
    """An external identifier does not match the format of its declared type."""

    def __init__(self, identity_type: str, value: str) -> None:
        super().__init__(f"Invalid {identity_type} identifier: {value!r}")
        self.identity_type = identity_type
        self.value = value


class ConflictError(Exception):
    """Base class for writes rejected because of existing state."""


class IdentityConflictError(ConflictError):
    """Another user in the organization already owns the external identity."""

    def __init__(self, identity_type: str, value: str, owner_user_id: str) -> None:
        super().__init__(
            f"{identity_type} identifier {value!r} is already linked to user {owner_user_id}"
        )
        self.identity_type = identity_type
        self.value = value
        self.owner_user_id = owner_user_id


class AssignmentConflictError(ConflictError):
    """An unassigned message was already assigned to a different thread."""


class ThreadNotFoundError(LookupError):
    """No thread exists with the given id."""


class UnassignedMessageNotFoundError(LookupError):
    """No pending manual-assignment record exists with the given id."""


class DeadLetterNotFoundError(LookupError):
    """No dead-letter record exists with the given id."""


class ThreadCreationError(Exception):
    """Creating a fallback thread failed. Callers treat this as systemic."""


__all__ = [
    "AssignmentConflictError",
    "ConflictError",
    "DeadLetterNotFoundError",
    "IdentityConflictError",
    "InvalidIdentityError",
    "MissingFieldError",
    "RoutingValidationError",
    "ThreadCreationError",
    "ThreadNotFoundError",
    "UnassignedMessageNotFoundError",
]
