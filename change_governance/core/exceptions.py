"""
Governance-wide exception hierarchy.

Every service in the workflow core raises one of these types so that the
calling layer (HTTP, CLI, scheduler) can map failures consistently without
importing service modules.

Taxonomy:
    ValidationError          malformed input (end before start, unknown vote)
    IllegalTransitionError   state-machine violation
    PreconditionFailedError  business rule not met (missing dates, pending
                             CAB conditions, segregation of duties)
    ConflictDetectedError    blackout / change / asset / engineer overlap
    NotFoundError            missing change, approval or contact
    ConflictError            unique-constraint duplicate

Usage:
    from change_governance.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ChangeRequest", resource_id=42)
    raise ValidationError("End date must be after start date")
"""


class GovernanceError(Exception):
    """Base class for all workflow-core errors.

    Args:
        message: Human-readable reason, safe to surface to the end user.
        details: Optional structured payload (conflicting ids, field errors).
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFoundError(GovernanceError):
    """Raised when a requested change, approval or contact does not exist.

    Args:
        resource: Human-readable model name (e.g. "ChangeRequest", "Approval").
        resource_id: The key that was looked up. Included in the message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(GovernanceError):
    """Raised when input is malformed, e.g. a window whose end precedes its start.

    Surfaced directly to the caller; never retried.
    """


class IllegalTransitionError(GovernanceError):
    """Raised when a status change is not in the legal transition table.

    Indicates a caller/UI bug or stale client state.

    Args:
        from_status: Current status of the change.
        to_status: Requested target status.
        message: Optional override for the default message.
    """

    def __init__(self, from_status: str, to_status: str, message: str | None = None) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message or f"Cannot transition from {from_status} to {to_status}",
            details={"from": from_status, "to": to_status},
        )


class PreconditionFailedError(GovernanceError):
    """Raised when a business rule blocks the operation.

    The caller must resolve the precondition (confirm CAB conditions, set a
    schedule, pick another voter) before retrying.
    """


class ConflictDetectedError(GovernanceError):
    """Raised when a proposed window collides with blackouts or other work.

    Args:
        message: Summary naming the conflicting entities.
        conflicts: One dict per conflicting entity.
        kind: "blackout" | "schedule" | "asset" | "engineer".
    """

    def __init__(self, message: str, conflicts: list[dict] | None = None, kind: str = "schedule") -> None:
        self.conflicts = conflicts or []
        self.kind = kind
        super().__init__(message, details={"kind": kind, "conflicts": self.conflicts})


class ConflictError(GovernanceError):
    """Raised when an operation would duplicate a unique record.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")
