"""
Engine-wide exception hierarchy.

Services raise these types and never return error tuples for domain
failures. Blueprints register handlers against them once and get
consistent HTTP status codes everywhere.

Usage:
    from decision_governance.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Decision", resource_id=42)
    raise ValidationError("justification must be at least 10 characters",
                          details={"justification": "too short"})

Every multi-step operation rolls the session back before one of these
reaches the caller, so "operation rejected, entity state unchanged" holds
for all of them.
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the organisation.

    Used for BOTH genuinely missing records AND cross-organisation access
    attempts, so a caller cannot discover ids owned by another organisation.

    Args:
        resource: Human-readable entity name (e.g. "Decision", "EditRequest").
        resource_id: The PK that was looked up.
        organization_id: Optional, the scope that was enforced. For logs only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        organization_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.organization_id = organization_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if organization_id is not None:
            msg += f" (organization={organization_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is malformed, missing, or breaks a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class CycleError(Exception):
    """Raised when a new dependency edge would close a cycle.

    Maps to HTTP 409. ``path`` holds the existing chain from target back to
    source that the new edge would have closed.
    """

    def __init__(self, source_id: int, target_id: int, path: list[int] | None = None) -> None:
        self.source_id = source_id
        self.target_id = target_id
        self.path = path or []
        super().__init__(
            f"Dependency {source_id} -> {target_id} would create a cycle"
        )


class InUseError(Exception):
    """Raised when deleting an entity that is still referenced.

    Maps to HTTP 409.

    Args:
        resource: Entity name.
        resource_id: PK of the entity being deleted.
        referenced_by: Ids of the referencing decisions.
    """

    def __init__(self, resource: str, resource_id: int, referenced_by: list[int] | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.referenced_by = referenced_by or []
        super().__init__(
            f"{resource} id={resource_id} is still referenced by "
            f"{len(self.referenced_by)} decision(s)"
        )


class ConflictingRequestError(Exception):
    """Raised when a decision already has a pending edit request.

    Maps to HTTP 409. The caller resolves the pending request first.
    """

    def __init__(self, decision_id: int, pending_request_id: int) -> None:
        self.decision_id = decision_id
        self.pending_request_id = pending_request_id
        super().__init__(
            f"Decision id={decision_id} already has pending edit request "
            f"id={pending_request_id}"
        )


class ResolutionFailedError(Exception):
    """Raised when a conflict resolution or edit approval fails mid-way.

    Maps to HTTP 500. Nothing of the operation was committed; the caller may
    retry.
    """

    def __init__(self, operation: str, resource_id: int, reason: str = "") -> None:
        self.operation = operation
        self.resource_id = resource_id
        self.reason = reason
        msg = f"{operation} failed for id={resource_id}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ForbiddenError(Exception):
    """Raised when a non-privileged actor attempts a lead-only transition.

    Maps to HTTP 403.
    """

    def __init__(self, action: str, actor: str | None = None) -> None:
        self.action = action
        self.actor = actor
        super().__init__(f"'{action}' requires a privileged actor")
