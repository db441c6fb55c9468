"""
Decision Governance Engine
Version/audit log model.

Models:
    - VersionEvent: immutable, append-only history of every decision mutation.

Each row stores an ``event_type`` tag and a JSON ``payload``. In Python the
payload is decoded into one frozen dataclass per event type (see
``EVENT_PAYLOADS``), so projections dispatch on the variant with ``match``
instead of poking at loose dict keys.

There is no update or delete path for this table.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from decision_governance.models import db
from decision_governance.models.base import OrgModel


# ── Constants ────────────────────────────────────────────────────────────────

class EventType(str, Enum):
    CREATED = "created"
    FIELD_UPDATED = "field_updated"
    GOVERNANCE_LOCK = "governance_lock"
    GOVERNANCE_UNLOCK = "governance_unlock"
    EDIT_REQUESTED = "edit_requested"
    EDIT_APPROVED = "edit_approved"
    EDIT_REJECTED = "edit_rejected"
    ASSUMPTION_CONFLICT_RESOLVED = "assumption_conflict_resolved"
    DECISION_CONFLICT_RESOLVED = "decision_conflict_resolved"
    RELATION_LINKED = "relation_linked"
    RELATION_UNLINKED = "relation_unlinked"
    HEALTH_EVALUATED = "health_evaluated"


class TriggeredBy(str, Enum):
    ASSUMPTION_STATUS_CHANGE = "assumption_status_change"
    CONSTRAINT_VIOLATION = "constraint_violation"
    CONFLICT_RESOLUTION = "conflict_resolution"
    MANUAL_REVIEW = "manual_review"
    DEPENDENCY_CHANGE = "dependency_change"


EVENT_TYPES = {e.value for e in EventType}
TRIGGERS = {t.value for t in TriggeredBy}

# Event types that carry a version_number.
VERSIONED_EVENTS = {
    EventType.CREATED.value,
    EventType.FIELD_UPDATED.value,
    EventType.EDIT_APPROVED.value,
}


# ═════════════════════════════════════════════════════════════════════════════
# Payload variants
# ═════════════════════════════════════════════════════════════════════════════

class _Payload:
    """Shared (de)serialisation for payload dataclasses."""

    event_type: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None):
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass(frozen=True)
class Created(_Payload):
    event_type = EventType.CREATED.value
    snapshot: dict = field(default_factory=dict)
    health_signal: int = 100
    lifecycle: str = "STABLE"
    governance_locked: bool = False


@dataclass(frozen=True)
class FieldUpdated(_Payload):
    """``changes`` is {field: {"old", "new"}}; ``snapshot`` is the full state after."""
    event_type = EventType.FIELD_UPDATED.value
    changes: dict = field(default_factory=dict)
    snapshot: dict = field(default_factory=dict)


@dataclass(frozen=True)
class GovernanceLock(_Payload):
    event_type = EventType.GOVERNANCE_LOCK.value
    justification: str = ""


@dataclass(frozen=True)
class GovernanceUnlock(_Payload):
    event_type = EventType.GOVERNANCE_UNLOCK.value
    justification: str = ""


@dataclass(frozen=True)
class EditRequested(_Payload):
    event_type = EventType.EDIT_REQUESTED.value
    edit_request_id: int = 0
    justification: str = ""
    proposed_changes: dict = field(default_factory=dict)


@dataclass(frozen=True)
class EditApproved(_Payload):
    """``snapshot`` is None when the approved request only touched links."""
    event_type = EventType.EDIT_APPROVED.value
    edit_request_id: int = 0
    changes: dict = field(default_factory=dict)
    snapshot: dict | None = None
    linked_assumptions: list = field(default_factory=list)
    unlinked_assumptions: list = field(default_factory=list)
    note: str = ""


@dataclass(frozen=True)
class EditRejected(_Payload):
    event_type = EventType.EDIT_REJECTED.value
    edit_request_id: int = 0
    note: str = ""


@dataclass(frozen=True)
class AssumptionConflictResolved(_Payload):
    event_type = EventType.ASSUMPTION_CONFLICT_RESOLVED.value
    conflict_id: int = 0
    action: str = ""
    assumption_a_id: int = 0
    assumption_b_id: int = 0
    status_changes: dict = field(default_factory=dict)
    notes: str = ""


@dataclass(frozen=True)
class DecisionConflictResolved(_Payload):
    """``lifecycle_change`` / ``lock_change`` are {"old", "new"} for this decision, or None."""
    event_type = EventType.DECISION_CONFLICT_RESOLVED.value
    conflict_id: int = 0
    action: str = ""
    decision_a_id: int = 0
    decision_b_id: int = 0
    lifecycle_change: dict | None = None
    lock_change: dict | None = None
    notes: str = ""


@dataclass(frozen=True)
class RelationLinked(_Payload):
    """``relation`` is "assumption" or "dependency"."""
    event_type = EventType.RELATION_LINKED.value
    relation: str = "assumption"
    related_id: int = 0
    reason: str = ""


@dataclass(frozen=True)
class RelationUnlinked(_Payload):
    event_type = EventType.RELATION_UNLINKED.value
    relation: str = "assumption"
    related_id: int = 0
    reason: str = ""


@dataclass(frozen=True)
class HealthEvaluated(_Payload):
    event_type = EventType.HEALTH_EVALUATED.value
    old_health: int = 0
    new_health: int = 0
    old_lifecycle: str = ""
    new_lifecycle: str = ""
    triggered_by: str = TriggeredBy.MANUAL_REVIEW.value
    trace: list = field(default_factory=list)
    reason: str = ""


EventPayload = (
    Created | FieldUpdated | GovernanceLock | GovernanceUnlock
    | EditRequested | EditApproved | EditRejected
    | AssumptionConflictResolved | DecisionConflictResolved
    | RelationLinked | RelationUnlinked | HealthEvaluated
)

EVENT_PAYLOADS: dict[str, type[_Payload]] = {
    cls.event_type: cls
    for cls in (
        Created, FieldUpdated, GovernanceLock, GovernanceUnlock,
        EditRequested, EditApproved, EditRejected,
        AssumptionConflictResolved, DecisionConflictResolved,
        RelationLinked, RelationUnlinked, HealthEvaluated,
    )
}


# ═════════════════════════════════════════════════════════════════════════════
# Model
# ═════════════════════════════════════════════════════════════════════════════

class VersionEvent(OrgModel):
    """
    Immutable history row for one decision mutation.

    ``version_number`` is set only for field-affecting events
    (created, field_updated, edit_approved with field changes).
    """

    __tablename__ = "version_events"
    __table_args__ = (
        db.Index("idx_version_events_decision", "decision_id", "id"),
        db.Index("idx_version_events_type", "event_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    decision_id = db.Column(
        db.Integer, db.ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False,
    )
    event_type = db.Column(db.String(40), nullable=False)
    version_number = db.Column(db.Integer, nullable=True)
    actor = db.Column(db.String(150), nullable=False, default="system")
    payload = db.Column(db.JSON, default=dict)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    def decoded(self) -> EventPayload:
        """Decode ``payload`` into its typed variant."""
        cls = EVENT_PAYLOADS.get(self.event_type)
        if cls is None:
            raise ValueError(f"Unknown event type: {self.event_type}")
        return cls.from_dict(self.payload)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "decision_id": self.decision_id,
            "event_type": self.event_type,
            "version_number": self.version_number,
            "actor": self.actor,
            "payload": self.payload or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<VersionEvent {self.id}: {self.event_type} on decision/{self.decision_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_event(
    decision,
    payload: EventPayload,
    *,
    actor: str = "system",
    version_number: int | None = None,
) -> VersionEvent:
    """
    Append a single version event for ``decision``. Uses ``flush`` so
    callers keep transaction control.

    Returns the (flushed) VersionEvent instance.
    """
    if payload.event_type in VERSIONED_EVENTS:
        if payload.event_type != EventType.EDIT_APPROVED.value and version_number is None:
            raise ValueError(f"{payload.event_type} events require a version_number")
    elif version_number is not None:
        raise ValueError(f"{payload.event_type} events carry no version_number")

    event = VersionEvent(
        organization_id=decision.organization_id,
        decision_id=decision.id,
        event_type=payload.event_type,
        version_number=version_number,
        actor=actor or "system",
        payload=_jsonable(payload.to_dict()),
    )
    db.session.add(event)
    db.session.flush()
    return event


def _jsonable(value: Any) -> Any:
    """JSON columns need string keys; ids used as keys are stringified."""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value
