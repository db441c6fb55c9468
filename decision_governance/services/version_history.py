"""
Version history projections.

Everything here is derived from the append-only ``version_events`` table:

  - timeline:          all events, newest first
  - versions:          field-affecting events with the snapshot after the change
  - relation history:  relation_linked / relation_unlinked
  - health history:    health_evaluated with health_change = new - old
  - replay:            folds events oldest first into the decision state

``verify_replay`` compares the replayed state with the live row; a mismatch
means some mutation path wrote state without an event carrying it.
"""

import logging

from decision_governance.models.audit import (
    Created,
    DecisionConflictResolved,
    EditApproved,
    EventType,
    FieldUpdated,
    GovernanceLock,
    GovernanceUnlock,
    HealthEvaluated,
    RelationLinked,
    RelationUnlinked,
    VersionEvent,
)
from decision_governance.models.decision import TRACKED_FIELDS, Decision
from decision_governance.utils.helpers import get_or_404

logger = logging.getLogger(__name__)

REPLAYED_FIELDS = (
    *TRACKED_FIELDS,
    "version", "health_signal", "lifecycle", "governance_locked",
)


def _events(organization_id, decision_id, *, newest_first=True, event_types=None):
    get_or_404(Decision, organization_id, decision_id)
    q = VersionEvent.query_for_org(organization_id).filter_by(decision_id=decision_id)
    if event_types:
        q = q.filter(VersionEvent.event_type.in_(event_types))
    order = VersionEvent.id.desc() if newest_first else VersionEvent.id.asc()
    return q.order_by(order).all()


def get_timeline(organization_id, decision_id, *, limit=None):
    """All events for a decision, newest first."""
    events = _events(organization_id, decision_id)
    if limit:
        events = events[:limit]
    return [e.to_dict() for e in events]


def get_versions(organization_id, decision_id):
    """Field-affecting events, newest first, each with the full snapshot after the change."""
    versions = []
    for event in _events(organization_id, decision_id):
        if event.version_number is None:
            continue
        match event.decoded():
            case Created(snapshot=snapshot):
                changes = {}
            case FieldUpdated(snapshot=snapshot, changes=changes):
                pass
            case EditApproved(snapshot=snapshot, changes=changes) if snapshot is not None:
                pass
            case _:
                continue
        versions.append({
            "version_number": event.version_number,
            "event_type": event.event_type,
            "actor": event.actor,
            "created_at": event.created_at.isoformat() if event.created_at else None,
            "changes": changes,
            "snapshot": snapshot,
        })
    return versions


def get_relation_history(organization_id, decision_id):
    """Link/unlink events for assumptions and dependencies, newest first."""
    events = _events(
        organization_id, decision_id,
        event_types=[EventType.RELATION_LINKED.value, EventType.RELATION_UNLINKED.value],
    )
    history = []
    for event in events:
        match event.decoded():
            case RelationLinked(relation=relation, related_id=related_id, reason=reason):
                action = "linked"
            case RelationUnlinked(relation=relation, related_id=related_id, reason=reason):
                action = "unlinked"
        history.append({
            "id": event.id,
            "action": action,
            "relation": relation,
            "related_id": related_id,
            "reason": reason,
            "actor": event.actor,
            "created_at": event.created_at.isoformat() if event.created_at else None,
        })
    return history


def get_health_history(organization_id, decision_id):
    """health_evaluated events, newest first, with the signed health delta."""
    history = []
    for event in _events(organization_id, decision_id,
                         event_types=[EventType.HEALTH_EVALUATED.value]):
        p = event.decoded()
        history.append({
            "id": event.id,
            "old_health": p.old_health,
            "new_health": p.new_health,
            "health_change": p.new_health - p.old_health,
            "old_lifecycle": p.old_lifecycle,
            "new_lifecycle": p.new_lifecycle,
            "triggered_by": p.triggered_by,
            "trace": p.trace,
            "reason": p.reason,
            "actor": event.actor,
            "created_at": event.created_at.isoformat() if event.created_at else None,
        })
    return history


# ═════════════════════════════════════════════════════════════════════════════
# Replay
# ═════════════════════════════════════════════════════════════════════════════

def apply_event(state: dict, event: VersionEvent) -> dict:
    """Fold one event into a replay state (mutates and returns ``state``)."""
    match event.decoded():
        case Created(snapshot=snapshot, health_signal=health, lifecycle=lifecycle,
                     governance_locked=locked):
            state.update(snapshot)
            state.update(version=event.version_number, health_signal=health,
                         lifecycle=lifecycle, governance_locked=locked)
        case FieldUpdated(snapshot=snapshot):
            state.update(snapshot)
            state["version"] = event.version_number
        case EditApproved(snapshot=snapshot) if snapshot is not None:
            state.update(snapshot)
            state["version"] = event.version_number
        case HealthEvaluated(new_health=health, new_lifecycle=lifecycle):
            state["health_signal"] = health
            state["lifecycle"] = lifecycle
        case GovernanceLock():
            state["governance_locked"] = True
        case GovernanceUnlock():
            state["governance_locked"] = False
        case DecisionConflictResolved(lifecycle_change=lifecycle_change, lock_change=lock_change):
            if lifecycle_change:
                state["lifecycle"] = lifecycle_change["new"]
            if lock_change:
                state["governance_locked"] = lock_change["new"]
        case _:
            pass
    return state


def replay_decision(organization_id, decision_id) -> dict:
    """Reconstruct a decision's state from its events alone."""
    state: dict = {}
    for event in _events(organization_id, decision_id, newest_first=False):
        apply_event(state, event)
    return {key: state.get(key) for key in REPLAYED_FIELDS}


def verify_replay(organization_id, decision_id) -> dict:
    """Compare replayed state with the live row."""
    decision = get_or_404(Decision, organization_id, decision_id)
    replayed = replay_decision(organization_id, decision_id)
    live = decision.snapshot()
    live.update(
        version=decision.version,
        health_signal=decision.health_signal,
        lifecycle=decision.lifecycle,
        governance_locked=decision.governance_locked,
    )
    differences = {
        key: {"replayed": replayed.get(key), "live": live.get(key)}
        for key in REPLAYED_FIELDS
        if replayed.get(key) != live.get(key)
    }
    if differences:
        logger.warning("Replay mismatch for decision %s: %s", decision_id, sorted(differences),
                       extra={"organization_id": organization_id, "decision_id": decision_id})
    return {"decision_id": decision_id, "consistent": not differences, "differences": differences}
