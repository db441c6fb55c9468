"""
Conflict Resolver.

Resolution of one conflict is a single transaction:
    1. stamp resolved_at / resolution_action / resolution_notes / resolved_by
    2. apply the action's entity mutations
    3. write an ``*_conflict_resolved`` event on every affected decision
    4. re-evaluate each affected decision (triggered_by=conflict_resolution)

The conflict row is re-read once the per-conflict lock and the locks of
every affected decision are held, so two callers resolving the same
conflict cannot both succeed. Domain errors (missing conflict, already
resolved, invalid action) are raised before anything is touched. Any
failure after that rolls the whole resolution back and surfaces as
ResolutionFailedError.

Assumption actions:
    VALIDATE_A      A → VALID, B → BROKEN
    VALIDATE_B      mirror of VALIDATE_A
    MERGE           both → BROKEN (the caller creates the replacement)
    DEPRECATE_BOTH  both → BROKEN
    KEEP_BOTH       no entity change

Decision actions:
    PRIORITIZE_A    B governance-locked
    PRIORITIZE_B    A governance-locked
    MODIFY_BOTH     both governance-locked
    DEPRECATE_BOTH  both RETIRED
    KEEP_BOTH       no entity change
"""

import logging
import threading
from datetime import datetime, timezone

from decision_governance.core.exceptions import NotFoundError, ResolutionFailedError, ValidationError
from decision_governance.models import db
from decision_governance.models.audit import (
    AssumptionConflictResolved,
    DecisionConflictResolved,
    TriggeredBy,
    write_event,
)
from decision_governance.models.conflict import (
    ASSUMPTION_RESOLUTIONS,
    DECISION_RESOLUTIONS,
    AssumptionConflict,
    AssumptionResolution,
    DecisionConflict,
    DecisionResolution,
)
from decision_governance.models.decision import AssumptionStatus, DecisionAssumption, Lifecycle
from decision_governance.services.decision_locks import decision_lock
from decision_governance.services.health_evaluator import evaluate_decision
from decision_governance.utils.helpers import atomic, get_or_404

logger = logging.getLogger(__name__)

_VALID = AssumptionStatus.VALID.value
_BROKEN = AssumptionStatus.BROKEN.value

_conflict_guard = threading.Lock()
_conflict_locks: dict[tuple, threading.Lock] = {}

# action → (new status of A, new status of B); None leaves it untouched
ASSUMPTION_EFFECTS = {
    AssumptionResolution.VALIDATE_A.value: (_VALID, _BROKEN),
    AssumptionResolution.VALIDATE_B.value: (_BROKEN, _VALID),
    AssumptionResolution.MERGE.value: (_BROKEN, _BROKEN),
    AssumptionResolution.DEPRECATE_BOTH.value: (_BROKEN, _BROKEN),
    AssumptionResolution.KEEP_BOTH.value: (None, None),
}

# action → (lock A, lock B, retire both)
DECISION_EFFECTS = {
    DecisionResolution.PRIORITIZE_A.value: (False, True, False),
    DecisionResolution.PRIORITIZE_B.value: (True, False, False),
    DecisionResolution.MODIFY_BOTH.value: (True, True, False),
    DecisionResolution.DEPRECATE_BOTH.value: (False, False, True),
    DecisionResolution.KEEP_BOTH.value: (False, False, False),
}


def _check_open(conflict, action, allowed):
    if not conflict.is_open:
        raise ValidationError(f"Conflict {conflict.id} is already resolved",
                              details={"resolved_at": conflict.resolved_at.isoformat()})
    if action not in allowed:
        raise ValidationError(
            f"Invalid resolution action. Must be one of: {sorted(allowed)}",
            details={"action": action},
        )


def _stamp(conflict, action, notes, actor):
    conflict.resolved_at = datetime.now(timezone.utc)
    conflict.resolution_action = action
    conflict.resolution_notes = notes or ""
    conflict.resolved_by = actor


def _conflict_lock(kind, conflict_id) -> threading.Lock:
    with _conflict_guard:
        return _conflict_locks.setdefault((kind, conflict_id), threading.Lock())


def _linked_decision_ids(assumption_ids) -> list[int]:
    rows = (
        db.session.query(DecisionAssumption.decision_id)
        .filter(DecisionAssumption.assumption_id.in_([i for i in assumption_ids if i is not None]))
        .distinct()
        .all()
    )
    return sorted(row.decision_id for row in rows)


def _reload(model, organization_id, conflict_id):
    """Re-read a conflict row under the caller's locks, overwriting the loaded copy."""
    q = model.query_for_org(organization_id).filter(model.id == conflict_id).populate_existing()
    if db.engine.dialect.name == "postgresql":
        q = q.with_for_update()
    conflict = q.first()
    if conflict is None:
        raise NotFoundError(model.__name__, conflict_id, organization_id)
    return conflict


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

def list_assumption_conflicts(organization_id, *, include_resolved=False):
    q = AssumptionConflict.query_for_org(organization_id)
    if not include_resolved:
        q = q.filter(AssumptionConflict.resolved_at.is_(None))
    return q.order_by(AssumptionConflict.confidence_score.desc(), AssumptionConflict.id)


def list_decision_conflicts(organization_id, *, include_resolved=False, decision_id=None):
    q = DecisionConflict.query_for_org(organization_id)
    if not include_resolved:
        q = q.filter(DecisionConflict.resolved_at.is_(None))
    if decision_id:
        q = q.filter((DecisionConflict.decision_a_id == decision_id)
                     | (DecisionConflict.decision_b_id == decision_id))
    return q.order_by(DecisionConflict.confidence_score.desc(), DecisionConflict.id)


# ═════════════════════════════════════════════════════════════════════════════
# Resolution
# ═════════════════════════════════════════════════════════════════════════════

def resolve_assumption_conflict(organization_id, conflict_id, action, *, notes="", actor="system"):
    """Resolve an assumption conflict; returns the resolved conflict."""
    conflict = get_or_404(AssumptionConflict, organization_id, conflict_id)
    pair = (conflict.assumption_a_id, conflict.assumption_b_id)

    with _conflict_lock("assumption", conflict_id):
        while True:
            ids = _linked_decision_ids(pair)
            with decision_lock(ids):
                if _linked_decision_ids(pair) != ids:
                    logger.debug("Links of conflict %s changed while locking; retrying", conflict_id)
                    continue
                conflict = _reload(AssumptionConflict, organization_id, conflict_id)
                _check_open(conflict, action, ASSUMPTION_RESOLUTIONS)
                _apply_assumption_resolution(organization_id, conflict, action, notes, actor)
                break

    logger.info("Assumption conflict %s resolved with %s by %s", conflict_id, action, actor,
                extra={"organization_id": organization_id, "conflict_id": conflict_id})
    return conflict


def _apply_assumption_resolution(organization_id, conflict, action, notes, actor):
    conflict_id = conflict.id
    a, b = conflict.assumption_a, conflict.assumption_b
    affected = sorted(
        {link.decision for link in a.decision_links} | {link.decision for link in b.decision_links},
        key=lambda d: d.id,
    )
    try:
        with atomic():
            _stamp(conflict, action, notes, actor)

            status_changes = {}
            for assumption, new_status in zip((a, b), ASSUMPTION_EFFECTS[action]):
                if new_status is not None and assumption.status != new_status:
                    status_changes[assumption.id] = {"old": assumption.status, "new": new_status}
                    assumption.status = new_status
            db.session.flush()

            payload = AssumptionConflictResolved(
                conflict_id=conflict_id,
                action=action,
                assumption_a_id=a.id,
                assumption_b_id=b.id,
                status_changes=status_changes,
                notes=notes or "",
            )
            for decision in affected:
                write_event(decision, payload, actor=actor)
            for decision in affected:
                evaluate_decision(decision, TriggeredBy.CONFLICT_RESOLUTION.value, actor=actor)
    except Exception as exc:
        logger.exception("Assumption conflict %s resolution failed", conflict_id,
                         extra={"organization_id": organization_id, "conflict_id": conflict_id})
        raise ResolutionFailedError("resolve_assumption_conflict", conflict_id, str(exc)) from exc


def resolve_decision_conflict(organization_id, conflict_id, action, *, notes="", actor="system"):
    """Resolve a decision conflict; returns the resolved conflict."""
    conflict = get_or_404(DecisionConflict, organization_id, conflict_id)
    pair = [conflict.decision_a_id, conflict.decision_b_id]

    with _conflict_lock("decision", conflict_id), decision_lock(pair):
        conflict = _reload(DecisionConflict, organization_id, conflict_id)
        _check_open(conflict, action, DECISION_RESOLUTIONS)
        _apply_decision_resolution(organization_id, conflict, action, notes, actor)

    logger.info("Decision conflict %s resolved with %s by %s", conflict_id, action, actor,
                extra={"organization_id": organization_id, "conflict_id": conflict_id})
    return conflict


def _apply_decision_resolution(organization_id, conflict, action, notes, actor):
    conflict_id = conflict.id
    a, b = conflict.decision_a, conflict.decision_b
    lock_a, lock_b, retire = DECISION_EFFECTS[action]
    try:
        with atomic():
            _stamp(conflict, action, notes, actor)

            for decision, lock in ((a, lock_a), (b, lock_b)):
                lifecycle_change = None
                lock_change = None
                if lock and not decision.governance_locked:
                    decision.governance_locked = True
                    decision.locked_at = datetime.now(timezone.utc)
                    decision.locked_by = actor
                    lock_change = {"old": False, "new": True}
                if retire and not decision.is_retired:
                    lifecycle_change = {"old": decision.lifecycle, "new": Lifecycle.RETIRED.value}
                    decision.lifecycle = Lifecycle.RETIRED.value
                write_event(
                    decision,
                    DecisionConflictResolved(
                        conflict_id=conflict_id,
                        action=action,
                        decision_a_id=a.id,
                        decision_b_id=b.id,
                        lifecycle_change=lifecycle_change,
                        lock_change=lock_change,
                        notes=notes or "",
                    ),
                    actor=actor,
                )
            db.session.flush()

            for decision in (a, b):
                evaluate_decision(decision, TriggeredBy.CONFLICT_RESOLUTION.value, actor=actor)
    except Exception as exc:
        logger.exception("Decision conflict %s resolution failed", conflict_id,
                         extra={"organization_id": organization_id, "conflict_id": conflict_id})
        raise ResolutionFailedError("resolve_decision_conflict", conflict_id, str(exc)) from exc


def dismiss_conflict(organization_id, kind, conflict_id, *, actor="system"):
    """Hard-delete an open or resolved conflict record. ``kind`` is "assumption" or "decision"."""
    models = {"assumption": AssumptionConflict, "decision": DecisionConflict}
    model = models.get(kind)
    if model is None:
        raise NotFoundError("Conflict kind", kind, organization_id)
    conflict = get_or_404(model, organization_id, conflict_id)
    with atomic():
        db.session.delete(conflict)
    logger.info("%s %s dismissed by %s", model.__name__, conflict_id, actor,
                extra={"organization_id": organization_id, "conflict_id": conflict_id})
