"""
Conflict Detector.

Finds candidate pairs, asks the active classifier about each, and records
results above the confidence threshold. Scans read without locks; the
threshold and the "one open conflict per unordered pair" rule are checked
again at insert time, so re-running over an unchanged corpus inserts
nothing.

Detection passes of one organisation are serialised in-process; across
processes the partial unique index on open pairs is the final guard.

Entry points:
    detect_for_assumption(assumption)   neighbourhood of one assumption
    detect_for_decision(decision)       neighbourhood of one decision
    detect_conflicts(organization_id)   full-corpus pairwise scan
    run_after_write(...)                post-commit hook used by the write paths
"""

from __future__ import annotations

import logging
import threading
from itertools import combinations

from flask import current_app

from decision_governance.models import db
from decision_governance.models.conflict import (
    AssumptionConflict,
    DecisionConflict,
    canonical_pair,
)
from decision_governance.models.decision import (
    Assumption,
    AssumptionScope,
    Constraint,
    Decision,
    DecisionAssumption,
    Dependency,
    Lifecycle,
)
from decision_governance.services.conflict_classifier import (
    AssumptionClassifier,
    ClassificationResult,
    DecisionClassifier,
)
from decision_governance.services.notification import NotificationService
from decision_governance.utils.helpers import atomic

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.5

_assumption_classifier = AssumptionClassifier()
_decision_classifier = DecisionClassifier()

_org_guard = threading.Lock()
_org_locks: dict[int, threading.RLock] = {}


def set_assumption_classifier(classifier) -> None:
    """Install an alternative assumption classifier; None restores the default."""
    global _assumption_classifier
    _assumption_classifier = classifier or AssumptionClassifier()


def set_decision_classifier(classifier) -> None:
    """Install an alternative decision classifier; None restores the default."""
    global _decision_classifier
    _decision_classifier = classifier or DecisionClassifier()


def _organization_lock(organization_id) -> threading.RLock:
    with _org_guard:
        return _org_locks.setdefault(organization_id, threading.RLock())


def _threshold() -> float:
    return current_app.config.get("CONFLICT_CONFIDENCE_THRESHOLD", DEFAULT_THRESHOLD)


def _classify(classifier, a, b) -> ClassificationResult | None:
    first, second = (a, b) if a.id <= b.id else (b, a)
    return classifier.classify(first, second)


# ═════════════════════════════════════════════════════════════════════════════
# Insert path
# ═════════════════════════════════════════════════════════════════════════════

def _upsert(model, a_col, b_col, organization_id, a_id, b_id, result):
    """
    Insert a conflict for the canonical pair, or raise the confidence of the
    open one (its type is kept). Returns (conflict, created), or
    (None, False) below threshold.
    """
    if result is None or result.confidence < _threshold():
        if result is not None:
            logger.debug("Discarding %s pair (%s, %s) at confidence %.2f",
                         model.__name__, a_id, b_id, result.confidence)
        return None, False

    low, high = canonical_pair(a_id, b_id)
    existing = (
        model.query_for_org(organization_id)
        .filter(getattr(model, a_col) == low, getattr(model, b_col) == high)
        .filter(model.resolved_at.is_(None))
        .first()
    )
    if existing is not None:
        if result.confidence > existing.confidence_score:
            existing.confidence_score = result.confidence
            existing.explanation = result.explanation
            db.session.flush()
            logger.debug("Raised confidence of %r to %.2f", existing, result.confidence)
        return existing, False

    conflict = model(
        organization_id=organization_id,
        conflict_type=result.conflict_type,
        confidence_score=result.confidence,
        explanation=result.explanation,
        **{a_col: low, b_col: high},
    )
    db.session.add(conflict)
    db.session.flush()
    logger.info("Conflict detected: %r confidence=%.2f", conflict, result.confidence,
                extra={"organization_id": organization_id, "conflict_id": conflict.id})
    return conflict, True


def record_assumption_conflict(a, b, result):
    conflict, created = _upsert(
        AssumptionConflict, "assumption_a_id", "assumption_b_id",
        a.organization_id, a.id, b.id, result,
    )
    if created:
        affected = {link.decision for link in a.decision_links} | {link.decision for link in b.decision_links}
        for decision in sorted(affected, key=lambda d: d.id):
            if decision.is_retired:
                continue
            other = b if decision.id in a.decision_ids else a
            NotificationService.notify_conflict_detected(
                decision, conflict.conflict_type, conflict.confidence_score,
                conflict.explanation, f"assumption #{other.id}",
            )
    return conflict if created else None


def record_decision_conflict(a, b, result):
    conflict, created = _upsert(
        DecisionConflict, "decision_a_id", "decision_b_id",
        a.organization_id, a.id, b.id, result,
    )
    if created:
        for decision, other in ((a, b), (b, a)):
            NotificationService.notify_conflict_detected(
                decision, conflict.conflict_type, conflict.confidence_score,
                conflict.explanation, f'"{other.title}"',
            )
    return conflict if created else None


# ═════════════════════════════════════════════════════════════════════════════
# Neighbourhoods
# ═════════════════════════════════════════════════════════════════════════════

def assumption_neighbourhood(assumption) -> list:
    """Assumptions sharing a linked decision, plus every other UNIVERSAL one when universal."""
    decision_ids = assumption.decision_ids
    neighbour_ids = set()
    if decision_ids:
        rows = (
            db.session.query(DecisionAssumption.assumption_id)
            .filter(DecisionAssumption.decision_id.in_(decision_ids))
            .all()
        )
        neighbour_ids.update(r.assumption_id for r in rows)
    if assumption.is_universal:
        rows = (
            db.session.query(Assumption.id)
            .filter(Assumption.organization_id == assumption.organization_id,
                    Assumption.scope == AssumptionScope.UNIVERSAL.value)
            .all()
        )
        neighbour_ids.update(r.id for r in rows)
    neighbour_ids.discard(assumption.id)
    if not neighbour_ids:
        return []
    return (
        Assumption.query_for_org(assumption.organization_id)
        .filter(Assumption.id.in_(neighbour_ids))
        .order_by(Assumption.id)
        .all()
    )


def decision_neighbourhood(decision) -> list:
    """
    Non-RETIRED decisions sharing a dependency edge or a linked assumption
    with ``decision``. Constraints apply organisation-wide, so once the
    organisation has one every active decision shares it.
    """
    org = decision.organization_id
    active = Decision.query_for_org(org).filter(
        Decision.lifecycle != Lifecycle.RETIRED.value, Decision.id != decision.id,
    )

    if Constraint.query_for_org(org).first() is not None:
        return active.order_by(Decision.id).all()

    neighbour_ids = set()
    edges = Dependency.query_for_org(org).filter(
        (Dependency.source_decision_id == decision.id) | (Dependency.target_decision_id == decision.id)
    ).all()
    for edge in edges:
        neighbour_ids.update((edge.source_decision_id, edge.target_decision_id))

    assumption_ids = [link.assumption_id for link in decision.assumption_links]
    if assumption_ids:
        rows = (
            db.session.query(DecisionAssumption.decision_id)
            .filter(DecisionAssumption.assumption_id.in_(assumption_ids))
            .all()
        )
        neighbour_ids.update(r.decision_id for r in rows)

    neighbour_ids.discard(decision.id)
    if not neighbour_ids:
        return []
    return active.filter(Decision.id.in_(neighbour_ids)).order_by(Decision.id).all()


# ═════════════════════════════════════════════════════════════════════════════
# Detection passes (caller owns the transaction)
# ═════════════════════════════════════════════════════════════════════════════

def detect_for_assumption(assumption) -> list:
    """Classify ``assumption`` against its neighbourhood; returns new conflicts."""
    created = []
    for other in assumption_neighbourhood(assumption):
        result = _classify(_assumption_classifier, assumption, other)
        conflict = record_assumption_conflict(assumption, other, result)
        if conflict is not None:
            created.append(conflict)
    return created


def detect_for_decision(decision) -> list:
    """Classify ``decision`` against its neighbourhood; returns new conflicts."""
    if decision.is_retired:
        return []
    created = []
    for other in decision_neighbourhood(decision):
        result = _classify(_decision_classifier, decision, other)
        conflict = record_decision_conflict(decision, other, result)
        if conflict is not None:
            created.append(conflict)
    return created


def detect_conflicts(organization_id) -> dict:
    """
    Full-corpus pairwise scan of an organisation's assumptions and
    non-RETIRED decisions. Counts only newly inserted conflicts.
    """
    with _organization_lock(organization_id), atomic():
        assumptions = Assumption.query_for_org(organization_id).order_by(Assumption.id).all()
        decisions = (
            Decision.query_for_org(organization_id)
            .filter(Decision.lifecycle != Lifecycle.RETIRED.value)
            .order_by(Decision.id)
            .all()
        )

        assumption_count = 0
        for a, b in combinations(assumptions, 2):
            if record_assumption_conflict(a, b, _assumption_classifier.classify(a, b)) is not None:
                assumption_count += 1

        decision_count = 0
        for a, b in combinations(decisions, 2):
            if record_decision_conflict(a, b, _decision_classifier.classify(a, b)) is not None:
                decision_count += 1

    logger.info("Conflict scan finished: %d assumption, %d decision conflict(s) new",
                assumption_count, decision_count, extra={"organization_id": organization_id})
    return {
        "conflicts_detected": assumption_count + decision_count,
        "assumption_conflicts": assumption_count,
        "decision_conflicts": decision_count,
    }


def run_after_write(organization_id, *, assumption_id=None, decision_id=None) -> list:
    """
    Post-commit detection for a freshly written assumption or decision.

    Runs in its own transaction; a failure is logged and never undoes the
    write that triggered it.
    """
    if not current_app.config.get("CONFLICT_DETECTION_ON_WRITE", True):
        return []
    try:
        with _organization_lock(organization_id), atomic():
            if assumption_id is not None:
                assumption = Assumption.get_in_org(organization_id, assumption_id)
                return detect_for_assumption(assumption) if assumption else []
            decision = Decision.get_in_org(organization_id, decision_id)
            return detect_for_decision(decision) if decision else []
    except Exception:
        logger.exception("Conflict detection after write failed (assumption=%s decision=%s)",
                         assumption_id, decision_id, extra={"organization_id": organization_id})
        return []
