"""
Decision Service — the decision half of the entity store.

Every public function runs as one transaction (``atomic()``) under the
per-decision lock and writes its version events inside that transaction.
Post-commit conflict detection runs separately through
``conflict_detector.run_after_write``.

Internal helpers prefixed with ``apply_`` only flush; the governance
workflow reuses them so a direct edit and an approved edit request mutate
the decision in exactly the same way.
"""

import logging
from datetime import date, datetime, timezone

from flask import current_app

from decision_governance.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from decision_governance.models import db
from decision_governance.models.audit import (
    Created,
    HealthEvaluated,
    RelationLinked,
    RelationUnlinked,
    TriggeredBy,
    write_event,
)
from decision_governance.models.decision import (
    TRACKED_FIELDS,
    Assumption,
    Decision,
    DecisionAssumption,
    Lifecycle,
)
from decision_governance.models.notification import NotificationType
from decision_governance.services import conflict_detector
from decision_governance.services.decision_locks import decision_lock
from decision_governance.services.health_evaluator import evaluate_decision
from decision_governance.services.notification import NotificationService
from decision_governance.utils.helpers import atomic, get_or_404

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════════

def validate_fields(fields: dict) -> dict:
    """Check a tracked-field diff; returns it normalised."""
    if not isinstance(fields, dict):
        raise ValidationError("fields must be an object")
    unknown = sorted(set(fields) - set(TRACKED_FIELDS))
    if unknown:
        raise ValidationError(
            f"Unknown decision field(s): {', '.join(unknown)}",
            details={"allowed": list(TRACKED_FIELDS)},
        )
    clean = {}
    for name, value in fields.items():
        if name == "expiry_date":
            clean[name] = parse_expiry_date(value)
        elif name == "parameters":
            if value is None:
                value = {}
            if not isinstance(value, dict):
                raise ValidationError("parameters must be an object",
                                      details={"parameters": "not an object"})
            clean[name] = dict(value)
        else:
            if value is None:
                value = ""
            if not isinstance(value, str):
                raise ValidationError(f"{name} must be a string", details={name: "not a string"})
            clean[name] = value.strip() if name == "title" else value
    if "title" in clean and not clean["title"]:
        raise ValidationError("title is required", details={"title": "required"})
    return clean


def parse_expiry_date(value) -> str | None:
    """Accept an ISO date (or datetime) string; returns "YYYY-MM-DD" or None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text).isoformat()
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
        except ValueError:
            pass
    raise ValidationError("expiry_date must be an ISO date (YYYY-MM-DD)",
                          details={"expiry_date": value if isinstance(value, str) else "not a date"})


def parse_assumption_ids(value) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)) or not all(isinstance(i, int) and not isinstance(i, bool) for i in value):
        raise ValidationError("assumption id lists must contain integers")
    return list(dict.fromkeys(value))


# ═════════════════════════════════════════════════════════════════════════════
# Internal mutations (flush only)
# ═════════════════════════════════════════════════════════════════════════════

def _column_value(name, value):
    if name == "expiry_date" and value is not None:
        return date.fromisoformat(value)
    return value


def apply_fields(decision, fields: dict) -> dict:
    """
    Write changed tracked fields onto ``decision`` and bump its version.

    Returns {field: {"old", "new"}}; empty when every value already matches,
    in which case nothing is touched.
    """
    current = decision.snapshot()
    changes = {
        name: {"old": current[name], "new": value}
        for name, value in fields.items()
        if current[name] != value
    }
    if not changes:
        return {}
    for name, change in changes.items():
        setattr(decision, name, _column_value(name, change["new"]))
    decision.version = (decision.version or 1) + 1
    db.session.flush()
    return changes


def apply_link(decision, assumption, *, actor="system", reason=""):
    """Link an assumption to a decision, enforcing scope cardinality."""
    if decision.is_retired:
        raise ValidationError("Retired decisions cannot gain assumptions")
    if decision.id in assumption.decision_ids:
        raise ValidationError(
            f"Assumption {assumption.id} is already linked to decision {decision.id}"
        )
    if not assumption.is_universal and assumption.decision_ids:
        raise ValidationError(
            "A decision-specific assumption may be linked to one decision only",
            details={"assumption_id": assumption.id, "linked_to": assumption.decision_ids},
        )
    link = DecisionAssumption(decision=decision, assumption=assumption, link_reason=reason or "")
    db.session.add(link)
    db.session.flush()
    write_event(decision, RelationLinked(relation="assumption", related_id=assumption.id,
                                         reason=reason or ""), actor=actor)
    return link


def apply_unlink(decision, assumption, *, actor="system", reason=""):
    """Remove the link between a decision and an assumption."""
    link = db.session.get(DecisionAssumption, (decision.id, assumption.id))
    if link is None:
        raise NotFoundError("DecisionAssumption", f"{decision.id}/{assumption.id}",
                            decision.organization_id)
    db.session.delete(link)
    db.session.flush()
    db.session.expire(decision, ["assumption_links"])
    db.session.expire(assumption, ["decision_links"])
    write_event(decision, RelationUnlinked(relation="assumption", related_id=assumption.id,
                                           reason=reason or ""), actor=actor)


def load_assumptions(organization_id, ids) -> list:
    return [get_or_404(Assumption, organization_id, i) for i in ids]


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

def get_decision(organization_id, decision_id):
    return get_or_404(Decision, organization_id, decision_id)


def list_decisions(organization_id, *, lifecycle=None, category=None, include_retired=True):
    q = Decision.query_for_org(organization_id)
    if lifecycle:
        q = q.filter(Decision.lifecycle == lifecycle)
    elif not include_retired:
        q = q.filter(Decision.lifecycle != Lifecycle.RETIRED.value)
    if category:
        q = q.filter(Decision.category == category)
    return q.order_by(Decision.id)


# ═════════════════════════════════════════════════════════════════════════════
# Commands
# ═════════════════════════════════════════════════════════════════════════════

def create_decision(organization_id, data: dict, *, actor="system"):
    """
    Create a decision at version 1, health 100, STABLE; optionally link
    assumptions given in ``data["assumption_ids"]``.
    """
    fields = validate_fields({k: data[k] for k in TRACKED_FIELDS if k in data})
    if not fields.get("title"):
        raise ValidationError("title is required", details={"title": "required"})
    assumption_ids = parse_assumption_ids(data.get("assumption_ids"))

    with atomic():
        assumptions = load_assumptions(organization_id, assumption_ids)
        decision = Decision(
            organization_id=organization_id,
            title=fields["title"],
            description=fields.get("description", ""),
            category=fields.get("category", ""),
            parameters=fields.get("parameters", {}),
            expiry_date=_column_value("expiry_date", fields.get("expiry_date")),
            lifecycle=Lifecycle.STABLE.value,
            health_signal=100,
            version=1,
            governance_locked=False,
            created_by=actor,
        )
        db.session.add(decision)
        db.session.flush()

        with decision_lock([decision.id]):
            write_event(
                decision,
                Created(snapshot=decision.snapshot(), health_signal=100,
                        lifecycle=Lifecycle.STABLE.value, governance_locked=False),
                actor=actor, version_number=1,
            )
            for assumption in assumptions:
                apply_link(decision, assumption, actor=actor, reason="linked at creation")
            trigger = (TriggeredBy.ASSUMPTION_STATUS_CHANGE if assumptions
                       else TriggeredBy.CONSTRAINT_VIOLATION)
            evaluate_decision(decision, trigger.value, actor=actor)

    logger.info("Decision created: id=%s title=%r", decision.id, decision.title,
                extra={"organization_id": organization_id, "decision_id": decision.id})
    conflict_detector.run_after_write(organization_id, decision_id=decision.id)
    return decision


def link_assumption(organization_id, decision_id, assumption_id, *, actor="system", reason=""):
    """Link and re-evaluate with triggered_by=assumption_status_change."""
    decision = get_or_404(Decision, organization_id, decision_id)
    assumption = get_or_404(Assumption, organization_id, assumption_id)

    with decision_lock([decision_id]), atomic():
        apply_link(decision, assumption, actor=actor, reason=reason)
        evaluate_decision(decision, TriggeredBy.ASSUMPTION_STATUS_CHANGE.value, actor=actor)

    logger.info("Assumption %s linked to decision %s", assumption_id, decision_id,
                extra={"organization_id": organization_id, "decision_id": decision_id})
    conflict_detector.run_after_write(organization_id, assumption_id=assumption_id)
    return decision


def unlink_assumption(organization_id, decision_id, assumption_id, *, actor="system", reason=""):
    """Unlink and re-evaluate with triggered_by=assumption_status_change."""
    decision = get_or_404(Decision, organization_id, decision_id)
    assumption = get_or_404(Assumption, organization_id, assumption_id)

    with decision_lock([decision_id]), atomic():
        apply_unlink(decision, assumption, actor=actor, reason=reason)
        evaluate_decision(decision, TriggeredBy.ASSUMPTION_STATUS_CHANGE.value, actor=actor)

    logger.info("Assumption %s unlinked from decision %s", assumption_id, decision_id,
                extra={"organization_id": organization_id, "decision_id": decision_id})
    return decision


def retire_decision(organization_id, decision_id, *, actor="system", is_lead=False, reason=""):
    """
    Move a decision to RETIRED (terminal). Privileged only.

    Recorded as a ``health_evaluated`` event with triggered_by=manual_review
    so that replay reconstructs the lifecycle change.
    """
    if not is_lead:
        raise ForbiddenError("retire_decision", actor)
    decision = get_or_404(Decision, organization_id, decision_id)

    with decision_lock([decision_id]), atomic():
        if decision.is_retired:
            raise ValidationError(f"Decision {decision_id} is already retired")
        old_lifecycle = decision.lifecycle
        decision.lifecycle = Lifecycle.RETIRED.value
        write_event(
            decision,
            HealthEvaluated(
                old_health=decision.health_signal,
                new_health=decision.health_signal,
                old_lifecycle=old_lifecycle,
                new_lifecycle=Lifecycle.RETIRED.value,
                triggered_by=TriggeredBy.MANUAL_REVIEW.value,
                trace=[{
                    "step": "lifecycle_determination",
                    "passed": True,
                    "detail": f"Retired by {actor}" + (f": {reason}" if reason else ""),
                }],
                reason=reason or "",
            ),
            actor=actor,
        )
        NotificationService.notify_lifecycle_changed(decision, old_lifecycle, Lifecycle.RETIRED.value)
        NotificationService.dismiss_for_decision(
            organization_id, decision_id, NotificationType.NEEDS_REVIEW.value,
        )

    logger.info("Decision retired: id=%s by %s", decision_id, actor,
                extra={"organization_id": organization_id, "decision_id": decision_id})
    return decision


def mark_decision_reviewed(organization_id, decision_id, *, actor="system"):
    """
    Record a manual review: stamp ``last_reviewed_at``, re-derive health with
    triggered_by=manual_review and dismiss pending needs_review notifications.
    Decisions more than EXPIRY_GRACE_DAYS past their expiry date must be
    retired instead.
    """
    decision = get_or_404(Decision, organization_id, decision_id)

    with decision_lock([decision_id]), atomic():
        if decision.is_retired:
            raise ValidationError("Retired decisions are not reviewed")
        grace_days = current_app.config.get("EXPIRY_GRACE_DAYS", 30)
        days_left = decision.days_until_expiry(datetime.now(timezone.utc).date())
        if days_left is not None and days_left < -grace_days:
            raise ValidationError(
                f"Decision {decision_id} expired {-days_left} days ago and should be retired",
                details={"expiry_date": decision.expiry_date.isoformat()},
            )
        decision.last_reviewed_at = datetime.now(timezone.utc)
        evaluate_decision(decision, TriggeredBy.MANUAL_REVIEW.value, actor=actor)
        NotificationService.dismiss_for_decision(
            organization_id, decision_id, NotificationType.NEEDS_REVIEW.value,
        )

    logger.info("Decision reviewed: id=%s by %s", decision_id, actor,
                extra={"organization_id": organization_id, "decision_id": decision_id})
    return decision


# ═════════════════════════════════════════════════════════════════════════════
# On-demand evaluation
# ═════════════════════════════════════════════════════════════════════════════

def reevaluate_decision(organization_id, decision_id, *, actor="system", today=None):
    """
    Re-run the health evaluator on one decision now. Returns
    (decision, payload); payload is None when nothing changed.
    """
    decision = get_or_404(Decision, organization_id, decision_id)

    with decision_lock([decision_id]), atomic():
        if decision.is_retired:
            raise ValidationError("Retired decisions are not evaluated")
        payload = evaluate_decision(decision, TriggeredBy.CONSTRAINT_VIOLATION.value,
                                    actor=actor, today=today)

    logger.info("Decision %s re-evaluated on demand: %s", decision_id,
                "changed" if payload else "unchanged",
                extra={"organization_id": organization_id, "decision_id": decision_id})
    return decision, payload


def reevaluate_decisions(organization_id, decision_ids=None, *, actor="system", today=None) -> list:
    """
    Batch form of reevaluate_decision. ``decision_ids`` None means every
    non-RETIRED decision of the organisation; RETIRED ones in an explicit
    list are reported as skipped.
    """
    if decision_ids is None:
        ids = [
            row.id for row in
            db.session.query(Decision.id)
            .filter(Decision.organization_id == organization_id,
                    Decision.lifecycle != Lifecycle.RETIRED.value)
            .order_by(Decision.id)
        ]
    else:
        if not isinstance(decision_ids, (list, tuple)) or not all(
                isinstance(i, int) and not isinstance(i, bool) for i in decision_ids):
            raise ValidationError("decision_ids must be a list of integers")
        ids = list(dict.fromkeys(decision_ids))
        for decision_id in ids:
            get_or_404(Decision, organization_id, decision_id)

    results = []
    with decision_lock(ids), atomic():
        for decision_id in ids:
            decision = db.session.get(Decision, decision_id)
            if decision.is_retired:
                results.append({"decision_id": decision_id, "status": "skipped"})
                continue
            payload = evaluate_decision(decision, TriggeredBy.CONSTRAINT_VIOLATION.value,
                                        actor=actor, today=today)
            results.append({
                "decision_id": decision_id,
                "status": "changed" if payload else "unchanged",
                "health_signal": decision.health_signal,
                "lifecycle": decision.lifecycle,
            })

    logger.info("Batch evaluation of %s decision(s): %s changed", len(ids),
                sum(1 for r in results if r["status"] == "changed"),
                extra={"organization_id": organization_id})
    return results
