"""
Assumption Service — the assumption half of the entity store.

A status change re-evaluates every non-RETIRED decision linked to the
assumption (triggered_by=assumption_status_change). An assumption linked
to a non-RETIRED decision cannot be deleted unless the caller asks for the
links to be removed first.
"""

import logging

from decision_governance.core.exceptions import InUseError, ValidationError
from decision_governance.models import db
from decision_governance.models.audit import RelationUnlinked, TriggeredBy, write_event
from decision_governance.models.conflict import AssumptionConflict
from decision_governance.models.decision import (
    ASSUMPTION_SCOPES,
    ASSUMPTION_STATUSES,
    Assumption,
    AssumptionScope,
    AssumptionStatus,
    Decision,
)
from decision_governance.services import conflict_detector
from decision_governance.services.decision_locks import decision_lock
from decision_governance.services.decision_service import apply_link
from decision_governance.services.health_evaluator import (
    evaluate_decision,
    evaluate_decisions_for_assumption,
)
from decision_governance.utils.helpers import atomic, get_or_404

logger = logging.getLogger(__name__)

# Fields whose change can alter classification results.
_CONTENT_FIELDS = ("description", "scope", "category", "parameters")


def _validate(data: dict, *, partial=False) -> dict:
    clean = {}
    if "description" in data or not partial:
        description = (data.get("description") or "").strip()
        if not description:
            raise ValidationError("description is required", details={"description": "required"})
        clean["description"] = description
    if "status" in data or not partial:
        status = data.get("status") or AssumptionStatus.VALID.value
        if status not in ASSUMPTION_STATUSES:
            raise ValidationError(
                f"Invalid status. Must be one of: {sorted(ASSUMPTION_STATUSES)}",
                details={"status": status},
            )
        clean["status"] = status
    if "scope" in data or not partial:
        scope = data.get("scope") or AssumptionScope.DECISION_SPECIFIC.value
        if scope not in ASSUMPTION_SCOPES:
            raise ValidationError(
                f"Invalid scope. Must be one of: {sorted(ASSUMPTION_SCOPES)}",
                details={"scope": scope},
            )
        clean["scope"] = scope
    if "category" in data:
        clean["category"] = data.get("category") or ""
    if "parameters" in data:
        parameters = data.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise ValidationError("parameters must be an object",
                                  details={"parameters": "not an object"})
        clean["parameters"] = parameters
    return clean


def list_assumptions(organization_id, *, status=None, scope=None, decision_id=None):
    q = Assumption.query_for_org(organization_id)
    if status:
        q = q.filter(Assumption.status == status)
    if scope:
        q = q.filter(Assumption.scope == scope)
    if decision_id:
        q = q.filter(Assumption.decision_links.any(decision_id=decision_id))
    return q.order_by(Assumption.id)


def get_assumption(organization_id, assumption_id):
    return get_or_404(Assumption, organization_id, assumption_id)


def create_assumption(organization_id, data: dict, *, actor="system"):
    """
    Create an assumption, optionally linking it to ``data["decision_ids"]``
    (at most one for DECISION_SPECIFIC scope).
    """
    clean = _validate(data)
    decision_ids = list(dict.fromkeys(data.get("decision_ids") or []))
    if clean["scope"] == AssumptionScope.DECISION_SPECIFIC.value and len(decision_ids) > 1:
        raise ValidationError(
            "A decision-specific assumption may be linked to one decision only",
            details={"decision_ids": decision_ids},
        )
    decisions = [get_or_404(Decision, organization_id, i) for i in decision_ids]

    with decision_lock(decision_ids), atomic():
        assumption = Assumption(
            organization_id=organization_id,
            description=clean["description"],
            status=clean["status"],
            scope=clean["scope"],
            category=clean.get("category", ""),
            parameters=clean.get("parameters", {}),
        )
        db.session.add(assumption)
        db.session.flush()
        for decision in decisions:
            apply_link(decision, assumption, actor=actor, reason=data.get("link_reason", ""))
            evaluate_decision(decision, TriggeredBy.ASSUMPTION_STATUS_CHANGE.value, actor=actor)

    logger.info("Assumption created: id=%s scope=%s status=%s",
                assumption.id, assumption.scope, assumption.status,
                extra={"organization_id": organization_id})
    conflict_detector.run_after_write(organization_id, assumption_id=assumption.id)
    return assumption


def update_assumption(organization_id, assumption_id, data: dict, *, actor="system"):
    """
    Partial update. A status change re-evaluates the linked decisions.
    """
    assumption = get_or_404(Assumption, organization_id, assumption_id)
    clean = _validate(data, partial=True)

    with decision_lock(assumption.decision_ids), atomic():
        if (clean.get("scope") == AssumptionScope.DECISION_SPECIFIC.value
                and len(assumption.decision_ids) > 1):
            raise ValidationError(
                "Cannot narrow scope: assumption is linked to several decisions",
                details={"decision_ids": assumption.decision_ids},
            )
        changed = {k for k, v in clean.items() if getattr(assumption, k) != v}
        for name in changed:
            setattr(assumption, name, clean[name])
        db.session.flush()

        if "status" in changed:
            evaluate_decisions_for_assumption(
                assumption, TriggeredBy.ASSUMPTION_STATUS_CHANGE.value, actor=actor,
            )

    if changed:
        logger.info("Assumption updated: id=%s fields=%s", assumption_id, sorted(changed),
                    extra={"organization_id": organization_id})
    if changed & set(_CONTENT_FIELDS):
        conflict_detector.run_after_write(organization_id, assumption_id=assumption_id)
    return assumption


def delete_assumption(organization_id, assumption_id, *, unlink_first=False, actor="system"):
    """
    Delete an assumption. Its open conflicts are removed with it; resolved
    conflicts stay on record with the reference cleared.

    Raises:
        InUseError: still linked to a non-RETIRED decision and
            ``unlink_first`` is false.
    """
    assumption = get_or_404(Assumption, organization_id, assumption_id)

    with decision_lock(assumption.decision_ids), atomic():
        linked = sorted((link.decision for link in assumption.decision_links), key=lambda d: d.id)
        active_ids = [d.id for d in linked if not d.is_retired]
        if active_ids and not unlink_first:
            raise InUseError("Assumption", assumption_id, referenced_by=active_ids)
        open_conflicts = (
            AssumptionConflict.query_for_org(organization_id)
            .filter(AssumptionConflict.resolved_at.is_(None))
            .filter((AssumptionConflict.assumption_a_id == assumption_id)
                    | (AssumptionConflict.assumption_b_id == assumption_id))
            .all()
        )
        for conflict in open_conflicts:
            db.session.delete(conflict)
        for decision in linked:
            write_event(
                decision,
                RelationUnlinked(relation="assumption", related_id=assumption_id,
                                 reason="assumption deleted"),
                actor=actor,
            )
        db.session.delete(assumption)
        db.session.flush()
        for decision in linked:
            db.session.expire(decision, ["assumption_links"])
            evaluate_decision(decision, TriggeredBy.ASSUMPTION_STATUS_CHANGE.value, actor=actor)

    logger.info("Assumption deleted: id=%s unlinked=%s", assumption_id, [d.id for d in linked],
                extra={"organization_id": organization_id})
