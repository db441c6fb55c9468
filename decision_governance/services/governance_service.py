"""
Governance Workflow.

Two orthogonal state machines per decision:

    lock:          Unlocked <-> Locked              (lead only, justified)
    edit request:  NoPendingEdit -> PENDING -> APPROVED | REJECTED

Leads edit directly (``field_updated``) whatever the lock state. Everyone
else goes through an EditRequest; nothing on the decision changes until a
lead approves it, and then it changes exactly as a direct edit would.
At most one PENDING request exists per decision.
"""

import logging
from datetime import datetime, timezone

from decision_governance.core.exceptions import (
    ConflictingRequestError,
    ForbiddenError,
    ResolutionFailedError,
    ValidationError,
)
from decision_governance.models import db
from decision_governance.models.audit import (
    EditApproved,
    EditRejected,
    EditRequested,
    FieldUpdated,
    GovernanceLock,
    GovernanceUnlock,
    TriggeredBy,
    write_event,
)
from decision_governance.models.decision import Decision
from decision_governance.models.governance import (
    MIN_JUSTIFICATION_LENGTH,
    EditRequest,
    EditRequestStatus,
)
from decision_governance.services import conflict_detector
from decision_governance.services.decision_locks import decision_lock
from decision_governance.services.decision_service import (
    apply_fields,
    apply_link,
    apply_unlink,
    load_assumptions,
    parse_assumption_ids,
    validate_fields,
)
from decision_governance.services.health_evaluator import evaluate_decision
from decision_governance.services.notification import NotificationService
from decision_governance.utils.helpers import atomic, get_or_404

logger = logging.getLogger(__name__)


def _require_lead(action, actor, is_lead):
    if not is_lead:
        raise ForbiddenError(action, actor)


def _check_justification(justification, *, field="justification"):
    text = (justification or "").strip()
    if len(text) < MIN_JUSTIFICATION_LENGTH:
        raise ValidationError(
            f"{field} must be at least {MIN_JUSTIFICATION_LENGTH} characters",
            details={field: "too short"},
        )
    return text


def _normalise_proposal(proposed_changes) -> dict:
    """Validate a proposal and return it in canonical shape."""
    if not isinstance(proposed_changes, dict):
        raise ValidationError("proposed_changes must be an object")
    proposal = {
        "fields": validate_fields(proposed_changes.get("fields") or {}),
        "link_assumptions": parse_assumption_ids(proposed_changes.get("link_assumptions")),
        "unlink_assumptions": parse_assumption_ids(proposed_changes.get("unlink_assumptions")),
    }
    overlap = set(proposal["link_assumptions"]) & set(proposal["unlink_assumptions"])
    if overlap:
        raise ValidationError("An assumption cannot be linked and unlinked in one request",
                              details={"assumption_ids": sorted(overlap)})
    if not any(proposal.values()):
        raise ValidationError("proposed_changes is empty")
    return proposal


def _pending_request(organization_id, decision_id):
    return (
        EditRequest.query_for_org(organization_id)
        .filter_by(decision_id=decision_id, status=EditRequestStatus.PENDING.value)
        .first()
    )


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

def list_edit_requests(organization_id, *, decision_id=None, status=None):
    q = EditRequest.query_for_org(organization_id)
    if decision_id:
        q = q.filter_by(decision_id=decision_id)
    if status:
        q = q.filter_by(status=status)
    return q.order_by(EditRequest.created_at.desc(), EditRequest.id.desc())


def get_edit_request(organization_id, edit_request_id):
    return get_or_404(EditRequest, organization_id, edit_request_id)


# ═════════════════════════════════════════════════════════════════════════════
# Edits
# ═════════════════════════════════════════════════════════════════════════════

def update_decision(organization_id, decision_id, fields, *, actor="system", is_lead=False,
                    justification=None):
    """
    Change tracked fields of a decision.

    Leads write ``field_updated`` directly and get the decision back.
    Non-leads get a PENDING EditRequest back and the decision is untouched.
    """
    if not is_lead:
        return request_edit(organization_id, decision_id, {"fields": fields},
                            justification=justification, actor=actor)

    decision = get_or_404(Decision, organization_id, decision_id)
    clean = validate_fields(fields)

    with decision_lock([decision_id]), atomic():
        if decision.is_retired:
            raise ValidationError("Retired decisions cannot be edited")
        changes = apply_fields(decision, clean)
        if not changes:
            logger.debug("Update of decision %s changed nothing", decision_id)
            return decision
        write_event(
            decision,
            FieldUpdated(changes=changes, snapshot=decision.snapshot()),
            actor=actor, version_number=decision.version,
        )
        evaluate_decision(decision, TriggeredBy.CONSTRAINT_VIOLATION.value, actor=actor)

    logger.info("Decision %s updated to v%s: %s", decision_id, decision.version, sorted(changes),
                extra={"organization_id": organization_id, "decision_id": decision_id})
    conflict_detector.run_after_write(organization_id, decision_id=decision_id)
    return decision


def request_edit(organization_id, decision_id, proposed_changes, *, justification, actor="system"):
    """
    Open a PENDING edit request.

    Raises:
        ValidationError: justification shorter than 10 characters, or a
            malformed proposal.
        ConflictingRequestError: the decision already has a PENDING request.
    """
    text = _check_justification(justification)
    decision = get_or_404(Decision, organization_id, decision_id)
    proposal = _normalise_proposal(proposed_changes)

    with decision_lock([decision_id]), atomic():
        if decision.is_retired:
            raise ValidationError("Retired decisions cannot be edited")
        pending = _pending_request(organization_id, decision_id)
        if pending is not None:
            raise ConflictingRequestError(decision_id, pending.id)

        edit_request = EditRequest(
            organization_id=organization_id,
            decision_id=decision_id,
            requester=actor,
            justification=text,
            proposed_changes=proposal,
        )
        db.session.add(edit_request)
        db.session.flush()
        write_event(
            decision,
            EditRequested(edit_request_id=edit_request.id, justification=text,
                          proposed_changes=proposal),
            actor=actor,
        )
        NotificationService.notify_edit_requested(decision, edit_request)

    logger.info("Edit request %s opened on decision %s by %s", edit_request.id, decision_id, actor,
                extra={"organization_id": organization_id, "decision_id": decision_id,
                       "edit_request_id": edit_request.id})
    return edit_request


def approve_edit(organization_id, edit_request_id, *, actor="system", is_lead=False, note=""):
    """
    Apply a PENDING request exactly like a direct edit: fields first, then
    the link and unlink sets, in one transaction.

    Raises:
        ForbiddenError: caller is not a lead.
        ValidationError: the request is no longer PENDING, or the decision is RETIRED.
        ResolutionFailedError: applying the proposal failed; nothing committed.
    """
    _require_lead("approve_edit", actor, is_lead)
    edit_request = get_or_404(EditRequest, organization_id, edit_request_id)

    with decision_lock([edit_request.decision_id]):
        if not edit_request.is_pending:
            raise ValidationError(f"Edit request {edit_request_id} is already {edit_request.status}")
        decision = edit_request.decision
        if decision.is_retired:
            raise ValidationError("Retired decisions cannot be edited")
        _apply_approval(organization_id, edit_request, decision, actor=actor, note=note)

    logger.info("Edit request %s approved by %s", edit_request_id, actor,
                extra={"organization_id": organization_id, "decision_id": decision.id,
                       "edit_request_id": edit_request_id})
    conflict_detector.run_after_write(organization_id, decision_id=decision.id)
    return edit_request


def _apply_approval(organization_id, edit_request, decision, *, actor, note):
    request_id = edit_request.id
    proposal = edit_request.proposed_changes or {}
    try:
        with atomic():
            changes = apply_fields(decision, validate_fields(proposal.get("fields") or {}))

            to_link = load_assumptions(organization_id, proposal.get("link_assumptions") or [])
            to_unlink = load_assumptions(organization_id, proposal.get("unlink_assumptions") or [])
            for assumption in to_link:
                apply_link(decision, assumption, actor=actor,
                           reason=f"edit request #{edit_request.id}")
            for assumption in to_unlink:
                apply_unlink(decision, assumption, actor=actor,
                             reason=f"edit request #{edit_request.id}")

            edit_request.status = EditRequestStatus.APPROVED.value
            edit_request.decided_by = actor
            edit_request.decided_at = datetime.now(timezone.utc)
            edit_request.decision_note = note or ""

            write_event(
                decision,
                EditApproved(
                    edit_request_id=edit_request.id,
                    changes=changes,
                    snapshot=decision.snapshot() if changes else None,
                    linked_assumptions=[a.id for a in to_link],
                    unlinked_assumptions=[a.id for a in to_unlink],
                    note=note or "",
                ),
                actor=actor,
                version_number=decision.version if changes else None,
            )
            trigger = (TriggeredBy.ASSUMPTION_STATUS_CHANGE if to_link or to_unlink
                       else TriggeredBy.CONSTRAINT_VIOLATION)
            evaluate_decision(decision, trigger.value, actor=actor)
    except Exception as exc:
        logger.exception("Approval of edit request %s failed", request_id,
                         extra={"organization_id": organization_id,
                                "edit_request_id": request_id})
        raise ResolutionFailedError("approve_edit", request_id, str(exc)) from exc


def reject_edit(organization_id, edit_request_id, *, actor="system", is_lead=False, note=""):
    """Close a PENDING request as REJECTED; the decision is untouched."""
    _require_lead("reject_edit", actor, is_lead)
    edit_request = get_or_404(EditRequest, organization_id, edit_request_id)

    with decision_lock([edit_request.decision_id]), atomic():
        decision = edit_request.decision
        if not edit_request.is_pending:
            raise ValidationError(f"Edit request {edit_request_id} is already {edit_request.status}")
        edit_request.status = EditRequestStatus.REJECTED.value
        edit_request.decided_by = actor
        edit_request.decided_at = datetime.now(timezone.utc)
        edit_request.decision_note = note or ""
        write_event(decision, EditRejected(edit_request_id=edit_request.id, note=note or ""),
                    actor=actor)

    logger.info("Edit request %s rejected by %s", edit_request_id, actor,
                extra={"organization_id": organization_id, "decision_id": decision.id,
                       "edit_request_id": edit_request_id})
    return edit_request


# ═════════════════════════════════════════════════════════════════════════════
# Lock / unlock
# ═════════════════════════════════════════════════════════════════════════════

def lock_decision(organization_id, decision_id, *, justification, actor="system", is_lead=False):
    """Set governance_locked; lifecycle and health are untouched."""
    _require_lead("lock_decision", actor, is_lead)
    text = _check_justification(justification)
    decision = get_or_404(Decision, organization_id, decision_id)

    with decision_lock([decision_id]), atomic():
        if decision.governance_locked:
            raise ValidationError(f"Decision {decision_id} is already locked")
        decision.governance_locked = True
        decision.locked_at = datetime.now(timezone.utc)
        decision.locked_by = actor
        write_event(decision, GovernanceLock(justification=text), actor=actor)

    logger.info("Decision %s locked by %s", decision_id, actor,
                extra={"organization_id": organization_id, "decision_id": decision_id})
    return decision


def unlock_decision(organization_id, decision_id, *, justification, actor="system", is_lead=False):
    """Clear governance_locked; lifecycle and health are untouched."""
    _require_lead("unlock_decision", actor, is_lead)
    text = _check_justification(justification)
    decision = get_or_404(Decision, organization_id, decision_id)

    with decision_lock([decision_id]), atomic():
        if not decision.governance_locked:
            raise ValidationError(f"Decision {decision_id} is not locked")
        decision.governance_locked = False
        decision.locked_at = None
        decision.locked_by = None
        write_event(decision, GovernanceUnlock(justification=text), actor=actor)

    logger.info("Decision %s unlocked by %s", decision_id, actor,
                extra={"organization_id": organization_id, "decision_id": decision_id})
    return decision
