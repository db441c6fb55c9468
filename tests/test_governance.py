"""
Decision Governance Engine
Tests — Governance Workflow.

Covers:
    1. Direct edits by leads
    2. Edit requests (open, one-pending rule, validation)
    3. Approval / rejection, including rollback of a failed approval
    4. Governance lock / unlock
"""

import pytest

from decision_governance.core.exceptions import (
    ConflictingRequestError,
    ForbiddenError,
    ResolutionFailedError,
    ValidationError,
)
from decision_governance.models import db
from decision_governance.models.audit import EventType, VersionEvent
from decision_governance.models.decision import Decision
from decision_governance.models.governance import EditRequest
from decision_governance.models.notification import Notification, NotificationType
from decision_governance.services import assumption_service, decision_service, governance_service

JUSTIFICATION = "Market data changed last week"


def _events(decision_id, event_type):
    return (
        VersionEvent.query.filter_by(decision_id=decision_id, event_type=event_type)
        .order_by(VersionEvent.id).all()
    )


@pytest.fixture()
def decision(org):
    return decision_service.create_decision(
        org.id, {"title": "Adopt Kubernetes", "description": "Container platform", "category": "TECH"},
    )


def _request(org, decision, proposal, actor="mo.member"):
    return governance_service.request_edit(
        org.id, decision.id, proposal, justification=JUSTIFICATION, actor=actor,
    )


# ═══════════════════════════════════════════════════════════════════════════
#  1. Direct edits
# ═══════════════════════════════════════════════════════════════════════════

class TestDirectEdit:

    def test_lead_edit_bumps_version(self, org, decision):
        result = governance_service.update_decision(
            org.id, decision.id, {"title": "Adopt Nomad"}, actor="lena.lead", is_lead=True,
        )
        assert isinstance(result, Decision)
        assert result.title == "Adopt Nomad"
        assert result.version == 2

        event = _events(decision.id, EventType.FIELD_UPDATED.value)[0]
        assert event.version_number == 2
        assert event.actor == "lena.lead"
        payload = event.decoded()
        assert payload.changes == {"title": {"old": "Adopt Kubernetes", "new": "Adopt Nomad"}}
        assert payload.snapshot["title"] == "Adopt Nomad"
        assert payload.snapshot["description"] == "Container platform"

    def test_unchanged_values_write_nothing(self, org, decision):
        governance_service.update_decision(
            org.id, decision.id, {"title": "Adopt Kubernetes"}, actor="lena.lead", is_lead=True,
        )
        assert decision.version == 1
        assert _events(decision.id, EventType.FIELD_UPDATED.value) == []

    def test_lead_may_edit_locked_decision(self, org, decision):
        governance_service.lock_decision(org.id, decision.id, justification=JUSTIFICATION,
                                         actor="lena.lead", is_lead=True)
        result = governance_service.update_decision(
            org.id, decision.id, {"description": "Managed service"}, actor="lena.lead", is_lead=True,
        )
        assert result.description == "Managed service"

    def test_lead_cannot_edit_retired_decision(self, org, decision):
        decision_service.retire_decision(org.id, decision.id, actor="lena.lead", is_lead=True)
        with pytest.raises(ValidationError, match="Retired decisions cannot be edited"):
            governance_service.update_decision(
                org.id, decision.id, {"title": "Adopt Nomad"}, actor="lena.lead", is_lead=True,
            )
        decision = db.session.get(Decision, decision.id)
        assert decision.title == "Adopt Kubernetes"
        assert decision.version == 1
        assert _events(decision.id, "field_updated") == []

    def test_unknown_field_rejected(self, org, decision):
        with pytest.raises(ValidationError):
            governance_service.update_decision(
                org.id, decision.id, {"lifecycle": "STABLE"}, actor="lena.lead", is_lead=True,
            )

    def test_blank_title_rejected(self, org, decision):
        with pytest.raises(ValidationError):
            governance_service.update_decision(
                org.id, decision.id, {"title": "   "}, actor="lena.lead", is_lead=True,
            )

    def test_edit_reevaluates_constraints(self, org, decision):
        from decision_governance.services import constraint_service
        assumption_service.create_assumption(
            org.id, {"description": "Cluster runs on spare hardware", "decision_ids": [decision.id]},
        )
        constraint_service.create_constraint(org.id, {
            "name": "Spend ceiling",
            "validation_config": {"type": "budget_threshold", "field": "parameters.cost",
                                  "operator": "<=", "value": 1000},
        })
        # a missing cost already violates the rule
        assert db.session.get(Decision, decision.id).health_signal == 40

        governance_service.update_decision(
            org.id, decision.id, {"parameters": {"cost": 500}}, actor="lena.lead", is_lead=True,
        )
        assert db.session.get(Decision, decision.id).health_signal == 100

        governance_service.update_decision(
            org.id, decision.id, {"parameters": {"cost": 5000}}, actor="lena.lead", is_lead=True,
        )
        decision = db.session.get(Decision, decision.id)
        assert decision.health_signal == 40
        health = _events(decision.id, EventType.HEALTH_EVALUATED.value)[-1].decoded()
        assert health.triggered_by == "constraint_violation"


# ═══════════════════════════════════════════════════════════════════════════
#  2. Edit requests
# ═══════════════════════════════════════════════════════════════════════════

class TestEditRequests:

    def test_member_update_opens_request(self, org, decision):
        result = governance_service.update_decision(
            org.id, decision.id, {"title": "Adopt Nomad"},
            actor="mo.member", is_lead=False, justification=JUSTIFICATION,
        )
        assert isinstance(result, EditRequest)
        assert result.status == "PENDING"
        assert result.requester == "mo.member"
        assert result.proposed_changes["fields"] == {"title": "Adopt Nomad"}

        decision = db.session.get(Decision, decision.id)
        assert decision.title == "Adopt Kubernetes"
        assert decision.version == 1

        requested = _events(decision.id, EventType.EDIT_REQUESTED.value)
        assert len(requested) == 1
        assert requested[0].decoded().edit_request_id == result.id
        assert Notification.query.filter_by(
            decision_id=decision.id, type=NotificationType.EDIT_REQUESTED.value,
        ).count() == 1

    @pytest.mark.parametrize("justification", [None, "", "too short", "         x"])
    def test_short_justification_rejected(self, org, decision, justification):
        with pytest.raises(ValidationError):
            governance_service.request_edit(
                org.id, decision.id, {"fields": {"title": "Adopt Nomad"}},
                justification=justification, actor="mo.member",
            )
        assert EditRequest.query.count() == 0

    def test_second_pending_request_refused(self, org, decision):
        first = _request(org, decision, {"fields": {"title": "Adopt Nomad"}})
        with pytest.raises(ConflictingRequestError) as excinfo:
            _request(org, decision, {"fields": {"title": "Adopt Swarm"}}, actor="someone.else")
        assert excinfo.value.pending_request_id == first.id
        assert EditRequest.query.count() == 1

    def test_new_request_allowed_after_decision(self, org, decision):
        first = _request(org, decision, {"fields": {"title": "Adopt Nomad"}})
        governance_service.reject_edit(org.id, first.id, actor="lena.lead", is_lead=True)
        second = _request(org, decision, {"fields": {"title": "Adopt Swarm"}})
        assert second.status == "PENDING"

    def test_empty_proposal_rejected(self, org, decision):
        with pytest.raises(ValidationError):
            _request(org, decision, {})

    def test_link_and_unlink_same_assumption_rejected(self, org, decision):
        with pytest.raises(ValidationError):
            _request(org, decision, {"link_assumptions": [1], "unlink_assumptions": [1]})

    def test_retired_decision_cannot_be_edited(self, org, decision):
        decision_service.retire_decision(org.id, decision.id, actor="lena.lead", is_lead=True)
        with pytest.raises(ValidationError):
            _request(org, decision, {"fields": {"title": "Adopt Nomad"}})

    def test_list_filters(self, org, decision):
        req = _request(org, decision, {"fields": {"title": "Adopt Nomad"}})
        assert [r.id for r in governance_service.list_edit_requests(org.id, status="PENDING")] == [req.id]
        assert governance_service.list_edit_requests(org.id, status="APPROVED").all() == []
        assert governance_service.list_edit_requests(org.id, decision_id=decision.id).count() == 1


# ═══════════════════════════════════════════════════════════════════════════
#  3. Approval & rejection
# ═══════════════════════════════════════════════════════════════════════════

class TestApproval:

    def test_approval_applies_fields_and_links(self, org, decision):
        old = assumption_service.create_assumption(
            org.id, {"description": "Team knows containers", "decision_ids": [decision.id]},
        )
        new = assumption_service.create_assumption(
            org.id, {"description": "Ops budget is frozen", "scope": "UNIVERSAL", "status": "BROKEN"},
        )
        req = _request(org, decision, {
            "fields": {"title": "Adopt Nomad"},
            "link_assumptions": [new.id],
            "unlink_assumptions": [old.id],
        })

        approved = governance_service.approve_edit(
            org.id, req.id, actor="lena.lead", is_lead=True, note="agreed in review",
        )
        assert approved.status == "APPROVED"
        assert approved.decided_by == "lena.lead"
        assert approved.decision_note == "agreed in review"

        decision = db.session.get(Decision, decision.id)
        assert decision.title == "Adopt Nomad"
        assert decision.version == 2
        assert [a.id for a in decision.assumptions] == [new.id]
        assert decision.health_signal == 0
        assert decision.lifecycle == "INVALIDATED"

        event = _events(decision.id, EventType.EDIT_APPROVED.value)[0]
        assert event.version_number == 2
        payload = event.decoded()
        assert payload.linked_assumptions == [new.id]
        assert payload.unlinked_assumptions == [old.id]
        assert payload.snapshot["title"] == "Adopt Nomad"

        health = _events(decision.id, EventType.HEALTH_EVALUATED.value)[-1].decoded()
        assert health.triggered_by == "assumption_status_change"

    def test_link_only_approval_has_no_version(self, org, decision):
        extra = assumption_service.create_assumption(
            org.id, {"description": "Vendor support lasts five years", "scope": "UNIVERSAL"},
        )
        req = _request(org, decision, {"link_assumptions": [extra.id]})
        governance_service.approve_edit(org.id, req.id, actor="lena.lead", is_lead=True)

        event = _events(decision.id, EventType.EDIT_APPROVED.value)[0]
        assert event.version_number is None
        assert event.decoded().snapshot is None
        assert db.session.get(Decision, decision.id).version == 1

    def test_approval_equals_direct_edit(self, org):
        direct = decision_service.create_decision(org.id, {"title": "Plan A"})
        via_request = decision_service.create_decision(org.id, {"title": "Plan A"})
        change = {"title": "Plan B", "parameters": {"cost": 10}}

        governance_service.update_decision(org.id, direct.id, change, actor="lena.lead", is_lead=True)
        req = _request(org, via_request, {"fields": change})
        governance_service.approve_edit(org.id, req.id, actor="lena.lead", is_lead=True)

        direct = db.session.get(Decision, direct.id)
        via_request = db.session.get(Decision, via_request.id)
        assert direct.snapshot() == via_request.snapshot()
        assert direct.version == via_request.version
        assert direct.health_signal == via_request.health_signal

    def test_approve_requires_lead(self, org, decision):
        req = _request(org, decision, {"fields": {"title": "Adopt Nomad"}})
        with pytest.raises(ForbiddenError):
            governance_service.approve_edit(org.id, req.id, actor="mo.member", is_lead=False)
        assert db.session.get(EditRequest, req.id).status == "PENDING"

    def test_approve_twice_rejected(self, org, decision):
        req = _request(org, decision, {"fields": {"title": "Adopt Nomad"}})
        governance_service.approve_edit(org.id, req.id, actor="lena.lead", is_lead=True)
        with pytest.raises(ValidationError):
            governance_service.approve_edit(org.id, req.id, actor="lena.lead", is_lead=True)

    def test_failed_approval_rolls_back(self, org, decision):
        elsewhere = decision_service.create_decision(org.id, {"title": "Other plan"})
        taken = assumption_service.create_assumption(
            org.id, {"description": "Only for the other plan", "decision_ids": [elsewhere.id]},
        )
        req = _request(org, decision, {
            "fields": {"title": "Adopt Nomad"},
            "link_assumptions": [taken.id],
        })

        with pytest.raises(ResolutionFailedError) as excinfo:
            governance_service.approve_edit(org.id, req.id, actor="lena.lead", is_lead=True)
        assert excinfo.value.resource_id == req.id

        assert db.session.get(EditRequest, req.id).status == "PENDING"
        decision = db.session.get(Decision, decision.id)
        assert decision.title == "Adopt Kubernetes"
        assert decision.version == 1
        assert _events(decision.id, EventType.EDIT_APPROVED.value) == []

    def test_reject_leaves_decision_untouched(self, org, decision):
        req = _request(org, decision, {"fields": {"title": "Adopt Nomad"}})
        rejected = governance_service.reject_edit(
            org.id, req.id, actor="lena.lead", is_lead=True, note="not now",
        )
        assert rejected.status == "REJECTED"
        assert rejected.decision_note == "not now"
        assert db.session.get(Decision, decision.id).title == "Adopt Kubernetes"
        assert _events(decision.id, EventType.EDIT_REJECTED.value)[0].decoded().note == "not now"

    def test_reject_requires_lead(self, org, decision):
        req = _request(org, decision, {"fields": {"title": "Adopt Nomad"}})
        with pytest.raises(ForbiddenError):
            governance_service.reject_edit(org.id, req.id, actor="mo.member", is_lead=False)

    def test_reject_closed_request(self, org, decision):
        req = _request(org, decision, {"fields": {"title": "Adopt Nomad"}})
        governance_service.reject_edit(org.id, req.id, actor="lena.lead", is_lead=True)
        with pytest.raises(ValidationError):
            governance_service.reject_edit(org.id, req.id, actor="lena.lead", is_lead=True)


# ═══════════════════════════════════════════════════════════════════════════
#  4. Lock / unlock
# ═══════════════════════════════════════════════════════════════════════════

class TestLocking:

    def test_lock_and_unlock(self, org, decision):
        locked = governance_service.lock_decision(
            org.id, decision.id, justification=JUSTIFICATION, actor="lena.lead", is_lead=True,
        )
        assert locked.governance_locked is True
        assert locked.locked_by == "lena.lead"
        assert locked.lifecycle == "STABLE"
        assert locked.health_signal == 100

        unlocked = governance_service.unlock_decision(
            org.id, decision.id, justification=JUSTIFICATION, actor="lena.lead", is_lead=True,
        )
        assert unlocked.governance_locked is False
        assert unlocked.locked_by is None

        assert len(_events(decision.id, EventType.GOVERNANCE_LOCK.value)) == 1
        assert _events(decision.id, EventType.GOVERNANCE_UNLOCK.value)[0].decoded().justification \
            == JUSTIFICATION

    def test_lock_requires_lead(self, org, decision):
        with pytest.raises(ForbiddenError):
            governance_service.lock_decision(
                org.id, decision.id, justification=JUSTIFICATION, actor="mo.member", is_lead=False,
            )

    def test_lock_requires_justification(self, org, decision):
        with pytest.raises(ValidationError):
            governance_service.lock_decision(
                org.id, decision.id, justification="because", actor="lena.lead", is_lead=True,
            )
        assert db.session.get(Decision, decision.id).governance_locked is False

    def test_double_lock_rejected(self, org, decision):
        governance_service.lock_decision(org.id, decision.id, justification=JUSTIFICATION,
                                         actor="lena.lead", is_lead=True)
        with pytest.raises(ValidationError):
            governance_service.lock_decision(org.id, decision.id, justification=JUSTIFICATION,
                                             actor="lena.lead", is_lead=True)

    def test_unlock_unlocked_rejected(self, org, decision):
        with pytest.raises(ValidationError):
            governance_service.unlock_decision(org.id, decision.id, justification=JUSTIFICATION,
                                               actor="lena.lead", is_lead=True)

    def test_member_request_allowed_while_locked(self, org, decision):
        governance_service.lock_decision(org.id, decision.id, justification=JUSTIFICATION,
                                         actor="lena.lead", is_lead=True)
        req = _request(org, decision, {"fields": {"title": "Adopt Nomad"}})
        assert req.status == "PENDING"
