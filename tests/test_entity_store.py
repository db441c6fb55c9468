"""
Decision Governance Engine
Tests — Entity store: decisions, assumptions, dependencies.

Covers:
    1. Decision creation and organisation scoping
    2. Assumption scope cardinality, linking and deletion
    3. Dependency graph (cycles, duplicates, retired nodes)
"""

import pytest

from decision_governance.core.exceptions import CycleError, InUseError, NotFoundError, ValidationError
from decision_governance.models import db
from decision_governance.models.audit import EventType, VersionEvent
from decision_governance.models.conflict import AssumptionConflict
from decision_governance.models.decision import Assumption, Decision, Dependency
from decision_governance.services import (
    assumption_service,
    conflict_resolver,
    decision_service,
    dependency_service,
)


def _events(decision_id, event_type):
    return (
        VersionEvent.query.filter_by(decision_id=decision_id, event_type=event_type)
        .order_by(VersionEvent.id).all()
    )


# ═══════════════════════════════════════════════════════════════════════════
#  1. Decisions
# ═══════════════════════════════════════════════════════════════════════════

class TestDecisions:

    def test_create_writes_created_event(self, org):
        decision = decision_service.create_decision(
            org.id, {"title": "  Move to cloud ", "category": "INFRA", "parameters": {"cost": 3}},
            actor="lena.lead",
        )
        assert decision.title == "Move to cloud"
        assert decision.created_by == "lena.lead"
        event = _events(decision.id, EventType.CREATED.value)[0]
        assert event.version_number == 1
        payload = event.decoded()
        assert payload.snapshot == {
            "title": "Move to cloud", "description": "", "category": "INFRA",
            "parameters": {"cost": 3}, "expiry_date": None,
        }
        assert payload.health_signal == 100
        assert payload.lifecycle == "STABLE"

    def test_create_requires_title(self, org):
        with pytest.raises(ValidationError):
            decision_service.create_decision(org.id, {"description": "no title"})

    def test_parameters_must_be_object(self, org):
        with pytest.raises(ValidationError):
            decision_service.create_decision(org.id, {"title": "X", "parameters": [1, 2]})

    def test_create_with_assumptions_links_them(self, org):
        a1 = assumption_service.create_assumption(org.id, {"description": "Prices hold"})
        a2 = assumption_service.create_assumption(
            org.id, {"description": "Supplier stays solvent", "status": "SHAKY"},
        )
        decision = decision_service.create_decision(
            org.id, {"title": "Sign supplier deal", "assumption_ids": [a1.id, a2.id]},
        )
        assert sorted(a.id for a in decision.assumptions) == [a1.id, a2.id]
        assert decision.health_signal == 75
        linked = [e.decoded().related_id for e in _events(decision.id, EventType.RELATION_LINKED.value)]
        assert linked == [a1.id, a2.id]

    def test_create_with_unknown_assumption_creates_nothing(self, org):
        with pytest.raises(NotFoundError):
            decision_service.create_decision(org.id, {"title": "X", "assumption_ids": [404]})
        assert Decision.query.count() == 0

    def test_other_organization_cannot_see_decision(self, org, other_org):
        decision = decision_service.create_decision(org.id, {"title": "Secret plan"})
        with pytest.raises(NotFoundError):
            decision_service.get_decision(other_org.id, decision.id)
        assert decision_service.list_decisions(other_org.id).all() == []

    def test_assumption_of_other_organization_cannot_be_linked(self, org, other_org):
        foreign = assumption_service.create_assumption(other_org.id, {"description": "Prices hold"})
        decision = decision_service.create_decision(org.id, {"title": "Plan"})
        with pytest.raises(NotFoundError):
            decision_service.link_assumption(org.id, decision.id, foreign.id)

    def test_list_filters(self, org):
        keep = decision_service.create_decision(org.id, {"title": "Keep", "category": "OPS"})
        gone = decision_service.create_decision(org.id, {"title": "Gone", "category": "OPS"})
        decision_service.retire_decision(org.id, gone.id, actor="boss", is_lead=True)

        assert [d.id for d in decision_service.list_decisions(org.id)] == [keep.id, gone.id]
        assert [d.id for d in decision_service.list_decisions(org.id, include_retired=False)] == [keep.id]
        assert [d.id for d in decision_service.list_decisions(org.id, lifecycle="RETIRED")] == [gone.id]
        assert decision_service.list_decisions(org.id, category="HR").all() == []


# ═══════════════════════════════════════════════════════════════════════════
#  2. Assumptions
# ═══════════════════════════════════════════════════════════════════════════

class TestAssumptions:

    def test_defaults(self, org):
        assumption = assumption_service.create_assumption(org.id, {"description": "Prices hold"})
        assert assumption.status == "VALID"
        assert assumption.scope == "DECISION_SPECIFIC"
        assert assumption.decision_ids == []

    @pytest.mark.parametrize("data", [
        {"description": ""},
        {"description": "x", "status": "MAYBE"},
        {"description": "x", "scope": "GLOBAL"},
        {"description": "x", "parameters": "cost=3"},
    ])
    def test_invalid_input(self, org, data):
        with pytest.raises(ValidationError):
            assumption_service.create_assumption(org.id, data)

    def test_specific_assumption_single_decision_on_create(self, org):
        d1 = decision_service.create_decision(org.id, {"title": "One"})
        d2 = decision_service.create_decision(org.id, {"title": "Two"})
        with pytest.raises(ValidationError):
            assumption_service.create_assumption(
                org.id, {"description": "Prices hold", "decision_ids": [d1.id, d2.id]},
            )
        assert Assumption.query.count() == 0

    def test_specific_assumption_single_decision_on_link(self, org):
        d1 = decision_service.create_decision(org.id, {"title": "One"})
        d2 = decision_service.create_decision(org.id, {"title": "Two"})
        a = assumption_service.create_assumption(
            org.id, {"description": "Prices hold", "decision_ids": [d1.id]},
        )
        with pytest.raises(ValidationError):
            decision_service.link_assumption(org.id, d2.id, a.id)
        assert db.session.get(Assumption, a.id).decision_ids == [d1.id]

    def test_universal_assumption_links_many(self, org):
        d1 = decision_service.create_decision(org.id, {"title": "One"})
        d2 = decision_service.create_decision(org.id, {"title": "Two"})
        a = assumption_service.create_assumption(
            org.id, {"description": "Prices hold", "scope": "UNIVERSAL", "decision_ids": [d1.id, d2.id]},
        )
        assert a.decision_ids == [d1.id, d2.id]

    def test_duplicate_link_rejected(self, org):
        d1 = decision_service.create_decision(org.id, {"title": "One"})
        a = assumption_service.create_assumption(
            org.id, {"description": "Prices hold", "scope": "UNIVERSAL", "decision_ids": [d1.id]},
        )
        with pytest.raises(ValidationError):
            decision_service.link_assumption(org.id, d1.id, a.id)

    def test_cannot_narrow_scope_of_shared_assumption(self, org):
        d1 = decision_service.create_decision(org.id, {"title": "One"})
        d2 = decision_service.create_decision(org.id, {"title": "Two"})
        a = assumption_service.create_assumption(
            org.id, {"description": "Prices hold", "scope": "UNIVERSAL", "decision_ids": [d1.id, d2.id]},
        )
        with pytest.raises(ValidationError):
            assumption_service.update_assumption(org.id, a.id, {"scope": "DECISION_SPECIFIC"})
        assert db.session.get(Assumption, a.id).scope == "UNIVERSAL"

    def test_link_and_unlink_reevaluate(self, org):
        decision = decision_service.create_decision(org.id, {"title": "One"})
        broken = assumption_service.create_assumption(
            org.id, {"description": "Prices hold", "status": "BROKEN"},
        )
        decision_service.link_assumption(org.id, decision.id, broken.id, reason="pricing risk")
        assert db.session.get(Decision, decision.id).health_signal == 0

        decision_service.unlink_assumption(org.id, decision.id, broken.id)
        decision = db.session.get(Decision, decision.id)
        assert decision.assumptions == []
        unlinked = _events(decision.id, EventType.RELATION_UNLINKED.value)
        assert unlinked[0].decoded().related_id == broken.id

    def test_unlink_missing_link(self, org):
        decision = decision_service.create_decision(org.id, {"title": "One"})
        a = assumption_service.create_assumption(org.id, {"description": "Prices hold"})
        with pytest.raises(NotFoundError):
            decision_service.unlink_assumption(org.id, decision.id, a.id)

    def test_retired_decision_cannot_gain_assumptions(self, org):
        decision = decision_service.create_decision(org.id, {"title": "One"})
        decision_service.retire_decision(org.id, decision.id, actor="boss", is_lead=True)
        a = assumption_service.create_assumption(org.id, {"description": "Prices hold"})
        with pytest.raises(ValidationError):
            decision_service.link_assumption(org.id, decision.id, a.id)

    def test_delete_in_use(self, org):
        decision = decision_service.create_decision(org.id, {"title": "One"})
        a = assumption_service.create_assumption(
            org.id, {"description": "Prices hold", "decision_ids": [decision.id]},
        )
        with pytest.raises(InUseError) as excinfo:
            assumption_service.delete_assumption(org.id, a.id)
        assert excinfo.value.referenced_by == [decision.id]
        assert db.session.get(Assumption, a.id) is not None

    def test_delete_with_unlink_first(self, org):
        decision = decision_service.create_decision(org.id, {"title": "One"})
        keep = assumption_service.create_assumption(
            org.id, {"description": "Staff stays", "decision_ids": [decision.id]},
        )
        doomed = assumption_service.create_assumption(
            org.id, {"description": "Prices hold", "status": "BROKEN", "decision_ids": [decision.id]},
        )
        assert db.session.get(Decision, decision.id).health_signal == 50

        assumption_service.delete_assumption(org.id, doomed.id, unlink_first=True)
        decision = db.session.get(Decision, decision.id)
        assert db.session.get(Assumption, doomed.id) is None
        assert [a.id for a in decision.assumptions] == [keep.id]
        assert decision.health_signal == 100
        reasons = [e.decoded().reason for e in _events(decision.id, EventType.RELATION_UNLINKED.value)]
        assert reasons == ["assumption deleted"]

    def test_delete_keeps_resolved_conflicts(self, org, scripted):
        scripted.assumptions.score("Prices hold", "Prices spike", 0.9)
        scripted.assumptions.score("Prices hold", "Prices drop", 0.8)
        decision = decision_service.create_decision(org.id, {"title": "One"})
        doomed = assumption_service.create_assumption(
            org.id, {"description": "Prices hold", "scope": "UNIVERSAL", "decision_ids": [decision.id]},
        )
        spike = assumption_service.create_assumption(
            org.id, {"description": "Prices spike", "scope": "UNIVERSAL"},
        )
        assumption_service.create_assumption(
            org.id, {"description": "Prices drop", "scope": "UNIVERSAL"},
        )
        assert AssumptionConflict.query.count() == 2
        settled = AssumptionConflict.query.filter(
            AssumptionConflict.assumption_b_id == spike.id).one()
        conflict_resolver.resolve_assumption_conflict(org.id, settled.id, "KEEP_BOTH",
                                                      actor="lena.lead")

        assumption_service.delete_assumption(org.id, doomed.id, unlink_first=True)

        remaining = AssumptionConflict.query.all()
        assert [c.id for c in remaining] == [settled.id]
        assert remaining[0].assumption_a_id is None
        assert remaining[0].assumption_b_id == spike.id
        assert remaining[0].resolution_action == "KEEP_BOTH"
        assert remaining[0].to_dict()["assumption_a_id"] is None

    def test_delete_linked_only_to_retired(self, org):
        decision = decision_service.create_decision(org.id, {"title": "One"})
        a = assumption_service.create_assumption(
            org.id, {"description": "Prices hold", "decision_ids": [decision.id]},
        )
        decision_service.retire_decision(org.id, decision.id, actor="boss", is_lead=True)
        assumption_service.delete_assumption(org.id, a.id)
        assert db.session.get(Assumption, a.id) is None

    def test_list_by_decision(self, org):
        decision = decision_service.create_decision(org.id, {"title": "One"})
        linked = assumption_service.create_assumption(
            org.id, {"description": "Prices hold", "decision_ids": [decision.id]},
        )
        assumption_service.create_assumption(org.id, {"description": "Unrelated"})
        found = assumption_service.list_assumptions(org.id, decision_id=decision.id).all()
        assert [a.id for a in found] == [linked.id]


# ═══════════════════════════════════════════════════════════════════════════
#  3. Dependencies
# ═══════════════════════════════════════════════════════════════════════════

class TestDependencies:

    @pytest.fixture()
    def chain(self, org):
        """a depends on b, b depends on c."""
        a = decision_service.create_decision(org.id, {"title": "A"})
        b = decision_service.create_decision(org.id, {"title": "B"})
        c = decision_service.create_decision(org.id, {"title": "C"})
        dependency_service.create_dependency(org.id, a.id, b.id)
        dependency_service.create_dependency(org.id, b.id, c.id)
        return a, b, c

    def test_edge_recorded_on_source(self, org, chain):
        a, b, _c = chain
        payload = _events(a.id, EventType.RELATION_LINKED.value)[0].decoded()
        assert payload.relation == "dependency"
        assert payload.related_id == b.id

    def test_cycle_refused_with_path(self, org, chain):
        a, b, c = chain
        with pytest.raises(CycleError) as excinfo:
            dependency_service.create_dependency(org.id, c.id, a.id)
        assert excinfo.value.path == [a.id, b.id, c.id]
        assert Dependency.query.count() == 2

    def test_self_edge_refused(self, org):
        a = decision_service.create_decision(org.id, {"title": "A"})
        with pytest.raises(CycleError):
            dependency_service.create_dependency(org.id, a.id, a.id)

    def test_duplicate_refused(self, org, chain):
        a, b, _c = chain
        with pytest.raises(ValidationError):
            dependency_service.create_dependency(org.id, a.id, b.id)

    def test_retired_nodes_do_not_close_cycles(self, org, chain):
        a, b, c = chain
        decision_service.retire_decision(org.id, b.id, actor="boss", is_lead=True)
        dependency_service.create_dependency(org.id, c.id, a.id)
        assert Dependency.query.count() == 3

    def test_retired_endpoint_refused(self, org, chain):
        a, _b, c = chain
        decision_service.retire_decision(org.id, c.id, actor="boss", is_lead=True)
        with pytest.raises(ValidationError):
            dependency_service.create_dependency(org.id, a.id, c.id)

    def test_delete_reopens_edge(self, org, chain):
        a, b, c = chain
        edge = Dependency.query.filter_by(source_decision_id=b.id, target_decision_id=c.id).one()
        dependency_service.delete_dependency(org.id, edge.id)
        dependency_service.create_dependency(org.id, c.id, a.id)
        assert len(dependency_service.list_dependencies(org.id, decision_id=c.id)) == 1

    def test_cross_organization_edge_refused(self, org, other_org):
        a = decision_service.create_decision(org.id, {"title": "A"})
        foreign = decision_service.create_decision(other_org.id, {"title": "B"})
        with pytest.raises(NotFoundError):
            dependency_service.create_dependency(org.id, a.id, foreign.id)

    def test_find_cycle_path_is_pure_lookup(self, org, chain):
        a, _b, c = chain
        assert dependency_service.find_cycle_path(org.id, a.id, c.id) is None
        assert dependency_service.find_cycle_path(org.id, c.id, a.id) is not None
