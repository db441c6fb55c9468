"""
Dependency Service — "source depends on target" edges between decisions.

The graph restricted to non-RETIRED decisions stays acyclic: a new edge
source → target is refused when target can already reach source. Graph
writes are serialised in-process so two edges closing a cycle together
cannot both pass the check.
"""

import logging
import threading

from decision_governance.core.exceptions import CycleError, ValidationError
from decision_governance.models import db
from decision_governance.models.audit import RelationLinked, RelationUnlinked, TriggeredBy, write_event
from decision_governance.models.decision import Decision, Dependency, Lifecycle
from decision_governance.services import conflict_detector
from decision_governance.services.decision_locks import decision_lock
from decision_governance.services.health_evaluator import evaluate_decision
from decision_governance.utils.helpers import atomic, get_or_404

logger = logging.getLogger(__name__)

_graph_lock = threading.Lock()


def find_cycle_path(organization_id, source_id, target_id):
    """
    Return the existing path target → ... → source that a new edge
    source → target would close, or None when the edge is safe.

    Iterative DFS over edges between non-RETIRED decisions.
    """
    if source_id == target_id:
        return [source_id]

    retired = {
        row.id for row in
        db.session.query(Decision.id)
        .filter(Decision.organization_id == organization_id,
                Decision.lifecycle == Lifecycle.RETIRED.value)
        .all()
    }

    parents = {target_id: None}
    stack = [target_id]
    while stack:
        current = stack.pop()
        if current == source_id:
            path = []
            while current is not None:
                path.append(current)
                current = parents[current]
            return list(reversed(path))

        rows = (
            db.session.query(Dependency.target_decision_id)
            .filter(Dependency.organization_id == organization_id,
                    Dependency.source_decision_id == current)
            .all()
        )
        for (next_id,) in rows:
            if next_id in retired or next_id in parents:
                continue
            parents[next_id] = current
            stack.append(next_id)
    return None


def list_dependencies(organization_id, decision_id=None):
    q = Dependency.query_for_org(organization_id)
    if decision_id is not None:
        q = q.filter(
            (Dependency.source_decision_id == decision_id)
            | (Dependency.target_decision_id == decision_id)
        )
    return q.order_by(Dependency.id).all()


def create_dependency(organization_id, source_id, target_id, *, actor="system"):
    """
    Add the edge "source depends on target".

    Raises:
        NotFoundError: either decision is missing from the organisation.
        ValidationError: duplicate edge, or a RETIRED endpoint.
        CycleError: self-edge or the edge would close a cycle.
    """
    source = get_or_404(Decision, organization_id, source_id)
    target = get_or_404(Decision, organization_id, target_id)
    if source_id == target_id:
        raise CycleError(source_id, target_id, path=[source_id])

    with _graph_lock, decision_lock([source_id, target_id]), atomic():
        if source.is_retired or target.is_retired:
            raise ValidationError("Retired decisions cannot take part in new dependencies",
                                  details={"source": source.lifecycle, "target": target.lifecycle})
        duplicate = Dependency.query_for_org(organization_id).filter_by(
            source_decision_id=source_id, target_decision_id=target_id,
        ).first()
        if duplicate is not None:
            raise ValidationError("Dependency already exists",
                                  details={"dependency_id": duplicate.id})

        path = find_cycle_path(organization_id, source_id, target_id)
        if path is not None:
            raise CycleError(source_id, target_id, path=path)

        dependency = Dependency(
            organization_id=organization_id,
            source_decision_id=source_id,
            target_decision_id=target_id,
        )
        db.session.add(dependency)
        db.session.flush()

        write_event(source, RelationLinked(relation="dependency", related_id=target_id), actor=actor)
        evaluate_decision(source, TriggeredBy.DEPENDENCY_CHANGE.value, actor=actor)

    logger.info("Dependency created: %s -> %s", source_id, target_id,
                extra={"organization_id": organization_id, "decision_id": source_id})
    conflict_detector.run_after_write(organization_id, decision_id=source_id)
    return dependency


def delete_dependency(organization_id, dependency_id, *, actor="system"):
    """Remove an edge and re-evaluate its source decision."""
    dependency = get_or_404(Dependency, organization_id, dependency_id)
    source_id, target_id = dependency.source_decision_id, dependency.target_decision_id

    with _graph_lock, decision_lock([source_id, target_id]), atomic():
        source = db.session.get(Decision, source_id)
        db.session.delete(dependency)
        db.session.flush()
        write_event(source, RelationUnlinked(relation="dependency", related_id=target_id), actor=actor)
        evaluate_decision(source, TriggeredBy.DEPENDENCY_CHANGE.value, actor=actor)

    logger.info("Dependency deleted: %s -> %s", source_id, target_id,
                extra={"organization_id": organization_id, "decision_id": source_id})
