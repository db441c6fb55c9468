"""
Decision Governance Engine
Entity Blueprint — assumptions, constraints and dependency edges.

All routes live under /api/v1/organizations/<org_id>.

Endpoints:
    Assumptions   GET/POST /assumptions, GET/PUT/DELETE /assumptions/<id>
    Constraints   GET/POST /constraints, GET/DELETE /constraints/<id>
    Violations    GET /constraint-violations[/<id>], POST /constraint-violations/<id>/resolve
    Dependencies  GET/POST /dependencies, DELETE /dependencies/<id>
"""

import logging

from flask import Blueprint, jsonify, request

from decision_governance.blueprints import (
    current_actor,
    json_body,
    paginate_query,
    register_error_handlers,
    scope_to_organization,
)
from decision_governance.core.exceptions import ValidationError
from decision_governance.services import (
    assumption_service,
    constraint_service,
    dependency_service,
)
from decision_governance.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

entity_bp = Blueprint("entity_bp", __name__, url_prefix="/api/v1/organizations/<int:org_id>")
register_error_handlers(entity_bp)
scope_to_organization(entity_bp)


# ═════════════════════════════════════════════════════════════════════════
# Assumptions
# ═════════════════════════════════════════════════════════════════════════

@entity_bp.route("/assumptions", methods=["GET"])
def list_assumptions(org_id):
    """Query params: status, scope, decision_id, limit, offset."""
    q = assumption_service.list_assumptions(
        org_id,
        status=request.args.get("status"),
        scope=request.args.get("scope"),
        decision_id=request.args.get("decision_id", type=int),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [a.to_dict() for a in items], "total": total})


@entity_bp.route("/assumptions", methods=["POST"])
def create_assumption(org_id):
    """Body: {description, status?, scope?, category?, parameters?, decision_ids?}"""
    assumption = assumption_service.create_assumption(org_id, json_body(), actor=current_actor())
    return jsonify(assumption.to_dict()), 201


@entity_bp.route("/assumptions/<int:assumption_id>", methods=["GET"])
def get_assumption(org_id, assumption_id):
    return jsonify(assumption_service.get_assumption(org_id, assumption_id).to_dict())


@entity_bp.route("/assumptions/<int:assumption_id>", methods=["PUT"])
def update_assumption(org_id, assumption_id):
    assumption = assumption_service.update_assumption(
        org_id, assumption_id, json_body(), actor=current_actor(),
    )
    return jsonify(assumption.to_dict())


@entity_bp.route("/assumptions/<int:assumption_id>", methods=["DELETE"])
def delete_assumption(org_id, assumption_id):
    """Query param: unlink_first=true removes every link before deleting."""
    assumption_service.delete_assumption(
        org_id, assumption_id,
        unlink_first=parse_bool(request.args.get("unlink_first")),
        actor=current_actor(),
    )
    return jsonify({"message": "Assumption deleted", "id": assumption_id})


# ═════════════════════════════════════════════════════════════════════════
# Constraints
# ═════════════════════════════════════════════════════════════════════════

@entity_bp.route("/constraints", methods=["GET"])
def list_constraints(org_id):
    return jsonify([c.to_dict() for c in constraint_service.list_constraints(org_id)])


@entity_bp.route("/constraints", methods=["POST"])
def create_constraint(org_id):
    """Body: {name, description?, constraint_type?, validation_config?}"""
    constraint = constraint_service.create_constraint(org_id, json_body())
    return jsonify(constraint.to_dict()), 201


@entity_bp.route("/constraints/<int:constraint_id>", methods=["GET"])
def get_constraint(org_id, constraint_id):
    return jsonify(constraint_service.get_constraint(org_id, constraint_id).to_dict())


@entity_bp.route("/constraints/<int:constraint_id>", methods=["DELETE"])
def delete_constraint(org_id, constraint_id):
    """Query param: force=true deletes while active decisions exist."""
    constraint_service.delete_constraint(
        org_id, constraint_id, force=parse_bool(request.args.get("force")),
    )
    return jsonify({"message": "Constraint deleted", "id": constraint_id})


# ── Recorded violations ──────────────────────────────────────────────────

@entity_bp.route("/constraint-violations", methods=["GET"])
def list_violations(org_id):
    """Query params: decision_id, constraint_id, include_resolved, limit, offset."""
    q = constraint_service.list_violations(
        org_id,
        decision_id=request.args.get("decision_id", type=int),
        constraint_id=request.args.get("constraint_id", type=int),
        include_resolved=parse_bool(request.args.get("include_resolved")),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [v.to_dict() for v in items], "total": total})


@entity_bp.route("/constraint-violations/<int:violation_id>", methods=["GET"])
def get_violation(org_id, violation_id):
    return jsonify(constraint_service.get_violation(org_id, violation_id).to_dict())


@entity_bp.route("/constraint-violations/<int:violation_id>/resolve", methods=["POST"])
def resolve_violation(org_id, violation_id):
    violation = constraint_service.resolve_violation(org_id, violation_id, actor=current_actor())
    return jsonify(violation.to_dict())


# ═════════════════════════════════════════════════════════════════════════
# Dependencies
# ═════════════════════════════════════════════════════════════════════════

@entity_bp.route("/dependencies", methods=["GET"])
def list_dependencies(org_id):
    deps = dependency_service.list_dependencies(
        org_id, decision_id=request.args.get("decision_id", type=int),
    )
    return jsonify([d.to_dict() for d in deps])


@entity_bp.route("/dependencies", methods=["POST"])
def create_dependency(org_id):
    """Body: {source_decision_id, target_decision_id} — source depends on target."""
    data = json_body()
    source_id = data.get("source_decision_id")
    target_id = data.get("target_decision_id")
    if not isinstance(source_id, int) or not isinstance(target_id, int):
        raise ValidationError(
            "source_decision_id and target_decision_id are required integers",
            details={"source_decision_id": source_id, "target_decision_id": target_id},
        )
    dependency = dependency_service.create_dependency(
        org_id, source_id, target_id, actor=current_actor(),
    )
    return jsonify(dependency.to_dict()), 201


@entity_bp.route("/dependencies/<int:dependency_id>", methods=["DELETE"])
def delete_dependency(org_id, dependency_id):
    dependency_service.delete_dependency(org_id, dependency_id, actor=current_actor())
    return jsonify({"message": "Dependency deleted", "id": dependency_id})
