"""
Decision Governance Engine
Conflict Blueprint — detection, review and resolution of conflicts.

All routes live under /api/v1/organizations/<org_id>.

Endpoints:
    POST   /conflicts/detect
    GET    /assumption-conflicts[/<id>]
    POST   /assumption-conflicts/<id>/resolve    body: {action, notes?}
    DELETE /assumption-conflicts/<id>            (false positive)
    GET    /decision-conflicts[/<id>]
    POST   /decision-conflicts/<id>/resolve      body: {action, notes?}
    DELETE /decision-conflicts/<id>              (false positive)
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
from decision_governance.models.conflict import AssumptionConflict, DecisionConflict
from decision_governance.services import conflict_detector, conflict_resolver
from decision_governance.utils.helpers import get_or_404, parse_bool

logger = logging.getLogger(__name__)

conflict_bp = Blueprint("conflict_bp", __name__, url_prefix="/api/v1/organizations/<int:org_id>")
register_error_handlers(conflict_bp)
scope_to_organization(conflict_bp)


def _action(data):
    action = (data.get("action") or "").strip().upper()
    if not action:
        raise ValidationError("action is required", details={"action": "required"})
    return action


@conflict_bp.route("/conflicts/detect", methods=["POST"])
def detect_conflicts(org_id):
    """Full-corpus scan; returns counts of newly recorded conflicts."""
    return jsonify(conflict_detector.detect_conflicts(org_id))


# ═════════════════════════════════════════════════════════════════════════
# Assumption conflicts
# ═════════════════════════════════════════════════════════════════════════

@conflict_bp.route("/assumption-conflicts", methods=["GET"])
def list_assumption_conflicts(org_id):
    """Query params: include_resolved (default false), limit, offset."""
    q = conflict_resolver.list_assumption_conflicts(
        org_id, include_resolved=parse_bool(request.args.get("include_resolved")),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [c.to_dict() for c in items], "total": total})


@conflict_bp.route("/assumption-conflicts/<int:conflict_id>", methods=["GET"])
def get_assumption_conflict(org_id, conflict_id):
    return jsonify(get_or_404(AssumptionConflict, org_id, conflict_id).to_dict())


@conflict_bp.route("/assumption-conflicts/<int:conflict_id>/resolve", methods=["POST"])
def resolve_assumption_conflict(org_id, conflict_id):
    data = json_body()
    conflict = conflict_resolver.resolve_assumption_conflict(
        org_id, conflict_id, _action(data),
        notes=data.get("notes", ""), actor=current_actor(),
    )
    return jsonify(conflict.to_dict())


@conflict_bp.route("/assumption-conflicts/<int:conflict_id>", methods=["DELETE"])
def dismiss_assumption_conflict(org_id, conflict_id):
    conflict_resolver.dismiss_conflict(org_id, "assumption", conflict_id, actor=current_actor())
    return jsonify({"message": "Conflict dismissed", "id": conflict_id})


# ═════════════════════════════════════════════════════════════════════════
# Decision conflicts
# ═════════════════════════════════════════════════════════════════════════

@conflict_bp.route("/decision-conflicts", methods=["GET"])
def list_decision_conflicts(org_id):
    """Query params: include_resolved (default false), decision_id, limit, offset."""
    q = conflict_resolver.list_decision_conflicts(
        org_id,
        include_resolved=parse_bool(request.args.get("include_resolved")),
        decision_id=request.args.get("decision_id", type=int),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [c.to_dict() for c in items], "total": total})


@conflict_bp.route("/decision-conflicts/<int:conflict_id>", methods=["GET"])
def get_decision_conflict(org_id, conflict_id):
    return jsonify(get_or_404(DecisionConflict, org_id, conflict_id).to_dict())


@conflict_bp.route("/decision-conflicts/<int:conflict_id>/resolve", methods=["POST"])
def resolve_decision_conflict(org_id, conflict_id):
    data = json_body()
    conflict = conflict_resolver.resolve_decision_conflict(
        org_id, conflict_id, _action(data),
        notes=data.get("notes", ""), actor=current_actor(),
    )
    return jsonify(conflict.to_dict())


@conflict_bp.route("/decision-conflicts/<int:conflict_id>", methods=["DELETE"])
def dismiss_decision_conflict(org_id, conflict_id):
    conflict_resolver.dismiss_conflict(org_id, "decision", conflict_id, actor=current_actor())
    return jsonify({"message": "Conflict dismissed", "id": conflict_id})
