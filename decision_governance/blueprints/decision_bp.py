"""
Decision Governance Engine
Decision Blueprint — decisions, governance workflow and history views.

All routes live under /api/v1/organizations/<org_id>. Caller identity comes
from the X-User header; X-User-Role: lead marks a privileged caller.

Endpoints:
    Decisions       GET/POST /decisions, GET/PUT /decisions/<id>
                    POST /decisions/<id>/retire, /review, /evaluate
                    POST /decisions/evaluate (batch)
    Links           POST/DELETE /decisions/<id>/assumptions/<aid>
    Governance      POST /decisions/<id>/lock, /unlock
                    GET/POST /decisions/<id>/edit-requests
                    GET /edit-requests[/<id>], POST /edit-requests/<id>/approve, /reject
    History         GET /decisions/<id>/timeline, /versions, /relations,
                        /health-history, /replay
"""

import logging

from flask import Blueprint, jsonify, request

from decision_governance.blueprints import (
    actor_is_lead,
    current_actor,
    json_body,
    paginate_query,
    register_error_handlers,
    scope_to_organization,
)
from decision_governance.models.decision import LIFECYCLES, TRACKED_FIELDS
from decision_governance.models.governance import EditRequest
from decision_governance.services import (
    decision_service,
    governance_service,
    version_history,
)
from decision_governance.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

decision_bp = Blueprint("decision_bp", __name__, url_prefix="/api/v1/organizations/<int:org_id>")
register_error_handlers(decision_bp)
scope_to_organization(decision_bp)


# ═════════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════════

@decision_bp.route("/decisions", methods=["GET"])
def list_decisions(org_id):
    """Query params: lifecycle, category, include_retired (default true), limit, offset."""
    lifecycle = request.args.get("lifecycle")
    if lifecycle and lifecycle not in LIFECYCLES:
        return jsonify({"error": f"Invalid lifecycle. Must be one of: {sorted(LIFECYCLES)}"}), 400
    q = decision_service.list_decisions(
        org_id,
        lifecycle=lifecycle,
        category=request.args.get("category"),
        include_retired=parse_bool(request.args.get("include_retired"), default=True),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [d.to_dict() for d in items], "total": total})


@decision_bp.route("/decisions", methods=["POST"])
def create_decision(org_id):
    """Body: {title, description?, category?, parameters?, expiry_date?, assumption_ids?}"""
    decision = decision_service.create_decision(org_id, json_body(), actor=current_actor())
    return jsonify(decision.to_dict(include_assumptions=True)), 201


@decision_bp.route("/decisions/<int:decision_id>", methods=["GET"])
def get_decision(org_id, decision_id):
    decision = decision_service.get_decision(org_id, decision_id)
    return jsonify(decision.to_dict(include_assumptions=True))


@decision_bp.route("/decisions/<int:decision_id>", methods=["PUT"])
def update_decision(org_id, decision_id):
    """
    Body: tracked fields plus ``justification`` for non-lead callers.

    Leads get 200 with the decision; everyone else gets 202 with the
    PENDING edit request.
    """
    data = json_body()
    fields = {k: data[k] for k in TRACKED_FIELDS if k in data}
    result = governance_service.update_decision(
        org_id, decision_id, fields,
        actor=current_actor(),
        is_lead=actor_is_lead(),
        justification=data.get("justification"),
    )
    if isinstance(result, EditRequest):
        return jsonify({"edit_request": result.to_dict()}), 202
    return jsonify(result.to_dict(include_assumptions=True))


@decision_bp.route("/decisions/<int:decision_id>/retire", methods=["POST"])
def retire_decision(org_id, decision_id):
    data = json_body()
    decision = decision_service.retire_decision(
        org_id, decision_id,
        actor=current_actor(), is_lead=actor_is_lead(), reason=data.get("reason", ""),
    )
    return jsonify(decision.to_dict())


@decision_bp.route("/decisions/<int:decision_id>/review", methods=["POST"])
def review_decision(org_id, decision_id):
    decision = decision_service.mark_decision_reviewed(org_id, decision_id, actor=current_actor())
    return jsonify(decision.to_dict())


@decision_bp.route("/decisions/<int:decision_id>/evaluate", methods=["POST"])
def evaluate_decision(org_id, decision_id):
    """Re-run health evaluation now; ``evaluation`` is null when nothing changed."""
    decision, payload = decision_service.reevaluate_decision(
        org_id, decision_id, actor=current_actor(),
    )
    return jsonify({
        "decision": decision.to_dict(),
        "changed": payload is not None,
        "evaluation": payload.to_dict() if payload else None,
    })


@decision_bp.route("/decisions/evaluate", methods=["POST"])
def evaluate_decisions(org_id):
    """Body: {decision_ids?}. Omitting decision_ids evaluates every non-retired decision."""
    results = decision_service.reevaluate_decisions(
        org_id, json_body().get("decision_ids"), actor=current_actor(),
    )
    return jsonify({
        "results": results,
        "changed": sum(1 for r in results if r["status"] == "changed"),
    })


# ── Assumption links ─────────────────────────────────────────────────────

@decision_bp.route("/decisions/<int:decision_id>/assumptions/<int:assumption_id>", methods=["POST"])
def link_assumption(org_id, decision_id, assumption_id):
    data = json_body()
    decision = decision_service.link_assumption(
        org_id, decision_id, assumption_id,
        actor=current_actor(), reason=data.get("reason", ""),
    )
    return jsonify(decision.to_dict(include_assumptions=True)), 201


@decision_bp.route("/decisions/<int:decision_id>/assumptions/<int:assumption_id>", methods=["DELETE"])
def unlink_assumption(org_id, decision_id, assumption_id):
    decision = decision_service.unlink_assumption(
        org_id, decision_id, assumption_id,
        actor=current_actor(), reason=request.args.get("reason", ""),
    )
    return jsonify(decision.to_dict(include_assumptions=True))


# ═════════════════════════════════════════════════════════════════════════
# Governance
# ═════════════════════════════════════════════════════════════════════════

@decision_bp.route("/decisions/<int:decision_id>/lock", methods=["POST"])
def lock_decision(org_id, decision_id):
    decision = governance_service.lock_decision(
        org_id, decision_id,
        justification=json_body().get("justification"),
        actor=current_actor(), is_lead=actor_is_lead(),
    )
    return jsonify(decision.to_dict())


@decision_bp.route("/decisions/<int:decision_id>/unlock", methods=["POST"])
def unlock_decision(org_id, decision_id):
    decision = governance_service.unlock_decision(
        org_id, decision_id,
        justification=json_body().get("justification"),
        actor=current_actor(), is_lead=actor_is_lead(),
    )
    return jsonify(decision.to_dict())


@decision_bp.route("/decisions/<int:decision_id>/edit-requests", methods=["POST"])
def request_edit(org_id, decision_id):
    """Body: {justification, proposed_changes: {fields?, link_assumptions?, unlink_assumptions?}}"""
    data = json_body()
    edit_request = governance_service.request_edit(
        org_id, decision_id, data.get("proposed_changes") or {},
        justification=data.get("justification"), actor=current_actor(),
    )
    return jsonify(edit_request.to_dict()), 201


@decision_bp.route("/decisions/<int:decision_id>/edit-requests", methods=["GET"])
def list_decision_edit_requests(org_id, decision_id):
    decision_service.get_decision(org_id, decision_id)
    q = governance_service.list_edit_requests(
        org_id, decision_id=decision_id, status=request.args.get("status"),
    )
    return jsonify([r.to_dict() for r in q.all()])


@decision_bp.route("/edit-requests", methods=["GET"])
def list_edit_requests(org_id):
    q = governance_service.list_edit_requests(org_id, status=request.args.get("status"))
    items, total = paginate_query(q)
    return jsonify({"items": [r.to_dict() for r in items], "total": total})


@decision_bp.route("/edit-requests/<int:edit_request_id>", methods=["GET"])
def get_edit_request(org_id, edit_request_id):
    return jsonify(governance_service.get_edit_request(org_id, edit_request_id).to_dict())


@decision_bp.route("/edit-requests/<int:edit_request_id>/approve", methods=["POST"])
def approve_edit(org_id, edit_request_id):
    edit_request = governance_service.approve_edit(
        org_id, edit_request_id,
        actor=current_actor(), is_lead=actor_is_lead(), note=json_body().get("note", ""),
    )
    return jsonify(edit_request.to_dict())


@decision_bp.route("/edit-requests/<int:edit_request_id>/reject", methods=["POST"])
def reject_edit(org_id, edit_request_id):
    edit_request = governance_service.reject_edit(
        org_id, edit_request_id,
        actor=current_actor(), is_lead=actor_is_lead(), note=json_body().get("note", ""),
    )
    return jsonify(edit_request.to_dict())


# ═════════════════════════════════════════════════════════════════════════
# History views
# ═════════════════════════════════════════════════════════════════════════

@decision_bp.route("/decisions/<int:decision_id>/timeline", methods=["GET"])
def get_timeline(org_id, decision_id):
    limit = request.args.get("limit", type=int)
    return jsonify(version_history.get_timeline(org_id, decision_id, limit=limit))


@decision_bp.route("/decisions/<int:decision_id>/versions", methods=["GET"])
def get_versions(org_id, decision_id):
    return jsonify(version_history.get_versions(org_id, decision_id))


@decision_bp.route("/decisions/<int:decision_id>/relations", methods=["GET"])
def get_relation_history(org_id, decision_id):
    return jsonify(version_history.get_relation_history(org_id, decision_id))


@decision_bp.route("/decisions/<int:decision_id>/health-history", methods=["GET"])
def get_health_history(org_id, decision_id):
    return jsonify(version_history.get_health_history(org_id, decision_id))


@decision_bp.route("/decisions/<int:decision_id>/replay", methods=["GET"])
def verify_replay(org_id, decision_id):
    return jsonify(version_history.verify_replay(org_id, decision_id))
