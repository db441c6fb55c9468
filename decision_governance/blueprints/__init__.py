"""
Decision Governance Engine
Blueprint registry.

Shared pieces for every blueprint:
    - register_error_handlers: engine exceptions → JSON + HTTP status
    - current_actor / actor_is_lead: caller identity from X-User / X-User-Role
    - paginate_query: limit/offset pagination from the query string
"""

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from decision_governance.core.exceptions import (
    ConflictingRequestError,
    CycleError,
    ForbiddenError,
    InUseError,
    NotFoundError,
    ResolutionFailedError,
    ValidationError,
)
from decision_governance.models import db
from decision_governance.models.organization import Organization

logger = logging.getLogger(__name__)

LEAD_ROLE = "lead"


def current_actor() -> str:
    return (request.headers.get("X-User") or "system").strip() or "system"


def actor_is_lead() -> bool:
    return (request.headers.get("X-User-Role") or "").strip().lower() == LEAD_ROLE


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def require_organization(org_id) -> Organization:
    org = db.session.get(Organization, org_id)
    if org is None:
        raise NotFoundError("Organization", org_id)
    return org


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def register_error_handlers(bp):
    """Attach the engine's exception → status mapping to a blueprint."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return jsonify({"error": str(error)}), 404

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return jsonify({"error": str(error), "details": error.details}), 422

    @bp.errorhandler(CycleError)
    def _handle_cycle(error: CycleError):
        return jsonify({"error": str(error), "path": error.path}), 409

    @bp.errorhandler(InUseError)
    def _handle_in_use(error: InUseError):
        return jsonify({"error": str(error), "referenced_by": error.referenced_by}), 409

    @bp.errorhandler(ConflictingRequestError)
    def _handle_conflicting_request(error: ConflictingRequestError):
        return jsonify({"error": str(error),
                        "pending_request_id": error.pending_request_id}), 409

    @bp.errorhandler(ForbiddenError)
    def _handle_forbidden(error: ForbiddenError):
        return jsonify({"error": str(error)}), 403

    @bp.errorhandler(ResolutionFailedError)
    def _handle_resolution_failed(error: ResolutionFailedError):
        return jsonify({"error": str(error), "retryable": True}), 500

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return jsonify({"error": "Internal server error"}), 500

    return bp


def scope_to_organization(bp):
    """Reject requests whose ``org_id`` URL segment names no organisation."""

    @bp.before_request
    def _check_organization():
        org_id = (request.view_args or {}).get("org_id")
        if org_id is not None:
            require_organization(org_id)

    return bp
