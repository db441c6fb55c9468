"""
Decision Governance Engine
Organization Blueprint.

Organisations are the namespaces every engine entity lives in.

Endpoints:
    GET  /api/v1/organizations
    POST /api/v1/organizations
    GET  /api/v1/organizations/<org_id>
"""

import logging

from flask import Blueprint, jsonify

from decision_governance.blueprints import json_body, register_error_handlers, require_organization
from decision_governance.core.exceptions import ValidationError
from decision_governance.models import db
from decision_governance.models.organization import Organization
from decision_governance.utils.helpers import atomic

logger = logging.getLogger(__name__)

organization_bp = register_error_handlers(
    Blueprint("organization_bp", __name__, url_prefix="/api/v1")
)


@organization_bp.route("/organizations", methods=["GET"])
def list_organizations():
    orgs = Organization.query.order_by(Organization.id).all()
    return jsonify([o.to_dict() for o in orgs])


@organization_bp.route("/organizations", methods=["POST"])
def create_organization():
    data = json_body()
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    with atomic():
        org = Organization(name=name)
        db.session.add(org)
    logger.info("Organization created: id=%s", org.id, extra={"organization_id": org.id})
    return jsonify(org.to_dict()), 201


@organization_bp.route("/organizations/<int:org_id>", methods=["GET"])
def get_organization(org_id):
    return jsonify(require_organization(org_id).to_dict())
