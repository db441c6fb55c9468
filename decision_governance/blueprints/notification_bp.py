"""
Decision Governance Engine
Notification & Scheduling Blueprint.

Provides:
    - Notification listing, read marking     /api/v1/organizations/<org_id>/notifications
    - Scheduled job management (list, status, trigger, toggle)   /api/v1/scheduler/jobs
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from decision_governance.blueprints import json_body, register_error_handlers, require_organization
from decision_governance.models.notification import NOTIFICATION_TYPES
from decision_governance.services.notification import NotificationService
from decision_governance.services.scheduler_service import SchedulerService
from decision_governance.utils.helpers import atomic, parse_bool

logger = logging.getLogger(__name__)

notification_bp = register_error_handlers(
    Blueprint("notification_bp", __name__, url_prefix="/api/v1")
)


# ═══════════════════════════════════════════════════════════════════════════
#  NOTIFICATIONS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/organizations/<int:org_id>/notifications", methods=["GET"])
def list_notifications(org_id):
    """Query params: unread_only, include_dismissed, type, decision_id, limit, offset."""
    require_organization(org_id)
    type_ = request.args.get("type")
    if type_ and type_ not in NOTIFICATION_TYPES:
        return jsonify({"error": f"Invalid type. Must be one of: {sorted(NOTIFICATION_TYPES)}"}), 400
    items, total = NotificationService.list_for_organization(
        org_id,
        unread_only=parse_bool(request.args.get("unread_only")),
        include_dismissed=parse_bool(request.args.get("include_dismissed")),
        type=type_,
        decision_id=request.args.get("decision_id", type=int),
        limit=min(request.args.get("limit", 50, type=int), 500),
        offset=max(request.args.get("offset", 0, type=int), 0),
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(org_id),
    })


@notification_bp.route("/organizations/<int:org_id>/notifications/unread-count", methods=["GET"])
def unread_count(org_id):
    require_organization(org_id)
    return jsonify({"unread_count": NotificationService.unread_count(org_id)})


@notification_bp.route("/organizations/<int:org_id>/notifications/<int:notification_id>/read",
                       methods=["PATCH"])
def mark_read(org_id, notification_id):
    require_organization(org_id)
    with atomic():
        notif = NotificationService.mark_read(org_id, notification_id)
    return jsonify(notif.to_dict())


@notification_bp.route("/organizations/<int:org_id>/notifications/read-all", methods=["POST"])
def mark_all_read(org_id):
    require_organization(org_id)
    with atomic():
        count = NotificationService.mark_all_read(org_id)
    return jsonify({"marked_read": count})


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULED JOBS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/scheduler/jobs", methods=["GET"])
def list_jobs():
    """List all registered jobs with their DB status."""
    SchedulerService.ensure_jobs_registered()
    return jsonify(SchedulerService.list_jobs())


@notification_bp.route("/scheduler/jobs/<job_name>", methods=["GET"])
def get_job(job_name):
    SchedulerService.ensure_jobs_registered()
    job = SchedulerService.get_job_status(job_name)
    if job is None:
        return jsonify({"error": f"Unknown job: {job_name}"}), 404
    return jsonify(job)


@notification_bp.route("/scheduler/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    """Trigger a job immediately."""
    SchedulerService.ensure_jobs_registered()
    result = SchedulerService.run_job(job_name)
    if result["status"] == "error":
        return jsonify(result), 404
    return jsonify(result)


@notification_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["POST"])
def toggle_job(job_name):
    """Body: {enabled: bool}"""
    SchedulerService.ensure_jobs_registered()
    enabled = parse_bool(json_body().get("enabled"), default=True)
    job = SchedulerService.toggle_job(job_name, enabled)
    if job is None:
        return jsonify({"error": f"Unknown job: {job_name}"}), 404
    return jsonify(job)
