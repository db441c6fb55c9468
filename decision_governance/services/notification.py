"""
Decision Governance Engine
Notification Service.

Central service for creating and querying notifications. Engine services
call the ``notify_*`` helpers from inside their own transaction, so every
helper only flushes; the caller's ``atomic()`` block commits.
"""

from datetime import datetime, timezone

from decision_governance.core.exceptions import NotFoundError
from decision_governance.models import db
from decision_governance.models.notification import Notification, NotificationType


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, organization_id, type, title, message="", severity="info", decision_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (flushed, not committed).
        """
        notif = Notification(
            organization_id=organization_id,
            decision_id=decision_id,
            type=type,
            title=title,
            message=message,
            severity=severity,
        )
        db.session.add(notif)
        db.session.flush()
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_organization(organization_id, *, unread_only=False, include_dismissed=False,
                              type=None, decision_id=None, limit=50, offset=0):
        """
        Retrieve notifications for an organisation, newest first.
        """
        q = Notification.query_for_org(organization_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        if not include_dismissed:
            q = q.filter(Notification.dismissed_at.is_(None))
        if type:
            q = q.filter_by(type=type)
        if decision_id:
            q = q.filter_by(decision_id=decision_id)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(organization_id):
        """Return count of unread, undismissed notifications."""
        return (
            Notification.query_for_org(organization_id)
            .filter_by(is_read=False)
            .filter(Notification.dismissed_at.is_(None))
            .count()
        )

    @staticmethod
    def open_notification(organization_id, decision_id, type):
        """Return the undismissed notification of ``type`` for a decision, if any."""
        return (
            Notification.query_for_org(organization_id)
            .filter_by(decision_id=decision_id, type=type)
            .filter(Notification.dismissed_at.is_(None))
            .first()
        )

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(organization_id, notification_id):
        """Mark a single notification as read."""
        notif = Notification.get_in_org(organization_id, notification_id)
        if notif is None:
            raise NotFoundError("Notification", notification_id, organization_id)
        notif.mark_read()
        db.session.flush()
        return notif

    @staticmethod
    def mark_all_read(organization_id):
        """Mark all notifications of an organisation as read."""
        now = datetime.now(timezone.utc)
        count = (
            Notification.query_for_org(organization_id)
            .filter_by(is_read=False)
            .update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        )
        db.session.flush()
        return count

    @staticmethod
    def dismiss_for_decision(organization_id, decision_id, type):
        """Dismiss every open notification of ``type`` for a decision."""
        now = datetime.now(timezone.utc)
        count = (
            Notification.query_for_org(organization_id)
            .filter_by(decision_id=decision_id, type=type)
            .filter(Notification.dismissed_at.is_(None))
            .update({"dismissed_at": now}, synchronize_session="fetch")
        )
        db.session.flush()
        return count

    # ── Engine Integration Helpers ────────────────────────────────────────

    @staticmethod
    def notify_health_degraded(decision, old_health, new_health):
        """Health signal dropped."""
        severity = "error" if new_health < 30 else "warning"
        return NotificationService.create(
            organization_id=decision.organization_id,
            decision_id=decision.id,
            type=NotificationType.HEALTH_DEGRADED.value,
            severity=severity,
            title=f"Decision health degraded: {old_health}→{new_health}",
            message=f"{decision.title}: health signal fell from {old_health} to {new_health}.",
        )

    @staticmethod
    def notify_lifecycle_changed(decision, old_lifecycle, new_lifecycle):
        """Lifecycle state changed."""
        severity = "error" if new_lifecycle == "INVALIDATED" else "info"
        if new_lifecycle == "AT_RISK":
            severity = "warning"
        return NotificationService.create(
            organization_id=decision.organization_id,
            decision_id=decision.id,
            type=NotificationType.LIFECYCLE_CHANGED.value,
            severity=severity,
            title=f"Decision lifecycle changed: {old_lifecycle}→{new_lifecycle}",
            message=f"{decision.title} is now {new_lifecycle}.",
        )

    @staticmethod
    def notify_conflict_detected(decision, conflict_type, confidence, explanation, other_label):
        """A new conflict involves this decision."""
        return NotificationService.create(
            organization_id=decision.organization_id,
            decision_id=decision.id,
            type=NotificationType.CONFLICT_DETECTED.value,
            severity="warning",
            title=f"Conflict detected: {conflict_type}",
            message=(
                f"{decision.title} conflicts with {other_label} "
                f"(confidence {confidence:.2f}). {explanation}"
            ),
        )

    @staticmethod
    def notify_needs_review(decision, days_since_review):
        """Decision has not been reviewed for a while."""
        return NotificationService.create(
            organization_id=decision.organization_id,
            decision_id=decision.id,
            type=NotificationType.NEEDS_REVIEW.value,
            severity="info",
            title="Decision needs review",
            message=f"{decision.title} was last reviewed {days_since_review} days ago.",
        )

    @staticmethod
    def notify_edit_requested(decision, edit_request):
        """A non-privileged actor proposed a change."""
        return NotificationService.create(
            organization_id=decision.organization_id,
            decision_id=decision.id,
            type=NotificationType.EDIT_REQUESTED.value,
            severity="info",
            title=f"Edit requested by {edit_request.requester}",
            message=f"{decision.title}: {edit_request.justification}",
        )
