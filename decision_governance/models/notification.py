"""
Decision Governance Engine
Notification model.

Models:
    - Notification: organisation-wide alert about a decision, with read and
      dismissal tracking
"""

from datetime import datetime, timezone
from enum import Enum

from decision_governance.models import db
from decision_governance.models.base import OrgModel


# ── Constants ────────────────────────────────────────────────────────────────

class NotificationType(str, Enum):
    HEALTH_DEGRADED = "health_degraded"
    LIFECYCLE_CHANGED = "lifecycle_changed"
    CONFLICT_DETECTED = "conflict_detected"
    NEEDS_REVIEW = "needs_review"
    EDIT_REQUESTED = "edit_requested"


NOTIFICATION_TYPES = {t.value for t in NotificationType}
NOTIFICATION_SEVERITIES = {"info", "warning", "error"}


class Notification(OrgModel):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    decision_id = db.Column(
        db.Integer, db.ForeignKey("decisions.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    type = db.Column(db.String(30), nullable=False, index=True)
    severity = db.Column(db.String(20), default="info")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")

    # Read / dismiss tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    dismissed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def dismiss(self):
        self.dismissed_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "decision_id": self.decision_id,
            "type": self.type,
            "severity": self.severity,
            "title": self.title,
            "message": self.message,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "dismissed_at": self.dismissed_at.isoformat() if self.dismissed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id} [{self.type}]: {self.title[:40]}>"
