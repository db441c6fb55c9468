"""
Decision Governance Engine
Edit-governance model.

Models:
    - EditRequest: a non-privileged actor's proposed change to a decision,
      awaiting approval or rejection by a lead.

At most one PENDING request may exist per decision; a partial unique index
enforces it next to the service-level check.
"""

from datetime import datetime, timezone
from enum import Enum

from decision_governance.models import db
from decision_governance.models.base import OrgModel


# ── Constants ────────────────────────────────────────────────────────────────

class EditRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


EDIT_REQUEST_STATUSES = {s.value for s in EditRequestStatus}

MIN_JUSTIFICATION_LENGTH = 10


class EditRequest(OrgModel):
    """
    Proposed change to a decision.

    ``proposed_changes`` shape::

        {
            "fields": {"title": "...", "parameters": {...}},
            "link_assumptions": [3, 7],
            "unlink_assumptions": [2],
        }
    """

    __tablename__ = "edit_requests"
    __table_args__ = (
        db.Index(
            "uq_edit_requests_pending_decision",
            "decision_id",
            unique=True,
            sqlite_where=db.text("status = 'PENDING'"),
            postgresql_where=db.text("status = 'PENDING'"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    decision_id = db.Column(
        db.Integer, db.ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    requester = db.Column(db.String(150), nullable=False)
    justification = db.Column(db.Text, nullable=False)
    proposed_changes = db.Column(db.JSON, default=dict)
    status = db.Column(db.String(10), default=EditRequestStatus.PENDING.value, nullable=False)

    decided_by = db.Column(db.String(150), nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    decision_note = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    decision = db.relationship("Decision")

    @property
    def is_pending(self) -> bool:
        return self.status == EditRequestStatus.PENDING.value

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "decision_id": self.decision_id,
            "requester": self.requester,
            "justification": self.justification,
            "proposed_changes": self.proposed_changes or {},
            "status": self.status,
            "decided_by": self.decided_by,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "decision_note": self.decision_note,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<EditRequest {self.id}: decision/{self.decision_id} [{self.status}]>"
