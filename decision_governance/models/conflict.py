"""
Decision Governance Engine
Conflict models.

Models:
    - AssumptionConflict: a detected contradiction between two assumptions
    - DecisionConflict: a detected contradiction between two decisions

Both store their pair in canonical order (smaller id as A) so the unordered
pair {A, B} maps to exactly one (a_id, b_id) tuple. A partial unique index
on the pair, restricted to rows with ``resolved_at IS NULL``, keeps at most
one open conflict per pair at the database level.

Deleting an assumption removes its open conflicts (see
assumption_service.delete_assumption); resolved ones stay on record with
the deleted side set to NULL.
"""

from datetime import datetime, timezone
from enum import Enum

from decision_governance.models import db
from decision_governance.models.base import OrgModel


# ── Constants ────────────────────────────────────────────────────────────────

class AssumptionConflictType(str, Enum):
    CONTRADICTORY = "CONTRADICTORY"
    MUTUALLY_EXCLUSIVE = "MUTUALLY_EXCLUSIVE"
    INCOMPATIBLE = "INCOMPATIBLE"


class DecisionConflictType(str, Enum):
    CONTRADICTORY = "CONTRADICTORY"
    RESOURCE_COMPETITION = "RESOURCE_COMPETITION"
    OBJECTIVE_UNDERMINING = "OBJECTIVE_UNDERMINING"
    PREMISE_INVALIDATION = "PREMISE_INVALIDATION"
    MUTUALLY_EXCLUSIVE = "MUTUALLY_EXCLUSIVE"


class AssumptionResolution(str, Enum):
    VALIDATE_A = "VALIDATE_A"
    VALIDATE_B = "VALIDATE_B"
    MERGE = "MERGE"
    DEPRECATE_BOTH = "DEPRECATE_BOTH"
    KEEP_BOTH = "KEEP_BOTH"


class DecisionResolution(str, Enum):
    PRIORITIZE_A = "PRIORITIZE_A"
    PRIORITIZE_B = "PRIORITIZE_B"
    MODIFY_BOTH = "MODIFY_BOTH"
    DEPRECATE_BOTH = "DEPRECATE_BOTH"
    KEEP_BOTH = "KEEP_BOTH"


ASSUMPTION_CONFLICT_TYPES = {t.value for t in AssumptionConflictType}
DECISION_CONFLICT_TYPES = {t.value for t in DecisionConflictType}
ASSUMPTION_RESOLUTIONS = {r.value for r in AssumptionResolution}
DECISION_RESOLUTIONS = {r.value for r in DecisionResolution}


def canonical_pair(first_id: int, second_id: int) -> tuple[int, int]:
    """Order an unordered pair so that {a, b} and {b, a} share one key."""
    return (first_id, second_id) if first_id <= second_id else (second_id, first_id)


def _utcnow():
    return datetime.now(timezone.utc)


class _ConflictMixin:
    """Columns and helpers shared by both conflict tables."""

    id = db.Column(db.Integer, primary_key=True)
    conflict_type = db.Column(db.String(30), nullable=False)
    confidence_score = db.Column(db.Float, nullable=False)
    explanation = db.Column(db.Text, default="")

    detected_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    resolution_action = db.Column(db.String(30), nullable=True)
    resolution_notes = db.Column(db.Text, nullable=True)
    resolved_by = db.Column(db.String(150), nullable=True)

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    def _base_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "conflict_type": self.conflict_type,
            "confidence_score": self.confidence_score,
            "explanation": self.explanation,
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution_action": self.resolution_action,
            "resolution_notes": self.resolution_notes,
            "resolved_by": self.resolved_by,
        }


# ═══════════════════════════════════════════════════════════════════════════
#  ASSUMPTION CONFLICT
# ═══════════════════════════════════════════════════════════════════════════

class AssumptionConflict(_ConflictMixin, OrgModel):
    __tablename__ = "assumption_conflicts"
    __table_args__ = (
        db.Index(
            "uq_assumption_conflicts_open_pair",
            "assumption_a_id", "assumption_b_id",
            unique=True,
            sqlite_where=db.text("resolved_at IS NULL"),
            postgresql_where=db.text("resolved_at IS NULL"),
        ),
    )

    assumption_a_id = db.Column(
        db.Integer, db.ForeignKey("assumptions.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    assumption_b_id = db.Column(
        db.Integer, db.ForeignKey("assumptions.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    assumption_a = db.relationship("Assumption", foreign_keys=[assumption_a_id])
    assumption_b = db.relationship("Assumption", foreign_keys=[assumption_b_id])

    def to_dict(self):
        d = self._base_dict()
        d.update({
            "assumption_a_id": self.assumption_a_id,
            "assumption_b_id": self.assumption_b_id,
            "assumption_a": self.assumption_a.to_dict() if self.assumption_a else None,
            "assumption_b": self.assumption_b.to_dict() if self.assumption_b else None,
        })
        return d

    def __repr__(self):
        return f"<AssumptionConflict {self.id}: {self.assumption_a_id}<->{self.assumption_b_id} {self.conflict_type}>"


# ═══════════════════════════════════════════════════════════════════════════
#  DECISION CONFLICT
# ═══════════════════════════════════════════════════════════════════════════

class DecisionConflict(_ConflictMixin, OrgModel):
    __tablename__ = "decision_conflicts"
    __table_args__ = (
        db.Index(
            "uq_decision_conflicts_open_pair",
            "decision_a_id", "decision_b_id",
            unique=True,
            sqlite_where=db.text("resolved_at IS NULL"),
            postgresql_where=db.text("resolved_at IS NULL"),
        ),
    )

    decision_a_id = db.Column(
        db.Integer, db.ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    decision_b_id = db.Column(
        db.Integer, db.ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False, index=True,
    )

    decision_a = db.relationship("Decision", foreign_keys=[decision_a_id])
    decision_b = db.relationship("Decision", foreign_keys=[decision_b_id])

    def to_dict(self):
        d = self._base_dict()
        d.update({
            "decision_a_id": self.decision_a_id,
            "decision_b_id": self.decision_b_id,
            "decision_a_title": self.decision_a.title if self.decision_a else None,
            "decision_b_title": self.decision_b.title if self.decision_b else None,
        })
        return d

    def __repr__(self):
        return f"<DecisionConflict {self.id}: {self.decision_a_id}<->{self.decision_b_id} {self.conflict_type}>"
