"""
Decision Governance Engine
Core domain models.

Models:
    - Decision: a tracked organisational choice with derived health/lifecycle
    - Assumption: a premise decisions rest on (UNIVERSAL or DECISION_SPECIFIC)
    - DecisionAssumption: junction row linking decisions and assumptions
    - Constraint: an immutable organisational rule applying to every decision
    - ConstraintViolation: a recorded failure of a constraint by a decision
    - Dependency: directed edge "source depends on target"

Chain: Organization → Decision ⇄ Assumption (junction), Decision → Dependency,
Organization → Constraint (no link table, applies to all decisions).
"""

from datetime import date, datetime, timezone
from enum import Enum

from decision_governance.models import db
from decision_governance.models.base import OrgModel


# ── Constants ────────────────────────────────────────────────────────────────

class Lifecycle(str, Enum):
    STABLE = "STABLE"
    UNDER_REVIEW = "UNDER_REVIEW"
    AT_RISK = "AT_RISK"
    INVALIDATED = "INVALIDATED"
    RETIRED = "RETIRED"


class AssumptionStatus(str, Enum):
    VALID = "VALID"
    SHAKY = "SHAKY"
    BROKEN = "BROKEN"


class AssumptionScope(str, Enum):
    UNIVERSAL = "UNIVERSAL"
    DECISION_SPECIFIC = "DECISION_SPECIFIC"


class ConstraintType(str, Enum):
    LEGAL = "LEGAL"
    BUDGET = "BUDGET"
    POLICY = "POLICY"
    TECHNICAL = "TECHNICAL"
    COMPLIANCE = "COMPLIANCE"
    OTHER = "OTHER"


LIFECYCLES = {lc.value for lc in Lifecycle}
ASSUMPTION_STATUSES = {s.value for s in AssumptionStatus}
ASSUMPTION_SCOPES = {s.value for s in AssumptionScope}
CONSTRAINT_TYPES = {t.value for t in ConstraintType}

# Fields whose changes bump Decision.version and appear in version snapshots.
TRACKED_FIELDS = ("title", "description", "category", "parameters", "expiry_date")

STATUS_WEIGHTS = {
    AssumptionStatus.VALID.value: 1.0,
    AssumptionStatus.SHAKY.value: 0.5,
    AssumptionStatus.BROKEN.value: 0.0,
}


def lifecycle_for_health(health: int) -> str:
    """
    Derive the lifecycle state from a health signal.
      80-100 → STABLE
      60-79  → UNDER_REVIEW
      30-59  → AT_RISK
      0-29   → INVALIDATED
    RETIRED is never derived; it is set only by an explicit action.
    """
    if health >= 80:
        return Lifecycle.STABLE.value
    elif health >= 60:
        return Lifecycle.UNDER_REVIEW.value
    elif health >= 30:
        return Lifecycle.AT_RISK.value
    return Lifecycle.INVALIDATED.value


def _utcnow():
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
#  DECISION
# ═══════════════════════════════════════════════════════════════════════════

class Decision(OrgModel):
    """
    An organisational decision.

    ``health_signal`` and ``lifecycle`` are derived by the health evaluator;
    ``version`` increments on every change of a tracked field. Decisions are
    never hard-deleted: RETIRED is terminal but the row persists.
    """

    __tablename__ = "decisions"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    category = db.Column(db.String(100), default="")
    parameters = db.Column(db.JSON, default=dict)
    expiry_date = db.Column(db.Date, nullable=True)

    lifecycle = db.Column(db.String(20), default=Lifecycle.STABLE.value, nullable=False, index=True)
    health_signal = db.Column(db.Integer, default=100, nullable=False)
    expiry_decay = db.Column(db.Integer, default=0, nullable=False,
                             comment="Points of health_signal currently lost to expiry decay")
    version = db.Column(db.Integer, default=1, nullable=False)

    governance_locked = db.Column(db.Boolean, default=False, nullable=False)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    locked_by = db.Column(db.String(150), nullable=True)

    last_reviewed_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    created_by = db.Column(db.String(150), default="system")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    assumption_links = db.relationship(
        "DecisionAssumption", back_populates="decision", cascade="all, delete-orphan",
    )

    @property
    def is_retired(self) -> bool:
        return self.lifecycle == Lifecycle.RETIRED.value

    @property
    def assumptions(self):
        return [link.assumption for link in self.assumption_links]

    def days_until_expiry(self, today: date) -> int | None:
        if self.expiry_date is None:
            return None
        return (self.expiry_date - today).days

    def snapshot(self) -> dict:
        """Full copy of the tracked fields, as stored in version events."""
        return {
            "title": self.title,
            "description": self.description or "",
            "category": self.category or "",
            "parameters": dict(self.parameters or {}),
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
        }

    def to_dict(self, include_assumptions=False):
        d = {
            "id": self.id,
            "organization_id": self.organization_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "parameters": self.parameters or {},
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "lifecycle": self.lifecycle,
            "health_signal": self.health_signal,
            "version": self.version,
            "governance_locked": self.governance_locked,
            "locked_at": self.locked_at.isoformat() if self.locked_at else None,
            "locked_by": self.locked_by,
            "last_reviewed_at": self.last_reviewed_at.isoformat() if self.last_reviewed_at else None,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_assumptions:
            d["assumptions"] = [a.to_dict() for a in self.assumptions]
        return d

    def __repr__(self):
        return f"<Decision {self.id}: {self.title[:40]}>"


# ═══════════════════════════════════════════════════════════════════════════
#  ASSUMPTION
# ═══════════════════════════════════════════════════════════════════════════

class Assumption(OrgModel):
    """
    A premise one or more decisions rest on.

    UNIVERSAL assumptions are organisation-wide and may be linked to many
    decisions. DECISION_SPECIFIC assumptions are linked to at most one
    decision; the assumption service enforces that cardinality. Both scopes
    go through the same junction table so read paths stay uniform.
    """

    __tablename__ = "assumptions"

    id = db.Column(db.Integer, primary_key=True)
    description = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(10), default=AssumptionStatus.VALID.value, nullable=False, index=True)
    scope = db.Column(db.String(20), default=AssumptionScope.DECISION_SPECIFIC.value, nullable=False)
    category = db.Column(db.String(100), default="", comment="Optional, used by structured conflict rules")
    parameters = db.Column(db.JSON, default=dict, comment="Optional, used by structured conflict rules")

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    decision_links = db.relationship(
        "DecisionAssumption", back_populates="assumption", cascade="all, delete-orphan",
    )

    @property
    def is_universal(self) -> bool:
        return self.scope == AssumptionScope.UNIVERSAL.value

    @property
    def decision_ids(self) -> list[int]:
        return sorted(link.decision_id for link in self.decision_links)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "description": self.description,
            "status": self.status,
            "scope": self.scope,
            "category": self.category,
            "parameters": self.parameters or {},
            "decision_ids": self.decision_ids,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Assumption {self.id} [{self.scope}/{self.status}]: {self.description[:40]}>"


class DecisionAssumption(db.Model):
    """Junction row: decision rests on assumption."""

    __tablename__ = "decision_assumptions"

    decision_id = db.Column(
        db.Integer, db.ForeignKey("decisions.id", ondelete="CASCADE"), primary_key=True,
    )
    assumption_id = db.Column(
        db.Integer, db.ForeignKey("assumptions.id", ondelete="CASCADE"), primary_key=True, index=True,
    )
    link_reason = db.Column(db.String(500), default="")
    linked_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    decision = db.relationship("Decision", back_populates="assumption_links")
    assumption = db.relationship("Assumption", back_populates="decision_links")

    def __repr__(self):
        return f"<DecisionAssumption d={self.decision_id} a={self.assumption_id}>"


# ═══════════════════════════════════════════════════════════════════════════
#  CONSTRAINT
# ═══════════════════════════════════════════════════════════════════════════

class Constraint(OrgModel):
    """
    An immutable organisational rule.

    There is no link table: every constraint applies to every
    decision of its organisation. ``validation_config`` optionally holds a
    machine-checkable rule (see constraint_service.evaluate_constraints).
    """

    __tablename__ = "constraints"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    constraint_type = db.Column(db.String(20), default=ConstraintType.OTHER.value, nullable=False)
    is_immutable = db.Column(db.Boolean, default=True, nullable=False)
    validation_config = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "description": self.description,
            "constraint_type": self.constraint_type,
            "is_immutable": self.is_immutable,
            "validation_config": self.validation_config,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Constraint {self.id} [{self.constraint_type}]: {self.name[:40]}>"


class ConstraintViolation(OrgModel):
    """
    A recorded failure of one constraint by one decision.

    Rows are kept in step with the evaluator by
    ``constraint_service.record_violations``: a violation that stops
    occurring is resolved by "system", and a manually resolved one that
    still occurs is recorded again on the next evaluation. At most one
    unresolved row exists per (decision, constraint).
    """

    __tablename__ = "constraint_violations"
    __table_args__ = (
        db.Index(
            "uq_constraint_violations_open",
            "decision_id", "constraint_id",
            unique=True,
            sqlite_where=db.text("resolved_at IS NULL"),
            postgresql_where=db.text("resolved_at IS NULL"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    decision_id = db.Column(
        db.Integer, db.ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    constraint_id = db.Column(
        db.Integer, db.ForeignKey("constraints.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    reason = db.Column(db.Text, default="")
    details = db.Column(db.JSON, default=dict)
    detected_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    resolved_by = db.Column(db.String(150), nullable=True)

    decision = db.relationship("Decision")
    constraint = db.relationship("Constraint")

    @property
    def is_active(self) -> bool:
        return self.resolved_at is None

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "decision_id": self.decision_id,
            "decision_title": self.decision.title if self.decision else None,
            "constraint_id": self.constraint_id,
            "constraint_name": self.constraint.name if self.constraint else None,
            "reason": self.reason,
            "details": self.details or {},
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
        }

    def __repr__(self):
        state = "open" if self.is_active else "resolved"
        return f"<ConstraintViolation {self.id}: d={self.decision_id} c={self.constraint_id} {state}>"


# ═══════════════════════════════════════════════════════════════════════════
#  DEPENDENCY
# ═══════════════════════════════════════════════════════════════════════════

class Dependency(OrgModel):
    """Directed edge: source depends on target (target blocks source)."""

    __tablename__ = "dependencies"
    __table_args__ = (
        db.UniqueConstraint("source_decision_id", "target_decision_id", name="uq_dependency_edge"),
    )

    id = db.Column(db.Integer, primary_key=True)
    source_decision_id = db.Column(
        db.Integer, db.ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    target_decision_id = db.Column(
        db.Integer, db.ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "source_decision_id": self.source_decision_id,
            "target_decision_id": self.target_decision_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Dependency {self.source_decision_id} -> {self.target_decision_id}>"
