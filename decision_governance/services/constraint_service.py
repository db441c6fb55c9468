"""
Constraint Service — organisation-wide rules and their evaluation.

Every constraint applies to every decision of its organisation; there is no
link table. The violation evaluator therefore always receives the full
constraint set of the decision's organisation.

Supported ``validation_config`` rule types:
    - budget_threshold:            {"field", "operator", "value"}
    - policy_regex:                {"pattern", "field", "flags"}
    - technical_compatibility:     {"field", "allowed_values"}
    - compliance_required_fields:  {"fields": [...]}

Field paths use dot notation against the decision's title, description,
category and parameters; ``metadata.`` is accepted as an alias of
``parameters.``. Constraints without a config always pass. Malformed rules
fail open and log a warning.

Every evaluation records its outcome as ConstraintViolation rows (see
record_violations); those rows can be listed and resolved.

The evaluator is pluggable:
    set_constraint_evaluator(fn)    # fn(decision, constraints) -> list[Violation]
    set_constraint_evaluator(None)  # restore the rule-based default
"""

from __future__ import annotations

import logging
import operator
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from decision_governance.core.exceptions import InUseError, ValidationError
from decision_governance.models import db
from decision_governance.models.decision import (
    CONSTRAINT_TYPES,
    Constraint,
    ConstraintType,
    ConstraintViolation,
    Decision,
    Lifecycle,
)
from decision_governance.utils.helpers import atomic, get_or_404

logger = logging.getLogger(__name__)


@dataclass
class Violation:
    """A single failed constraint check."""
    constraint_id: int
    constraint_name: str
    reason: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "constraint_id": self.constraint_id,
            "constraint_name": self.constraint_name,
            "reason": self.reason,
            "details": self.details,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Rule evaluation
# ═════════════════════════════════════════════════════════════════════════════

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "<=": operator.le,
    "<": operator.lt,
    ">=": operator.ge,
    ">": operator.gt,
    "==": operator.eq,
    "===": operator.eq,
}

_MISSING = object()


def decision_context(decision) -> dict:
    return {
        "title": decision.title or "",
        "description": decision.description or "",
        "category": decision.category or "",
        "parameters": dict(decision.parameters or {}),
    }


def get_path(context: dict, path: str):
    """Resolve ``a.b.c`` against nested dicts; returns None when absent."""
    if not path:
        return None
    if path == "metadata" or path.startswith("metadata."):
        path = "parameters" + path[len("metadata"):]
    current: Any = context
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key, _MISSING)
        if current is _MISSING:
            return None
    return current


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_budget_threshold(constraint, context, config):
    path = config.get("field") or "parameters.cost"
    threshold = config.get("value")
    op_name = config.get("operator") or "<="
    op = _OPERATORS.get(op_name)
    if op is None or not _is_number(threshold):
        logger.warning("Constraint %s: unusable budget_threshold rule %r", constraint.id, config)
        return None

    actual = get_path(context, path)
    if not _is_number(actual):
        return Violation(
            constraint.id, constraint.name,
            f'Budget field "{path}" not found or not a number',
            {"field": path, "actual": actual, "threshold": threshold},
        )
    if op(actual, threshold):
        return None
    return Violation(
        constraint.id, constraint.name,
        f"Budget constraint violated: {actual} {op_name} {threshold} is false",
        {"field": path, "actual": actual, "operator": op_name, "threshold": threshold},
    )


def _check_policy_regex(constraint, context, config):
    pattern = config.get("pattern")
    path = config.get("field") or "description"
    if not pattern:
        logger.warning("Constraint %s: policy_regex without pattern", constraint.id)
        return None
    flag_text = config.get("flags")
    flags = re.IGNORECASE if "i" in (flag_text if flag_text is not None else "i") else 0
    try:
        regex = re.compile(pattern, flags)
    except re.error:
        logger.warning("Constraint %s: invalid regex %r", constraint.id, pattern)
        return None

    text = get_path(context, path)
    if not isinstance(text, str):
        return Violation(
            constraint.id, constraint.name,
            f'Field "{path}" must be a string for pattern matching',
            {"field": path, "pattern": pattern},
        )
    if regex.search(text):
        return None
    return Violation(
        constraint.id, constraint.name,
        f"Decision {path} does not match required pattern: {pattern}",
        {"field": path, "pattern": pattern, "text": text[:200]},
    )


def _check_technical_compatibility(constraint, context, config):
    path = config.get("field")
    allowed = config.get("allowed_values", config.get("allowedValues")) or []
    if not path or not isinstance(allowed, list):
        logger.warning("Constraint %s: unusable technical_compatibility rule %r", constraint.id, config)
        return None
    actual = get_path(context, path)
    if actual in allowed:
        return None
    return Violation(
        constraint.id, constraint.name,
        f'Value "{actual}" not in allowed list for {path}',
        {"field": path, "actual": actual, "allowed_values": allowed},
    )


def _check_required_fields(constraint, context, config):
    required = config.get("fields") or []
    if not isinstance(required, list) or not required:
        logger.warning("Constraint %s: compliance_required_fields without fields", constraint.id)
        return None
    missing = [p for p in required if get_path(context, p) in (None, "")]
    if not missing:
        return None
    return Violation(
        constraint.id, constraint.name,
        f"Missing required fields: {', '.join(missing)}",
        {"missing_fields": missing, "required_fields": required},
    )


RULE_CHECKS = {
    "budget_threshold": _check_budget_threshold,
    "policy_regex": _check_policy_regex,
    "technical_compatibility": _check_technical_compatibility,
    "compliance_required_fields": _check_required_fields,
}


def check_constraint(constraint, context: dict) -> Violation | None:
    """Evaluate one constraint against a decision context."""
    config = constraint.validation_config
    if not config:
        return None
    if not isinstance(config, dict) or not config.get("type"):
        logger.warning("Constraint %s has no validation type defined", constraint.id)
        return None
    check = RULE_CHECKS.get(config["type"])
    if check is None:
        logger.warning("Unknown constraint validation type: %s", config["type"])
        return None
    return check(constraint, context, config)


def evaluate_constraints(decision, constraints) -> list[Violation]:
    """Default evaluator: rule-based checks over every given constraint."""
    context = decision_context(decision)
    violations = []
    for constraint in constraints:
        violation = check_constraint(constraint, context)
        if violation is not None:
            violations.append(violation)
    return violations


_evaluator: Callable = evaluate_constraints


def set_constraint_evaluator(fn: Callable | None) -> None:
    """Install an alternative evaluator; None restores the default."""
    global _evaluator
    _evaluator = fn or evaluate_constraints


def violations_for(decision) -> list[Violation]:
    """Run the active evaluator against the organisation's full constraint set."""
    constraints = (
        Constraint.query_for_org(decision.organization_id)
        .order_by(Constraint.id)
        .all()
    )
    if not constraints:
        return []
    return list(_evaluator(decision, constraints))


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════

def _validate_config(config):
    if config is None:
        return None
    if not isinstance(config, dict):
        raise ValidationError("validation_config must be an object",
                              details={"validation_config": "not an object"})
    rule_type = config.get("type")
    if rule_type not in RULE_CHECKS:
        raise ValidationError(
            f"Unsupported validation type: {rule_type}",
            details={"validation_config.type": sorted(RULE_CHECKS)},
        )
    return config


def list_constraints(organization_id):
    return Constraint.query_for_org(organization_id).order_by(Constraint.id).all()


def get_constraint(organization_id, constraint_id):
    return get_or_404(Constraint, organization_id, constraint_id)


def create_constraint(organization_id, data: dict):
    """
    Create an immutable constraint and re-evaluate every active decision
    of the organisation against it.
    """
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    constraint_type = data.get("constraint_type") or ConstraintType.OTHER.value
    if constraint_type not in CONSTRAINT_TYPES:
        raise ValidationError(
            f"Invalid constraint_type. Must be one of: {sorted(CONSTRAINT_TYPES)}",
            details={"constraint_type": constraint_type},
        )
    config = _validate_config(data.get("validation_config"))

    with atomic():
        constraint = Constraint(
            organization_id=organization_id,
            name=name,
            description=data.get("description", ""),
            constraint_type=constraint_type,
            is_immutable=True,
            validation_config=config,
        )
        db.session.add(constraint)
        db.session.flush()
        _reevaluate_organization(organization_id)

    logger.info("Constraint created: id=%s type=%s", constraint.id, constraint_type,
                extra={"organization_id": organization_id})
    return constraint


def delete_constraint(organization_id, constraint_id, *, force=False):
    """
    Delete a constraint.

    Raises:
        InUseError: while any non-RETIRED decision exists, unless ``force``.
    """
    constraint = get_or_404(Constraint, organization_id, constraint_id)
    active_ids = [
        row.id for row in
        db.session.query(Decision.id)
        .filter(Decision.organization_id == organization_id,
                Decision.lifecycle != Lifecycle.RETIRED.value)
        .order_by(Decision.id)
        .all()
    ]
    if active_ids and not force:
        raise InUseError("Constraint", constraint_id, referenced_by=active_ids)

    with atomic():
        db.session.delete(constraint)
        db.session.flush()
        _reevaluate_organization(organization_id)

    logger.info("Constraint deleted: id=%s force=%s", constraint_id, force,
                extra={"organization_id": organization_id})


def _reevaluate_organization(organization_id):
    from decision_governance.models.audit import TriggeredBy
    from decision_governance.services.health_evaluator import evaluate_organization

    evaluate_organization(organization_id, TriggeredBy.CONSTRAINT_VIOLATION.value)


# ═════════════════════════════════════════════════════════════════════════════
# Recorded violations
# ═════════════════════════════════════════════════════════════════════════════

def record_violations(decision, violations) -> list[ConstraintViolation]:
    """
    Bring the decision's unresolved ConstraintViolation rows in line with
    ``violations``. Returns the rows opened by this call. Flush only.
    """
    open_rows = {
        row.constraint_id: row
        for row in ConstraintViolation.query_for_org(decision.organization_id)
        .filter_by(decision_id=decision.id)
        .filter(ConstraintViolation.resolved_at.is_(None))
        .all()
    }
    known = {
        row.id for row in
        db.session.query(Constraint.id).filter(Constraint.organization_id == decision.organization_id)
    }
    now = datetime.now(timezone.utc)
    opened = []
    current = set()
    for violation in violations:
        if violation.constraint_id not in known:
            logger.debug("Violation of unknown constraint %s not recorded", violation.constraint_id)
            continue
        current.add(violation.constraint_id)
        row = open_rows.get(violation.constraint_id)
        if row is not None:
            row.reason = violation.reason
            row.details = violation.details
            continue
        row = ConstraintViolation(
            organization_id=decision.organization_id,
            decision_id=decision.id,
            constraint_id=violation.constraint_id,
            reason=violation.reason,
            details=violation.details,
            detected_at=now,
        )
        db.session.add(row)
        opened.append(row)
    for constraint_id, row in open_rows.items():
        if constraint_id not in current:
            row.resolved_at = now
            row.resolved_by = "system"
    db.session.flush()
    if opened:
        logger.info("Decision %s violates constraint(s) %s", decision.id,
                    [row.constraint_id for row in opened],
                    extra={"organization_id": decision.organization_id, "decision_id": decision.id})
    return opened


def list_violations(organization_id, *, decision_id=None, constraint_id=None, include_resolved=False):
    q = ConstraintViolation.query_for_org(organization_id)
    if decision_id:
        q = q.filter_by(decision_id=decision_id)
    if constraint_id:
        q = q.filter_by(constraint_id=constraint_id)
    if not include_resolved:
        q = q.filter(ConstraintViolation.resolved_at.is_(None))
    return q.order_by(ConstraintViolation.detected_at.desc(), ConstraintViolation.id.desc())


def get_violation(organization_id, violation_id):
    return get_or_404(ConstraintViolation, organization_id, violation_id)


def resolve_violation(organization_id, violation_id, *, actor="system"):
    """
    Acknowledge a violation. A violation that still occurs is recorded
    again at the decision's next evaluation.
    """
    violation = get_or_404(ConstraintViolation, organization_id, violation_id)
    with atomic():
        if not violation.is_active:
            raise ValidationError(f"Violation {violation_id} is already resolved",
                                  details={"resolved_at": violation.resolved_at.isoformat()})
        violation.resolved_at = datetime.now(timezone.utc)
        violation.resolved_by = actor
    logger.info("Constraint violation %s resolved by %s", violation_id, actor,
                extra={"organization_id": organization_id, "decision_id": violation.decision_id})
    return violation
