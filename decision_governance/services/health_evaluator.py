"""
Health & Lifecycle Evaluator.

Health is the weighted mean of a decision's linked assumptions:

    VALID = 1.0, SHAKY = 0.5, BROKEN = 0.0
    health = round(100 * mean(weights))

  - no linked assumptions: the previous health is kept (a manual review
    resets that base to 100)
  - any constraint violation caps health at HEALTH_CONSTRAINT_CAP
  - a decision with an expiry_date loses health as the date approaches
    and passes (see expiry_decay); the points lost are kept on the
    decision so the no-assumption base is taken before decay
  - lifecycle follows health thresholds (see lifecycle_for_health)
  - RETIRED decisions are never evaluated and never derived

``compute_health`` is pure; ``evaluate_decision`` applies the result,
writes one ``health_evaluated`` event when health or lifecycle changed and
raises the matching notifications. Callers own the transaction and the
per-decision lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from flask import current_app

from decision_governance.models.audit import HealthEvaluated, TriggeredBy, write_event
from decision_governance.models.decision import (
    STATUS_WEIGHTS,
    Decision,
    Lifecycle,
    lifecycle_for_health,
)
from decision_governance.services.constraint_service import record_violations, violations_for
from decision_governance.services.decision_locks import decision_lock
from decision_governance.services.notification import NotificationService

logger = logging.getLogger(__name__)

DEFAULT_CONSTRAINT_CAP = 40
DEFAULT_EXPIRY_GRACE_DAYS = 30


@dataclass
class Evaluation:
    """Outcome of one health computation, with its ordered trace."""
    health: int
    lifecycle: str
    trace: list = field(default_factory=list)
    expiry_decay: int = 0


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _step(name, passed, detail):
    return {"step": name, "passed": passed, "detail": detail}


def expiry_decay(days_until_expiry: int) -> tuple[int, str]:
    """
    Health points lost to an approaching or passed expiry date.

        more than 90 days left   0
        30-90 days left          1 per 15 days inside the 90-day window
        0-30 days left           the above plus 1 per 5 days inside 30 days
        past expiry              12 plus 1 per day overdue
    """
    days = days_until_expiry
    if days > 90:
        return 0, f"{days} days until expiry; no decay"
    if days > 30:
        decay = (90 - days) // 15
        return decay, f"{days} days until expiry; warning phase -{decay}"
    if days > 0:
        decay = (90 - days) // 15 + (30 - days) // 5
        return decay, f"{days} days until expiry; critical phase -{decay}"
    decay = 90 // 15 + 30 // 5 + abs(days)
    return decay, f"{abs(days)} days past expiry; overdue decay -{decay}"


def compute_health(decision, assumptions, violations, *, cap=DEFAULT_CONSTRAINT_CAP,
                   reset_base=False, today: date | None = None,
                   grace_days=DEFAULT_EXPIRY_GRACE_DAYS) -> Evaluation:
    """Derive health and lifecycle without touching the decision."""
    trace = []

    if assumptions:
        weights = [STATUS_WEIGHTS.get(a.status, 0.0) for a in assumptions]
        health = round(100 * sum(weights) / len(weights))
        counts = {}
        for a in assumptions:
            counts[a.status] = counts.get(a.status, 0) + 1
        summary = ", ".join(f"{n} {status}" for status, n in sorted(counts.items()))
        trace.append(_step(
            "assumption_weighting",
            all(a.status == "VALID" for a in assumptions),
            f"{len(assumptions)} assumption(s) ({summary}) give health {health}",
        ))
    else:
        # expiry decay is re-derived below; start from the pre-decay base
        prior_decay = getattr(decision, "expiry_decay", 0) or 0
        health = 100 if reset_base else decision.health_signal + prior_decay
        trace.append(_step(
            "assumption_weighting", True,
            f"No linked assumptions; health base stays at {health}",
        ))

    if violations:
        names = ", ".join(v.constraint_name for v in violations)
        capped = min(health, cap)
        trace.append(_step(
            "constraint_validation", False,
            f"{len(violations)} violation(s) ({names}); health capped at {cap} -> {capped}",
        ))
        health = capped
    else:
        trace.append(_step("constraint_validation", True, "All constraints satisfied"))

    health = max(0, min(100, int(health)))
    applied = 0
    expiry = getattr(decision, "expiry_date", None)
    if expiry is not None:
        days_left = (expiry - (today or _today())).days
        decay, detail = expiry_decay(days_left)
        if days_left < -grace_days:
            detail += f"; expired more than {grace_days} days ago, retirement recommended"
        applied = min(decay, health)
        health -= applied
        trace.append(_step("expiry_check", days_left > 0, detail))

    lifecycle = lifecycle_for_health(health)
    trace.append(_step(
        "lifecycle_determination",
        lifecycle == Lifecycle.STABLE.value,
        f"Health {health} maps to {lifecycle}",
    ))
    return Evaluation(health=health, lifecycle=lifecycle, trace=trace, expiry_decay=applied)


def evaluate_decision(decision, triggered_by, *, actor="system",
                      today: date | None = None) -> HealthEvaluated | None:
    """
    Re-evaluate one decision and persist the outcome.

    Active constraint violations are recorded on every run, whether or not
    health moves. Returns the written payload, or None when nothing changed
    (or the decision is RETIRED).
    """
    if decision.is_retired:
        logger.debug("Skipping evaluation of retired decision %s", decision.id)
        return None

    config = current_app.config
    violations = violations_for(decision)
    record_violations(decision, violations)
    result = compute_health(
        decision,
        decision.assumptions,
        violations,
        cap=config.get("HEALTH_CONSTRAINT_CAP", DEFAULT_CONSTRAINT_CAP),
        reset_base=(triggered_by == TriggeredBy.MANUAL_REVIEW.value),
        today=today,
        grace_days=config.get("EXPIRY_GRACE_DAYS", DEFAULT_EXPIRY_GRACE_DAYS),
    )

    old_health, old_lifecycle = decision.health_signal, decision.lifecycle
    decision.expiry_decay = result.expiry_decay
    if result.health == old_health and result.lifecycle == old_lifecycle:
        logger.debug("Decision %s unchanged after %s", decision.id, triggered_by)
        return None

    decision.health_signal = result.health
    decision.lifecycle = result.lifecycle
    payload = HealthEvaluated(
        old_health=old_health,
        new_health=result.health,
        old_lifecycle=old_lifecycle,
        new_lifecycle=result.lifecycle,
        triggered_by=triggered_by,
        trace=result.trace,
    )
    write_event(decision, payload, actor=actor)

    if result.health < old_health:
        NotificationService.notify_health_degraded(decision, old_health, result.health)
    if result.lifecycle != old_lifecycle:
        NotificationService.notify_lifecycle_changed(decision, old_lifecycle, result.lifecycle)

    logger.info(
        "Decision %s evaluated: health %s->%s lifecycle %s->%s",
        decision.id, old_health, result.health, old_lifecycle, result.lifecycle,
        extra={"organization_id": decision.organization_id, "decision_id": decision.id,
               "triggered_by": triggered_by},
    )
    return payload


def evaluate_decisions_for_assumption(assumption, triggered_by, *, actor="system") -> list:
    """Re-evaluate every non-RETIRED decision linked to an assumption."""
    results = []
    for decision in sorted((link.decision for link in assumption.decision_links), key=lambda d: d.id):
        payload = evaluate_decision(decision, triggered_by, actor=actor)
        if payload is not None:
            results.append(payload)
    return results


def evaluate_organization(organization_id, triggered_by, *, actor="system",
                          today: date | None = None) -> int:
    """Re-evaluate every non-RETIRED decision of an organisation. Returns the change count."""
    def active():
        return (
            Decision.query_for_org(organization_id)
            .filter(Decision.lifecycle != Lifecycle.RETIRED.value)
            .order_by(Decision.id)
        )

    changed = 0
    with decision_lock(d.id for d in active()) as locked:
        for decision in active().filter(Decision.id.in_(locked)).all():
            if evaluate_decision(decision, triggered_by, actor=actor, today=today) is not None:
                changed += 1
    return changed
