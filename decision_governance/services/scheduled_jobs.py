"""
Decision Governance Engine
Scheduled Jobs.

Jobs:
    - health_sweep: re-evaluates every active decision and flags stale reviews
    - conflict_rescan: full-corpus conflict detection per organisation
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from decision_governance.models.audit import TriggeredBy
from decision_governance.models.decision import Decision, Lifecycle
from decision_governance.models.notification import NotificationType
from decision_governance.models.organization import Organization
from decision_governance.services.conflict_detector import detect_conflicts
from decision_governance.services.health_evaluator import evaluate_organization
from decision_governance.services.notification import NotificationService
from decision_governance.services.scheduler_service import register_job
from decision_governance.utils.helpers import atomic

logger = logging.getLogger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def flag_stale_reviews(organization_id, *, staleness_days, now=None) -> int:
    """Open one needs_review notification per decision not reviewed within ``staleness_days``."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=staleness_days)
    flagged = 0
    decisions = (
        Decision.query_for_org(organization_id)
        .filter(Decision.lifecycle != Lifecycle.RETIRED.value)
        .order_by(Decision.id)
        .all()
    )
    for decision in decisions:
        reviewed = _aware(decision.last_reviewed_at or decision.created_at)
        if reviewed is None or reviewed > cutoff:
            continue
        if NotificationService.open_notification(
            organization_id, decision.id, NotificationType.NEEDS_REVIEW.value,
        ) is not None:
            continue
        NotificationService.notify_needs_review(decision, (now - reviewed).days)
        flagged += 1
    return flagged


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Health Sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("health_sweep")
def health_sweep(app) -> dict[str, Any]:
    """Re-evaluate every non-retired decision and flag overdue reviews."""
    staleness_days = app.config.get("REVIEW_STALENESS_DAYS", 90)
    results = {"organizations": 0, "decisions_changed": 0, "needs_review": 0}

    for org in Organization.query.order_by(Organization.id).all():
        with atomic():
            results["decisions_changed"] += evaluate_organization(
                org.id, TriggeredBy.CONSTRAINT_VIOLATION.value,
            )
            results["needs_review"] += flag_stale_reviews(org.id, staleness_days=staleness_days)
        results["organizations"] += 1

    logger.info("Health sweep: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Conflict Rescan
# ═══════════════════════════════════════════════════════════════════════════

@register_job("conflict_rescan")
def conflict_rescan(app) -> dict[str, Any]:
    """Full pairwise conflict scan of every organisation."""
    results = {"organizations": 0, "assumption_conflicts": 0, "decision_conflicts": 0}

    for org in Organization.query.order_by(Organization.id).all():
        counts = detect_conflicts(org.id)
        results["assumption_conflicts"] += counts["assumption_conflicts"]
        results["decision_conflicts"] += counts["decision_conflicts"]
        results["organizations"] += 1

    logger.info("Conflict rescan: %s", results)
    return results
