"""
Decision Governance Engine
Tests — Scheduler service and background sweeps.
"""

from datetime import datetime, timedelta, timezone

from decision_governance.models import db
from decision_governance.models.decision import Constraint, Decision
from decision_governance.models.notification import Notification
from decision_governance.models.scheduling import ScheduledJob
from decision_governance.services import assumption_service, decision_service
from decision_governance.services.scheduled_jobs import flag_stale_reviews
from decision_governance.services.scheduler_service import SchedulerService, get_registered_jobs

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _age(decision, days):
    row = db.session.get(Decision, decision.id)
    row.last_reviewed_at = NOW - timedelta(days=days)
    db.session.commit()


# ═══════════════════════════════════════════════════════════════════════════
#  Registry & job records
# ═══════════════════════════════════════════════════════════════════════════

class TestRegistry:

    def test_sweeps_are_registered(self):
        assert {"health_sweep", "conflict_rescan"} <= set(get_registered_jobs())

    def test_ensure_jobs_registered_is_idempotent(self, app):
        created = SchedulerService.ensure_jobs_registered()
        assert {j.job_name for j in created} >= {"health_sweep", "conflict_rescan"}
        assert SchedulerService.ensure_jobs_registered() == []

        job = ScheduledJob.query.filter_by(job_name="health_sweep").one()
        assert job.interval_seconds == app.config["SWEEP_INTERVAL_SECONDS"]
        assert job.is_enabled is True

    def test_toggle_job(self):
        SchedulerService.ensure_jobs_registered()
        paused = SchedulerService.toggle_job("conflict_rescan", False)
        assert paused["is_enabled"] is False
        assert paused["status"] == "paused"
        assert SchedulerService.toggle_job("conflict_rescan", True)["status"] == "active"
        assert SchedulerService.toggle_job("no_such_job", True) is None

    def test_is_due(self):
        job = ScheduledJob(job_name="x", interval_seconds=3600, is_enabled=True)
        assert job.is_due(NOW) is True
        job.last_run_at = NOW - timedelta(minutes=30)
        assert job.is_due(NOW) is False
        job.last_run_at = NOW - timedelta(hours=2)
        assert job.is_due(NOW) is True
        job.is_enabled = False
        assert job.is_due(NOW) is False


# ═══════════════════════════════════════════════════════════════════════════
#  Running jobs
# ═══════════════════════════════════════════════════════════════════════════

class TestRunJob:

    def test_unknown_job(self):
        result = SchedulerService.run_job("no_such_job")
        assert result["status"] == "error"
        assert "Unknown job" in result["error"]

    def test_run_records_history(self, org):
        SchedulerService.ensure_jobs_registered()
        result = SchedulerService.run_job("conflict_rescan")
        assert result["status"] == "success"
        assert result["result"]["organizations"] == 1

        job = ScheduledJob.query.filter_by(job_name="conflict_rescan").one()
        assert job.run_count == 1
        assert job.last_run_status == "success"
        assert job.last_run_result == result["result"]

    def test_run_due_jobs_skips_disabled(self, org):
        SchedulerService.ensure_jobs_registered()
        SchedulerService.toggle_job("health_sweep", False)
        results = SchedulerService.run_due_jobs(now=NOW)
        assert [r["job_name"] for r in results] == ["conflict_rescan"]


# ═══════════════════════════════════════════════════════════════════════════
#  Sweeps
# ═══════════════════════════════════════════════════════════════════════════

class TestHealthSweep:

    def test_sweep_applies_constraints_written_out_of_band(self, org):
        a = assumption_service.create_assumption(org.id, {"description": "Prices hold"})
        decision = decision_service.create_decision(
            org.id, {"title": "Buy servers", "assumption_ids": [a.id],
                     "parameters": {"cost": 5000}},
        )
        db.session.add(Constraint(
            organization_id=org.id, name="Spend ceiling",
            validation_config={"type": "budget_threshold", "operator": "<=", "value": 1000},
        ))
        db.session.commit()

        result = SchedulerService.run_job("health_sweep")
        assert result["status"] == "success"
        assert result["result"]["decisions_changed"] == 1
        assert db.session.get(Decision, decision.id).health_signal == 40

    def test_stale_decisions_flagged_once(self, org):
        fresh = decision_service.create_decision(org.id, {"title": "Fresh"})
        stale = decision_service.create_decision(org.id, {"title": "Stale"})
        _age(fresh, 10)
        _age(stale, 120)

        assert flag_stale_reviews(org.id, staleness_days=90, now=NOW) == 1
        db.session.commit()
        assert flag_stale_reviews(org.id, staleness_days=90, now=NOW) == 0

        notes = Notification.query.filter_by(type="needs_review").all()
        assert [n.decision_id for n in notes] == [stale.id]
        assert "120 days" in notes[0].message

    def test_review_dismisses_and_allows_new_flag(self, org):
        decision = decision_service.create_decision(org.id, {"title": "Stale"})
        _age(decision, 120)
        flag_stale_reviews(org.id, staleness_days=90, now=NOW)
        db.session.commit()

        decision_service.mark_decision_reviewed(org.id, decision.id, actor="lena.lead")
        note = Notification.query.filter_by(type="needs_review").one()
        assert note.dismissed_at is not None

        _age(decision, 100)
        assert flag_stale_reviews(org.id, staleness_days=90, now=NOW) == 1

    def test_retired_decisions_not_flagged(self, org):
        decision = decision_service.create_decision(org.id, {"title": "Old plan"})
        decision_service.retire_decision(org.id, decision.id, actor="lena.lead", is_lead=True)
        _age(decision, 400)
        assert flag_stale_reviews(org.id, staleness_days=90, now=NOW) == 0


class TestConflictRescan:

    def test_rescan_counts_new_conflicts(self, org, other_org, scripted, no_auto_detect):
        scripted.decisions.score("Hire ten engineers", "Freeze hiring", 0.9)
        decision_service.create_decision(org.id, {"title": "Hire ten engineers"})
        decision_service.create_decision(org.id, {"title": "Freeze hiring"})

        first = SchedulerService.run_job("conflict_rescan")["result"]
        assert first == {"organizations": 2, "assumption_conflicts": 0, "decision_conflicts": 1}

        second = SchedulerService.run_job("conflict_rescan")["result"]
        assert second["decision_conflicts"] == 0
