"""
Shared pytest fixtures for the Decision Governance Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org / other_org: Pre-created Organization entities
    - lead / member: request headers for a privileged / plain caller
    - scripted: label-keyed classifier doubles installed in the detector
"""

from types import SimpleNamespace

import pytest

from decision_governance import create_app
from decision_governance.models import db as _db
from decision_governance.services import conflict_detector, constraint_service
from decision_governance.services.conflict_classifier import ClassificationResult


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
    # Pluggable collaborators are module state; put the defaults back.
    conflict_detector.set_assumption_classifier(None)
    conflict_detector.set_decision_classifier(None)
    constraint_service.set_constraint_evaluator(None)
    app.config["CONFLICT_DETECTION_ON_WRITE"] = True
    app.config["CONFLICT_CONFIDENCE_THRESHOLD"] = 0.5


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


def _make_org(name):
    from decision_governance.models.organization import Organization
    org = Organization(name=name)
    _db.session.add(org)
    _db.session.commit()
    return org


@pytest.fixture()
def org():
    """Return a fresh Organization."""
    return _make_org("Acme Corp")


@pytest.fixture()
def other_org():
    """A second Organization for isolation tests."""
    return _make_org("Globex")


@pytest.fixture()
def lead():
    """Headers of a privileged caller."""
    return {"X-User": "lena.lead", "X-User-Role": "lead"}


@pytest.fixture()
def member():
    """Headers of a non-privileged caller."""
    return {"X-User": "mo.member"}


@pytest.fixture()
def no_auto_detect(app):
    """Switch off post-write conflict detection for the test."""
    app.config["CONFLICT_DETECTION_ON_WRITE"] = False
    yield
    app.config["CONFLICT_DETECTION_ON_WRITE"] = True


# ── Scripted classifiers ─────────────────────────────────────────────────


class ScriptedClassifier:
    """
    Classifier double keyed on entity labels (decision title, otherwise
    assumption description). Pairs without a score classify as None.
    """

    def __init__(self, conflict_type="CONTRADICTORY"):
        self.conflict_type = conflict_type
        self.scores = {}
        self.calls = []

    def score(self, first, second, confidence):
        self.scores[frozenset((first, second))] = confidence

    def classify(self, a, b):
        self.calls.append((a.id, b.id))
        label_a = getattr(a, "title", None) or a.description
        label_b = getattr(b, "title", None) or b.description
        confidence = self.scores.get(frozenset((label_a, label_b)))
        if confidence is None:
            return None
        return ClassificationResult(self.conflict_type, confidence, f"{label_a} vs {label_b}")


@pytest.fixture()
def scripted():
    """Install scripted assumption and decision classifiers."""
    classifiers = SimpleNamespace(
        assumptions=ScriptedClassifier("CONTRADICTORY"),
        decisions=ScriptedClassifier("RESOURCE_COMPETITION"),
    )
    conflict_detector.set_assumption_classifier(classifiers.assumptions)
    conflict_detector.set_decision_classifier(classifiers.decisions)
    return classifiers
