"""
Decision Governance Engine
Tests — Rule-based conflict classifiers (pure, no database).
"""

from types import SimpleNamespace

import pytest

from decision_governance.services.conflict_classifier import (
    AssumptionClassifier,
    DecisionClassifier,
    jaccard,
    tokens,
)


def assumption(id, description, category="", parameters=None):
    return SimpleNamespace(id=id, description=description, category=category,
                           parameters=parameters or {})


def decision(id, title, description="", category="", parameters=None):
    return SimpleNamespace(id=id, title=title, description=description, category=category,
                           parameters=parameters or {})


# ═══════════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestTextHelpers:

    def test_tokens_lowercase_and_keep_apostrophes(self):
        assert tokens("Sales WON'T grow, 2025!") == ["sales", "won't", "grow", "2025"]

    def test_jaccard(self):
        assert jaccard(["a", "b"], ["b", "c"]) == pytest.approx(1 / 3)
        assert jaccard([], []) == 0.0


# ═══════════════════════════════════════════════════════════════════════════
#  Assumptions
# ═══════════════════════════════════════════════════════════════════════════

class TestAssumptionClassifier:

    classifier = AssumptionClassifier()

    def test_same_entity_is_never_a_conflict(self):
        a = assumption(1, "The vendor will deliver on time")
        assert self.classifier.classify(a, a) is None

    def test_negation(self):
        result = self.classifier.classify(
            assumption(1, "The vendor will deliver on time"),
            assumption(2, "The vendor will not deliver on time"),
        )
        assert result.conflict_type == "CONTRADICTORY"
        assert result.confidence == pytest.approx(0.95)

    def test_both_negated_is_not_negation(self):
        assert self.classifier.classify(
            assumption(1, "The vendor will not deliver"),
            assumption(2, "The vendor will not ship"),
        ) is None

    def test_antonyms_in_similar_context(self):
        result = self.classifier.classify(
            assumption(1, "Costs will increase next year"),
            assumption(2, "Costs will decrease next year"),
        )
        assert result.conflict_type == "CONTRADICTORY"
        assert result.confidence == pytest.approx(0.8)
        assert '"increase" vs "decrease"' in result.explanation

    def test_incompatible_states(self):
        result = self.classifier.classify(
            assumption(1, "The portal is always public"),
            assumption(2, "The portal is sometimes private"),
        )
        assert result.conflict_type == "INCOMPATIBLE"
        assert result.confidence == pytest.approx(0.7)
        assert "portal" in result.explanation

    def test_unrelated_statements(self):
        assert self.classifier.classify(
            assumption(1, "Interest rates stay flat"),
            assumption(2, "The new office opens in May"),
        ) is None

    def test_budget_maximum_below_minimum(self):
        result = self.classifier.classify(
            assumption(1, "Budget cap", "BUDGET", {"type": "maximum", "budget": 100}),
            assumption(2, "Budget floor", "budget", {"type": "minimum", "budget": "$200"}),
        )
        assert result.confidence == pytest.approx(0.99)
        assert result.conflict_type == "CONTRADICTORY"

    def test_budget_conflicting_fixed_values(self):
        result = self.classifier.classify(
            assumption(1, "Budget A", "BUDGET", {"type": "fixed", "budget": 100}),
            assumption(2, "Budget B", "BUDGET", {"type": "fixed", "budget": 120}),
        )
        assert result.confidence == pytest.approx(0.95)

    def test_timeline_minimum_past_deadline(self):
        result = self.classifier.classify(
            assumption(1, "Build time", "TIMELINE", {"type": "minimum", "duration": 10, "unit": "weeks"}),
            assumption(2, "Launch date", "TIMELINE", {"type": "deadline", "duration": 6, "unit": "weeks"}),
        )
        assert result.confidence == pytest.approx(0.98)
        assert "10 weeks" in result.explanation

    def test_timeline_units_must_match(self):
        assert self.classifier.classify(
            assumption(1, "Build time", "TIMELINE", {"type": "minimum", "duration": 10, "unit": "days"}),
            assumption(2, "Launch date", "TIMELINE", {"type": "deadline", "duration": 6, "unit": "weeks"}),
        ) is None

    def test_resource_required_above_available(self):
        result = self.classifier.classify(
            assumption(1, "Need", "RESOURCE",
                       {"type": "required", "quantity": 5, "resource_type": "engineers"}),
            assumption(2, "Have", "RESOURCE",
                       {"type": "available", "quantity": 3, "resource_type": "engineers"}),
        )
        assert result.conflict_type == "INCOMPATIBLE"
        assert result.confidence == pytest.approx(0.96)

    def test_opposite_impact_direction(self):
        result = self.classifier.classify(
            assumption(1, "Churn", "MARKET", {"impact_area": "churn", "direction": "increase"}),
            assumption(2, "Churn", "MARKET", {"impact_area": "churn", "direction": "decrease"}),
        )
        assert result.confidence == pytest.approx(0.94)

    def test_structured_rules_need_same_category(self):
        assert self.classifier.classify(
            assumption(1, "Budget cap", "BUDGET", {"type": "maximum", "budget": 100}),
            assumption(2, "Budget floor", "TIMELINE", {"type": "minimum", "budget": 200}),
        ) is None


# ═══════════════════════════════════════════════════════════════════════════
#  Decisions
# ═══════════════════════════════════════════════════════════════════════════

class TestDecisionClassifier:

    classifier = DecisionClassifier()

    def test_opposite_directions(self):
        result = self.classifier.classify(
            decision(1, "Raise prices", category="PRICING", parameters={"direction": "increase"}),
            decision(2, "Cut prices", category="PRICING", parameters={"direction": "Decrease"}),
        )
        assert result.conflict_type == "CONTRADICTORY"
        assert result.confidence == pytest.approx(0.95)

    def test_conflicting_technology(self):
        result = self.classifier.classify(
            decision(1, "Use Postgres", category="TECH",
                     parameters={"component": "db", "technology": "Postgres"}),
            decision(2, "Use MongoDB", category="TECH",
                     parameters={"component": "db", "technology": "MongoDB"}),
        )
        assert result.conflict_type == "MUTUALLY_EXCLUSIVE"
        assert result.confidence == pytest.approx(0.91)

    def test_structured_rules_need_parameters(self):
        assert self.classifier.classify(
            decision(1, "Raise prices", category="PRICING"),
            decision(2, "Cut prices", category="PRICING"),
        ) is None

    def test_resource_competition(self):
        result = self.classifier.classify(
            decision(1, "Allocate budget to marketing"),
            decision(2, "Allocate budget to sales"),
        )
        assert result.conflict_type == "RESOURCE_COMPETITION"
        assert result.confidence == pytest.approx(0.7)

    def test_resource_competition_with_amounts(self):
        result = self.classifier.classify(
            decision(1, "Allocate 50000 budget to marketing"),
            decision(2, "Allocate 30000 budget to sales"),
        )
        assert result.confidence == pytest.approx(0.85)

    def test_contradictory_actions(self):
        result = self.classifier.classify(
            decision(1, "Increase warehouse staffing levels"),
            decision(2, "Decrease warehouse staffing levels"),
        )
        assert result.conflict_type == "CONTRADICTORY"
        assert result.confidence == pytest.approx(0.8)

    def test_premise_invalidation_uses_creation_order(self):
        older = decision(1, "Migrate billing platform to Stripe")
        newer = decision(2, "Replace billing platform migration plan")
        result = self.classifier.classify(older, newer)
        assert result.conflict_type == "PREMISE_INVALIDATION"
        assert result.explanation.startswith('The newer decision "Replace billing')

        swapped = self.classifier.classify(newer, older)
        assert swapped.explanation == result.explanation

    def test_unrelated(self):
        assert self.classifier.classify(
            decision(1, "Open Berlin office"),
            decision(2, "Adopt new logo"),
        ) is None
