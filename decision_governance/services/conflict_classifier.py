"""
Rule-based conflict classifiers.

A classifier looks at one pair of entities and returns a
``ClassificationResult`` (type, confidence, explanation) or None. The
detector owns thresholds and persistence; classifiers are pure.

AssumptionClassifier strategies, first hit wins:
    1. structured parameters (same category): budget, timeline, resource,
       impact direction
    2. negation with a similar core statement
    3. antonym pair in a similar context
    4. incompatible states about shared topics

DecisionClassifier strategies, first hit wins:
    0. structured parameters (same category) on shared keys
    1. resource competition
    2. contradictory actions
    3. objective undermining
    4. premise invalidation (newer decision against older one)

Alternatives are installed through conflict_detector.set_assumption_classifier
and set_decision_classifier; anything with ``classify(a, b)`` works.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from decision_governance.models.conflict import AssumptionConflictType, DecisionConflictType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationResult:
    conflict_type: str
    confidence: float
    explanation: str


# ── Text helpers ─────────────────────────────────────────────────────────────

_TOKEN_RE = re.compile(r"[a-z0-9']+")

_COMMON_WORDS = {
    "the", "a", "an", "will", "would", "should", "could", "may", "might",
    "can", "must", "is", "are", "was", "were", "be", "been", "being",
}

_STOP_WORDS = _COMMON_WORDS | {
    "have", "has", "had", "do", "does", "did", "to", "of", "in", "for",
    "on", "with", "as", "by", "at", "from", "not", "or", "and", "but",
}


def tokens(text: str) -> list[str]:
    return _TOKEN_RE.findall((text or "").lower())


def jaccard(words_a, words_b) -> float:
    a, b = set(words_a), set(words_b)
    union = a | b
    return len(a & b) / len(union) if union else 0.0


def _is_negated(words) -> bool:
    return any(w == "not" or w.endswith("n't") for w in words)


def _has_any(words, stems) -> list[str]:
    """Stems (prefixes) from ``stems`` that start at least one word."""
    return [s for s in stems if any(w.startswith(s) for w in words)]


def _opposed(values_a, values_b, pairs):
    """First (x, y) in ``pairs`` with x on one side and y on the other."""
    for first, second in pairs:
        if (first in values_a and second in values_b) or (second in values_a and first in values_b):
            return first, second
    return None


def _window(words, keyword, size=3):
    for i, w in enumerate(words):
        if w == keyword:
            return words[max(0, i - size): i + size + 1]
    return []


def _num(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(re.sub(r"[^0-9.\-]", "", str(value)))
    except ValueError:
        return None


def _same_category(a, b) -> bool:
    return bool(a.category and b.category and a.parameters and b.parameters) and (
        a.category.strip().upper() == b.category.strip().upper()
    )


# ═════════════════════════════════════════════════════════════════════════════
# Assumptions
# ═════════════════════════════════════════════════════════════════════════════

_ANTONYMS = [
    ("increase", "decrease"), ("more", "less"), ("higher", "lower"),
    ("grow", "shrink"), ("rise", "fall"), ("expand", "contract"),
    ("improve", "worsen"), ("gain", "lose"), ("add", "remove"),
    ("include", "exclude"), ("enable", "disable"), ("allow", "prevent"),
    ("accept", "reject"), ("success", "failure"), ("positive", "negative"),
    ("always", "never"), ("all", "none"),
]

_DIRECTION_OPPOSITES = [
    ("increase", "decrease"), ("improve", "worsen"), ("positive", "negative"),
    ("up", "down"), ("expand", "contract"), ("grow", "shrink"), ("improve", "reduce"),
]

_EXCLUSIVE_PATTERNS = [
    ("always", "sometimes"), ("always", "rarely"), ("never", "sometimes"),
    ("all", "some"), ("none", "some"), ("only", "multiple"),
    ("single", "multiple"), ("mandatory", "optional"), ("required", "optional"),
]

_STATE_CONFLICTS = [
    ("active", "inactive"), ("enabled", "disabled"), ("online", "offline"),
    ("open", "closed"), ("public", "private"),
]


class AssumptionClassifier:
    """Default rule-based classifier for assumption pairs."""

    def classify(self, a, b) -> ClassificationResult | None:
        if a.id is not None and a.id == b.id:
            return None

        if _same_category(a, b):
            result = self._structured(a.category.strip().upper(), a.parameters, b.parameters)
            if result:
                return result

        words_a, words_b = tokens(a.description), tokens(b.description)
        return (
            self._negation(words_a, words_b)
            or self._antonyms(words_a, words_b)
            or self._incompatible(words_a, words_b)
        )

    # ── Strategy 1 ───────────────────────────────────────────────────────

    def _structured(self, category, pa, pb):
        contradictory = AssumptionConflictType.CONTRADICTORY.value
        kind_a, kind_b = pa.get("type"), pb.get("type")

        if category == "BUDGET":
            budget_a, budget_b = _num(pa.get("budget")), _num(pb.get("budget"))
            if budget_a is not None and budget_b is not None:
                if {kind_a, kind_b} == {"maximum", "minimum"}:
                    maximum = budget_a if kind_a == "maximum" else budget_b
                    minimum = budget_b if kind_a == "maximum" else budget_a
                    if maximum < minimum:
                        return ClassificationResult(
                            contradictory, 0.99,
                            f"Maximum budget ({maximum}) is less than minimum budget ({minimum})",
                        )
                if kind_a == kind_b == "fixed" and budget_a != budget_b:
                    return ClassificationResult(
                        contradictory, 0.95,
                        f"Conflicting fixed budgets: {budget_a} vs {budget_b}",
                    )

        elif category == "TIMELINE":
            dur_a, dur_b = _num(pa.get("duration")), _num(pb.get("duration"))
            if dur_a is not None and dur_b is not None and pa.get("unit") == pb.get("unit"):
                unit = pa.get("unit") or ""
                by_kind = {kind_a: dur_a, kind_b: dur_b}
                if {kind_a, kind_b} == {"minimum", "deadline"} and by_kind["minimum"] > by_kind["deadline"]:
                    return ClassificationResult(
                        contradictory, 0.98,
                        f"Minimum duration ({by_kind['minimum']} {unit}) exceeds "
                        f"deadline ({by_kind['deadline']} {unit})",
                    )
                if {kind_a, kind_b} == {"minimum", "maximum"} and by_kind["maximum"] < by_kind["minimum"]:
                    return ClassificationResult(
                        contradictory, 0.97,
                        f"Maximum duration ({by_kind['maximum']} {unit}) is less than "
                        f"minimum duration ({by_kind['minimum']} {unit})",
                    )

        elif category == "RESOURCE":
            qty_a, qty_b = _num(pa.get("quantity")), _num(pb.get("quantity"))
            resource = pa.get("resource_type", pa.get("resourceType"))
            same_resource = resource == pb.get("resource_type", pb.get("resourceType"))
            if same_resource and qty_a is not None and qty_b is not None:
                by_kind = {kind_a: qty_a, kind_b: qty_b}
                if {kind_a, kind_b} == {"required", "available"} and by_kind["required"] > by_kind["available"]:
                    return ClassificationResult(
                        AssumptionConflictType.INCOMPATIBLE.value, 0.96,
                        f"Required {resource} ({by_kind['required']}) exceeds "
                        f"available ({by_kind['available']})",
                    )
                if {kind_a, kind_b} == {"minimum", "maximum"} and by_kind["maximum"] < by_kind["minimum"]:
                    return ClassificationResult(
                        contradictory, 0.95,
                        f"Maximum {resource} ({by_kind['maximum']}) is less than "
                        f"minimum ({by_kind['minimum']})",
                    )

        area = pa.get("impact_area", pa.get("impactArea"))
        if area and area == pb.get("impact_area", pb.get("impactArea")):
            dir_a = str(pa.get("direction") or "").lower()
            dir_b = str(pb.get("direction") or "").lower()
            if dir_a and dir_b and dir_a != dir_b:
                if _opposed(tokens(dir_a), tokens(dir_b), _DIRECTION_OPPOSITES):
                    return ClassificationResult(
                        contradictory, 0.94,
                        f"Opposite impact directions on {area}: {dir_a} vs {dir_b}",
                    )
        return None

    # ── Strategies 2-4 ───────────────────────────────────────────────────

    def _negation(self, words_a, words_b):
        if _is_negated(words_a) == _is_negated(words_b):
            return None

        def core(words):
            return [w for w in words if w not in _COMMON_WORDS and w != "not" and not w.endswith("n't")]

        similarity = jaccard(core(words_a), core(words_b))
        if similarity > 0.6:
            return ClassificationResult(
                AssumptionConflictType.CONTRADICTORY.value,
                round(min(0.95, 0.7 + similarity * 0.25), 4),
                "One assumption negates the other with a similar core statement",
            )
        return None

    def _antonyms(self, words_a, words_b):
        set_a, set_b = set(words_a), set(words_b)
        for first, second in _ANTONYMS:
            if first in set_a and second in set_b:
                word_a, word_b = first, second
            elif second in set_a and first in set_b:
                word_a, word_b = second, first
            else:
                continue
            similarity = jaccard(_window(words_a, word_a), _window(words_b, word_b))
            if similarity > 0.5:
                return ClassificationResult(
                    AssumptionConflictType.CONTRADICTORY.value,
                    round(min(0.9, 0.6 + similarity * 0.3), 4),
                    f'Contradictory keywords "{word_a}" vs "{word_b}" in similar context',
                )
        return None

    def _incompatible(self, words_a, words_b):
        entities_a = {w for w in words_a if len(w) > 3 and w not in _STOP_WORDS}
        shared = sorted(entities_a & {w for w in words_b if len(w) > 3 and w not in _STOP_WORDS})
        if not shared:
            return None

        set_a, set_b = set(words_a), set(words_b)
        score = 0.0
        for first, second in _EXCLUSIVE_PATTERNS:
            if _opposed(set_a, set_b, [(first, second)]):
                score += 0.3
        for first, second in _STATE_CONFLICTS:
            if _opposed(set_a, set_b, [(first, second)]):
                score += 0.4
        score = min(score, 1.0)
        if score > 0.6:
            return ClassificationResult(
                AssumptionConflictType.INCOMPATIBLE.value,
                round(min(0.8, score), 4),
                f"Potentially incompatible assertions about shared topics: {', '.join(shared)}",
            )
        return None


# ═════════════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════════════

_RESOURCE_STEMS = [
    "budget", "money", "cost", "spending", "expense", "investment", "fund",
    "hire", "headcount", "staff", "team", "employee", "personnel",
    "resource", "capacity", "bandwidth", "office", "facility", "equipment",
]

_ALLOCATION_STEMS = ["allocat", "spend", "invest", "assign", "dedicat", "commit"]

_ACTION_CONFLICTS = [
    ("increase", "decrease"), ("reduce", "expand"), ("hire", "layoff"),
    ("add", "remove"), ("start", "stop"), ("create", "delete"),
    ("build", "dismantle"), ("grow", "shrink"), ("accelerate", "slow"),
    ("prioritize", "deprioritize"), ("invest", "divest"), ("acquire", "sell"),
    ("centralize", "decentralize"),
]

_GOAL_STEMS = ["goal", "objective", "target", "aim", "purpose", "outcome", "result", "achiev"]

_UNDERMINING = [
    ("improve", "reduce"), ("enhance", "cut"), ("optimize", "sacrifice"),
    ("quality", "speed"), ("growth", "stability"), ("innovation", "standardize"),
]

_INVALIDATION_STEMS = [
    "replac", "supersed", "cancel", "revers", "obsolet", "deprecat",
    "overrid", "nullif", "void", "abandon",
]

_NEGATIONS = {"no", "not", "never", "none", "neither", "nor", "cannot"}

_FILLER = {"will", "should", "would", "could", "that", "this", "with", "from",
           "decision", "which", "there"}

_DIRECTION_PAIRS = [
    ("increase", "decrease"), ("expand", "reduce"), ("approve", "reject"),
    ("expand", "contract"), ("grow", "shrink"), ("improve", "reduce"),
]

_ACTION_PAIRS = [
    ("allocate", "deallocate"), ("add", "remove"), ("hire", "layoff"),
    ("increase", "decrease"),
]

_APPROACH_PAIRS = [
    ("monolith", "microservices"), ("centralized", "distributed"),
    ("sql", "nosql"), ("synchronous", "asynchronous"),
]


def _lower(value) -> str:
    return str(value or "").strip().lower()


class DecisionClassifier:
    """Default rule-based classifier for decision pairs."""

    def classify(self, a, b) -> ClassificationResult | None:
        if a.id is not None and a.id == b.id:
            return None

        if _same_category(a, b):
            result = self._structured(a, b)
            if result:
                return result

        words_a = tokens(f"{a.title} {a.description or ''}")
        words_b = tokens(f"{b.title} {b.description or ''}")
        return (
            self._resource_competition(a, b, words_a, words_b)
            or self._contradictory_actions(a, b, words_a, words_b)
            or self._objective_undermining(a, b, words_a, words_b)
            or self._premise_invalidation(a, b, words_a, words_b)
        )

    # ── Strategy 0 ───────────────────────────────────────────────────────

    def _structured(self, a, b):
        pa, pb = a.parameters, b.parameters

        def shared(*keys):
            return all(pa.get(k) not in (None, "") and pb.get(k) not in (None, "") for k in keys)

        if shared("direction") and _opposed({_lower(pa["direction"])}, {_lower(pb["direction"])}, _DIRECTION_PAIRS):
            scope = pa.get("impact_area") or pa.get("impactArea") or a.category
            return ClassificationResult(
                DecisionConflictType.CONTRADICTORY.value, 0.95,
                f'Direct conflict on {scope}: "{a.title}" aims to {pa["direction"]} '
                f'while "{b.title}" aims to {pb["direction"]}.',
            )

        if shared("component", "technology") and pa["component"] == pb["component"] \
                and _lower(pa["technology"]) != _lower(pb["technology"]):
            return ClassificationResult(
                DecisionConflictType.MUTUALLY_EXCLUSIVE.value, 0.91,
                f'Conflicting technology decisions for {pa["component"]}: "{a.title}" chooses '
                f'{pa["technology"]} while "{b.title}" chooses {pb["technology"]}.',
            )

        if shared("approach") and _opposed(set(tokens(pa["approach"])), set(tokens(pb["approach"])), _APPROACH_PAIRS):
            return ClassificationResult(
                DecisionConflictType.CONTRADICTORY.value, 0.89,
                f'Fundamentally different architectural approaches: "{a.title}" adopts '
                f'{pa["approach"]} while "{b.title}" adopts {pb["approach"]}.',
            )

        resource_a = pa.get("resource_type", pa.get("resourceType"))
        resource_b = pb.get("resource_type", pb.get("resourceType"))
        if resource_a and resource_a == resource_b and pa.get("timeframe") == pb.get("timeframe"):
            if shared("action") and _opposed({_lower(pa["action"])}, {_lower(pb["action"])}, _ACTION_PAIRS):
                return ClassificationResult(
                    DecisionConflictType.RESOURCE_COMPETITION.value, 0.94,
                    f'Contradictory resource actions on {resource_a}: "{a.title}" plans to '
                    f'{pa["action"]} while "{b.title}" plans to {pb["action"]}.',
                )
            if shared("quantity"):
                return ClassificationResult(
                    DecisionConflictType.RESOURCE_COMPETITION.value, 0.82,
                    f'Both "{a.title}" and "{b.title}" claim {resource_a}; '
                    f"prioritisation or reallocation is needed.",
                )

        if shared("amount") and pa.get("timeframe") == pb.get("timeframe"):
            amount_a, amount_b = _num(pa["amount"]), _num(pb["amount"])
            if amount_a is not None and amount_b is not None and amount_a != amount_b:
                return ClassificationResult(
                    DecisionConflictType.CONTRADICTORY.value, 0.92,
                    f'Conflicting allocations for {pa.get("timeframe") or "the same period"}: '
                    f'"{a.title}" specifies {pa["amount"]} while "{b.title}" specifies {pb["amount"]}.',
                )

        if shared("milestone", "target_date") and pa["milestone"] == pb["milestone"] \
                and pa["target_date"] != pb["target_date"]:
            return ClassificationResult(
                DecisionConflictType.CONTRADICTORY.value, 0.9,
                f'Conflicting target dates for {pa["milestone"]}: "{a.title}" targets '
                f'{pa["target_date"]} while "{b.title}" targets {pb["target_date"]}.',
            )

        area_a = pa.get("impact_area", pa.get("impactArea"))
        if shared("priority") and area_a and area_a == pb.get("impact_area", pb.get("impactArea")) \
                and pa["priority"] != pb["priority"]:
            return ClassificationResult(
                DecisionConflictType.OBJECTIVE_UNDERMINING.value, 0.78,
                f"Both decisions impact {area_a} with different priorities "
                f'({pa["priority"]} vs {pb["priority"]}).',
            )
        return None

    # ── Strategies 1-4 ───────────────────────────────────────────────────

    def _resource_competition(self, a, b, words_a, words_b):
        shared = sorted(set(_has_any(words_a, _RESOURCE_STEMS)) & set(_has_any(words_b, _RESOURCE_STEMS)))
        if not shared:
            return None
        if not (_has_any(words_a, _ALLOCATION_STEMS) and _has_any(words_b, _ALLOCATION_STEMS)):
            return None
        confidence = 0.7
        if any(w.isdigit() for w in words_a) and any(w.isdigit() for w in words_b):
            confidence = 0.85
        if len(shared) >= 2:
            confidence += 0.05
        return ClassificationResult(
            DecisionConflictType.RESOURCE_COMPETITION.value,
            round(min(confidence, 1.0), 4),
            f'Both decisions compete for limited {", ".join(shared)} resources: '
            f'"{a.title}" and "{b.title}" need prioritising.',
        )

    def _contradictory_actions(self, a, b, words_a, words_b):
        pair = _opposed(set(words_a), set(words_b), _ACTION_CONFLICTS)
        if not pair:
            return None
        common = {w for w in words_a if len(w) > 4 and w not in _FILLER} & set(words_b)
        if len(common) < 2:
            return None
        action, opposing = pair if pair[0] in words_a else (pair[1], pair[0])
        return ClassificationResult(
            DecisionConflictType.CONTRADICTORY.value, 0.8,
            f'Direct contradiction: "{a.title}" aims to {action} while "{b.title}" '
            f"aims to {opposing} in the same context.",
        )

    def _objective_undermining(self, a, b, words_a, words_b):
        if not (_has_any(words_a, _GOAL_STEMS) or _has_any(words_b, _GOAL_STEMS)):
            return None
        if not _opposed(set(words_a), set(words_b), _UNDERMINING):
            return None
        return ClassificationResult(
            DecisionConflictType.OBJECTIVE_UNDERMINING.value, 0.75,
            f'"{a.title}" and "{b.title}" have competing priorities; one approach '
            f"could undermine the objectives of the other.",
        )

    def _premise_invalidation(self, a, b, words_a, words_b):
        # ids are assigned in creation order
        if (a.id or 0) <= (b.id or 0):
            older, newer, older_words, newer_words = a, b, words_a, words_b
        else:
            older, newer, older_words, newer_words = b, a, words_b, words_a

        newer_set = set(newer_words)
        if _has_any(newer_words, _INVALIDATION_STEMS):
            shared = {w for w in older_words if len(w) > 5} & newer_set
            if len(shared) >= 2:
                return ClassificationResult(
                    DecisionConflictType.PREMISE_INVALIDATION.value, 0.8,
                    f'The newer decision "{newer.title}" may invalidate the premise of '
                    f'"{older.title}".',
                )

        if newer_set & _NEGATIONS or any(w.endswith("n't") for w in newer_words):
            shared = {w for w in older_words if len(w) > 5 and w not in _FILLER} & newer_set
            if len(shared) >= 3:
                return ClassificationResult(
                    DecisionConflictType.PREMISE_INVALIDATION.value, 0.7,
                    f'"{newer.title}" appears to negate aspects of "{older.title}".',
                )
        return None
