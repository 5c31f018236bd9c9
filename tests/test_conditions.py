"""
Applicability condition evaluator tests.

Test blocks:
  1. Equality shorthand and operator maps
  2. Missing attributes and type mismatches
  3. evaluate_or_false / describe_unmet
  4. Authoring-time validation
"""

import pytest

from matterflow.core.exceptions import ApplicabilityEvaluationError, ValidationError
from matterflow.services.conditions import (
    describe_unmet,
    evaluate_conditions,
    evaluate_or_false,
    validate_condition_map,
)


# ── 1. Equality and operators ────────────────────────────────────────────────


def test_empty_conditions_always_hold():
    assert evaluate_conditions(None, {}) is True
    assert evaluate_conditions({}, {"has_mortgage": False}) is True


def test_equality_shorthand():
    assert evaluate_conditions({"has_mortgage": True}, {"has_mortgage": True}) is True
    assert evaluate_conditions({"has_mortgage": True}, {"has_mortgage": False}) is False


def test_all_conditions_must_hold():
    conditions = {"has_mortgage": True, "tenure": "leasehold"}
    assert evaluate_conditions(conditions, {"has_mortgage": True, "tenure": "leasehold"}) is True
    assert evaluate_conditions(conditions, {"has_mortgage": True, "tenure": "freehold"}) is False


def test_numeric_operators():
    attrs = {"property_value": 450000}
    assert evaluate_conditions({"property_value": {">": 400000}}, attrs) is True
    assert evaluate_conditions({"property_value": {">=": 450000, "<": 500000}}, attrs) is True
    assert evaluate_conditions({"property_value": {"<=": 100000}}, attrs) is False


def test_membership_operators():
    attrs = {"tenure": "leasehold"}
    assert evaluate_conditions({"tenure": {"in": ["leasehold", "commonhold"]}}, attrs) is True
    assert evaluate_conditions({"tenure": {"not_in": ["leasehold"]}}, attrs) is False


def test_not_equal_operator():
    assert evaluate_conditions({"funding_source": {"!=": "cash"}}, {"funding_source": "mortgage"}) is True


# ── 2. Missing attributes and type errors ────────────────────────────────────


def test_missing_attribute_is_undecidable():
    """The strict evaluator refuses to guess; callers go through evaluate_or_false."""
    with pytest.raises(ApplicabilityEvaluationError) as exc_info:
        evaluate_conditions({"has_mortgage": True}, {})
    assert exc_info.value.key == "has_mortgage"
    assert evaluate_or_false({"has_mortgage": True}, {}) is False


def test_unknown_key_raises():
    with pytest.raises(ApplicabilityEvaluationError) as exc_info:
        evaluate_conditions({"favourite_colour": "blue"}, {"favourite_colour": "blue"})
    assert exc_info.value.key == "favourite_colour"


def test_type_mismatch_raises():
    with pytest.raises(ApplicabilityEvaluationError):
        evaluate_conditions({"has_mortgage": "yes"}, {"has_mortgage": True})


def test_ordering_operator_on_text_raises():
    with pytest.raises(ApplicabilityEvaluationError):
        evaluate_conditions({"tenure": {">": "a"}}, {"tenure": "leasehold"})


def test_unknown_operator_raises():
    with pytest.raises(ApplicabilityEvaluationError):
        evaluate_conditions({"property_value": {"~=": 1}}, {"property_value": 1})


# ── 3. Decision helpers ──────────────────────────────────────────────────────


def test_evaluate_or_false_swallows_undecidable_conditions():
    assert evaluate_or_false({"has_mortgage": "yes"}, {"has_mortgage": True}) is False
    assert evaluate_or_false({"has_mortgage": True}, {"has_mortgage": True}) is True


def test_describe_unmet_lists_only_failures():
    unmet = describe_unmet(
        {"has_mortgage": True, "tenure": "freehold"},
        {"has_mortgage": False, "tenure": "freehold"},
    )
    assert unmet == ["has_mortgage = False (required: True)"]


# ── 4. Authoring validation ──────────────────────────────────────────────────


def test_validate_condition_map_accepts_known_shapes():
    validate_condition_map(None)
    validate_condition_map({"has_mortgage": True, "property_value": {">": 100000}})


def test_validate_condition_map_rejects_unknown_keys():
    with pytest.raises(ValidationError) as exc_info:
        validate_condition_map({"not_a_field": True})
    assert "applicability_conditions" in exc_info.value.details


def test_validate_condition_map_rejects_non_mapping():
    with pytest.raises(ValidationError):
        validate_condition_map(["has_mortgage"])
