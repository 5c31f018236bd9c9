"""
Applicability / selection condition evaluator.

Conditions are a map of attribute key → expectation, AND-ed together:

    {"has_mortgage": True}                         literal equality
    {"property_value": {">=": 500000}}             operator map
    {"tenure": {"in": ["freehold", "leasehold"]}}  membership

Keys are restricted to ``MATTER_ATTRIBUTE_TYPES`` and every value is type
checked against the key's declared type.  Anything that cannot be decided
raises ``ApplicabilityEvaluationError``; ``evaluate_or_false`` is the
caller-side wrapper that logs the warning and treats the condition as false.
"""

import logging

from matterflow.core.exceptions import ApplicabilityEvaluationError, ValidationError
from matterflow.models.matter import MATTER_ATTRIBUTE_TYPES

logger = logging.getLogger(__name__)

COMPARISON_OPERATORS = frozenset({"==", "!=", ">", ">=", "<", "<="})
MEMBERSHIP_OPERATORS = frozenset({"in", "not_in"})
OPERATORS = COMPARISON_OPERATORS | MEMBERSHIP_OPERATORS

_ORDERING_OPERATORS = frozenset({">", ">=", "<", "<="})

_TYPE_NAMES = {bool: "boolean", float: "number", str: "string"}


def _matches_type(value, expected_type) -> bool:
    if expected_type is float:
        # bool is an int subclass; never accept it as a number
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return isinstance(value, expected_type)


def _check_value(key: str, value, expected_type, role: str) -> None:
    if not _matches_type(value, expected_type):
        raise ApplicabilityEvaluationError(
            key,
            f"{role} for '{key}' must be a {_TYPE_NAMES[expected_type]}, got {type(value).__name__}",
        )


def _attribute_value(key: str, attributes: dict):
    expected_type = MATTER_ATTRIBUTE_TYPES.get(key)
    if expected_type is None:
        raise ApplicabilityEvaluationError(key, f"Unknown matter attribute '{key}'")
    value = (attributes or {}).get(key)
    if value is None:
        raise ApplicabilityEvaluationError(key, f"Matter attribute '{key}' is not available")
    _check_value(key, value, expected_type, "Attribute value")
    return value, expected_type


def _apply_operator(key: str, operator: str, operand, actual, expected_type) -> bool:
    if operator not in OPERATORS:
        raise ApplicabilityEvaluationError(key, f"Unknown operator '{operator}' for '{key}'")

    if operator in MEMBERSHIP_OPERATORS:
        if not isinstance(operand, (list, tuple)) or not operand:
            raise ApplicabilityEvaluationError(
                key, f"Operator '{operator}' for '{key}' needs a non-empty list",
            )
        for item in operand:
            _check_value(key, item, expected_type, "List item")
        found = actual in operand
        return found if operator == "in" else not found

    _check_value(key, operand, expected_type, "Expected value")
    if operator in _ORDERING_OPERATORS and expected_type is not float:
        raise ApplicabilityEvaluationError(
            key, f"Operator '{operator}' is only valid for numeric attributes, not '{key}'",
        )

    if operator == "==":
        return actual == operand
    if operator == "!=":
        return actual != operand
    if operator == ">":
        return actual > operand
    if operator == ">=":
        return actual >= operand
    if operator == "<":
        return actual < operand
    return actual <= operand


def evaluate_condition(key: str, expectation, attributes: dict) -> bool:
    """Evaluate one entry of a condition map."""
    actual, expected_type = _attribute_value(key, attributes)

    if isinstance(expectation, dict):
        if not expectation:
            raise ApplicabilityEvaluationError(key, f"Empty operator map for '{key}'")
        return all(
            _apply_operator(key, op, operand, actual, expected_type)
            for op, operand in expectation.items()
        )

    _check_value(key, expectation, expected_type, "Expected value")
    return actual == expectation


def evaluate_conditions(conditions: dict | None, attributes: dict) -> bool:
    """True when every condition holds; an empty map always holds.

    Raises:
        ApplicabilityEvaluationError: a condition cannot be decided.
    """
    if not conditions:
        return True
    if not isinstance(conditions, dict):
        raise ApplicabilityEvaluationError("*", "Conditions must be a mapping of attribute → expectation")
    for key, expectation in conditions.items():
        if not evaluate_condition(key, expectation, attributes):
            return False
    return True


def evaluate_or_false(conditions: dict | None, attributes: dict, **log_context) -> bool:
    """``evaluate_conditions`` for callers that must reach a decision.

    An undecidable condition is logged as a warning and counts as false.
    """
    try:
        return evaluate_conditions(conditions, attributes)
    except ApplicabilityEvaluationError as exc:
        logger.warning(
            "Applicability evaluation failed for '%s': %s; treating as not met",
            exc.key, exc, extra=log_context,
        )
        return False


def _describe_expectation(expectation) -> str:
    if isinstance(expectation, dict):
        return " and ".join(f"{op} {operand}" for op, operand in expectation.items())
    return str(expectation)


def describe_unmet(conditions: dict | None, attributes: dict) -> list[str]:
    """Human-readable list of the conditions that do not hold.

    Example: ``["has_mortgage = False (required: True)"]``.
    """
    unmet = []
    for key, expectation in (conditions or {}).items():
        try:
            if evaluate_condition(key, expectation, attributes):
                continue
            unmet.append(
                f"{key} = {(attributes or {}).get(key)} (required: {_describe_expectation(expectation)})"
            )
        except ApplicabilityEvaluationError as exc:
            unmet.append(f"{key}: {exc}")
    return unmet


def validate_condition_map(conditions, field_name: str = "applicability_conditions") -> None:
    """Authoring-time check of a condition map's shape, keys and value types.

    Raises:
        ValidationError: the map could never be evaluated.
    """
    if conditions is None:
        return
    if not isinstance(conditions, dict):
        raise ValidationError(
            f"{field_name} must be an object",
            details={field_name: "must map attribute keys to expectations"},
        )
    for key, expectation in conditions.items():
        expected_type = MATTER_ATTRIBUTE_TYPES.get(key)
        if expected_type is None:
            raise ValidationError(
                f"Unknown matter attribute '{key}' in {field_name}",
                details={field_name: {key: f"unknown; known keys: {sorted(MATTER_ATTRIBUTE_TYPES)}"}},
            )
        try:
            # Evaluate against a sample of the right type; only shape errors matter here.
            sample = {bool: True, float: 0, str: ""}[expected_type]
            evaluate_condition(key, expectation, {key: sample})
        except ApplicabilityEvaluationError as exc:
            raise ValidationError(str(exc), details={field_name: {key: str(exc)}}) from exc
