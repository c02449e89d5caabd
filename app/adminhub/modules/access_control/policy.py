"""
Attribute-based policy evaluation.

Pure functions: the evaluator never touches the database, so it can be
exercised with plain mappings and ``PolicyRule`` values.
"""
from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Canonical operator names plus the symbolic spellings found in seed data.
OPERATOR_ALIASES: dict[str, str] = {
    "eq": "eq",
    "==": "eq",
    "=": "eq",
    "neq": "neq",
    "!=": "neq",
    "<>": "neq",
    "gt": "gt",
    ">": "gt",
    "gte": "gte",
    ">=": "gte",
    "lt": "lt",
    "<": "lt",
    "lte": "lte",
    "<=": "lte",
    "in": "in",
}
OPERATORS = frozenset(OPERATOR_ALIASES.values())


@dataclass(frozen=True)
class PolicyRule:
    id: int | None
    feature_id: int | None
    attribute: str
    operator: str
    value: str


@dataclass(frozen=True)
class Violation:
    policy_id: int | None
    feature_id: int | None
    attribute: str
    expected_value: str
    actual_value: str | None


@dataclass(frozen=True)
class PolicyResult:
    passed: bool
    violations: list[Violation] = field(default_factory=list)


def normalize_operator(op: str | None) -> str | None:
    """Return the canonical operator name, or None when the operator is unknown."""
    if op is None:
        return None
    return OPERATOR_ALIASES.get(op.strip().lower())


def validate_operator(op: str | None) -> list[str]:
    errors = []
    if not (op or "").strip():
        errors.append("Operator is required.")
    elif normalize_operator(op) is None:
        errors.append(f"Unknown operator {op!r}. Must be one of: {', '.join(sorted(OPERATOR_ALIASES))}")
    return errors


def _as_number(v: Any) -> float | None:
    if isinstance(v, bool) or v is None:
        return None
    if isinstance(v, (int, float)):
        return float(v) if math.isfinite(v) else None
    if isinstance(v, str):
        try:
            n = float(v.strip())
        except ValueError:
            return None
        return n if math.isfinite(n) else None
    return None


def as_text(v: Any) -> str | None:
    """Render an attribute value the way it is stored in policy_violations.actual_value."""
    if v is None:
        return None
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return str(v).strip()


def _compare(op: str, actual: Any, expected: str) -> bool:
    if op == "in":
        allowed = {part.strip() for part in expected.split(",") if part.strip()}
        text = as_text(actual)
        if text in allowed:
            return True
        # "3.0" against "3,4" still matches numerically
        n = _as_number(actual)
        return n is not None and any(_as_number(a) == n for a in allowed)

    left_n, right_n = _as_number(actual), _as_number(expected)
    if left_n is not None and right_n is not None:
        left, right = left_n, right_n
    else:
        left, right = as_text(actual) or "", expected.strip()
        if isinstance(actual, bool):
            right = right.lower()

    if op == "eq":
        return left == right
    if op == "neq":
        return left != right
    if op == "gt":
        return left > right
    if op == "gte":
        return left >= right
    if op == "lt":
        return left < right
    if op == "lte":
        return left <= right
    raise ValueError(f"unhandled operator {op!r}")


def check_policy(attributes: Mapping[str, Any], policy: PolicyRule) -> Violation | None:
    """Evaluate one policy. Returns the violation, or None when the policy holds."""
    actual = attributes.get(policy.attribute)
    violation = Violation(
        policy_id=policy.id,
        feature_id=policy.feature_id,
        attribute=policy.attribute,
        expected_value=policy.value,
        actual_value=as_text(actual),
    )
    if actual is None:
        return violation

    op = normalize_operator(policy.operator)
    if op is None:
        logger.error(
            "Policy %s has unknown operator %r; treating as failed (feature_id=%s)",
            policy.id,
            policy.operator,
            policy.feature_id,
        )
        return violation

    return None if _compare(op, actual, policy.value) else violation


def evaluate(attributes: Mapping[str, Any], policies: Iterable[PolicyRule]) -> PolicyResult:
    """
    All policies must hold (AND). Every failing policy is reported, not just the first.
    No policies means the feature is unconditionally available.
    """
    violations = []
    for policy in policies:
        v = check_policy(attributes, policy)
        if v is not None:
            violations.append(v)
    return PolicyResult(passed=not violations, violations=violations)
