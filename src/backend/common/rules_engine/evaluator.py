from __future__ import annotations

import operator
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any, Callable, Iterable, Mapping

from .context import InvalidOperandError, MissingFieldError, RuleContext, is_number, to_decimal
from .models import (
    AccrualResult,
    AccrualRule,
    And,
    CeilDiv,
    EligibilityRule,
    FieldCompare,
    FieldEquals,
    FieldNotEquals,
    FieldThreshold,
    FixedBonus,
    Multiply,
    Not,
    Or,
)


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
}

_ROUNDING = {
    "floor": ROUND_FLOOR,
    "ceiling": ROUND_CEILING,
    "half_up": ROUND_HALF_UP,
}


def evaluate_condition(condition: Any, ctx: RuleContext) -> bool:
    """
    Evaluate a structured condition against a record.

    Raises MissingFieldError / InvalidOperandError; callers that evaluate whole
    rules go through `condition_holds`, which turns those into False.
    """
    if isinstance(condition, FieldEquals):
        return _values_equal(ctx.resolve(condition.field), condition.value)
    if isinstance(condition, FieldNotEquals):
        return not _values_equal(ctx.resolve(condition.field), condition.value)
    if isinstance(condition, FieldCompare):
        left = ctx.resolve(condition.field)
        right = ctx.resolve(condition.other_field)
        return _compare(left, condition.operator, right, path=condition.field)
    if isinstance(condition, FieldThreshold):
        left = ctx.resolve_number(condition.field)
        return _OPERATORS[condition.operator](left, condition.value)
    if isinstance(condition, And):
        return _combine(condition.conditions, ctx, decisive=False)
    if isinstance(condition, Or):
        return _combine(condition.conditions, ctx, decisive=True)
    if isinstance(condition, Not):
        # An unknown operand stays unknown under negation.
        return not evaluate_condition(condition.condition, ctx)
    raise InvalidOperandError(f"Unsupported condition type: {type(condition).__name__}")


def _combine(children: Iterable[Any], ctx: RuleContext, *, decisive: bool) -> bool:
    """
    Three-valued And/Or.

    A child evaluating to `decisive` (False for And, True for Or) settles the result
    even when a sibling reads a missing field. Otherwise the first missing-field or
    operand error is re-raised so the whole combinator stays unknown.
    """
    unknown: Exception | None = None
    for child in children:
        try:
            if bool(evaluate_condition(child, ctx)) is decisive:
                return decisive
        except (MissingFieldError, InvalidOperandError) as exc:
            if unknown is None:
                unknown = exc
    if unknown is not None:
        raise unknown
    return not decisive


def condition_holds(condition: Any, ctx: RuleContext) -> bool:
    try:
        return evaluate_condition(condition, ctx)
    except (MissingFieldError, InvalidOperandError):
        return False


def evaluate_calculation(calculation: Any, ctx: RuleContext) -> int:
    if isinstance(calculation, FixedBonus):
        return calculation.amount
    if isinstance(calculation, CeilDiv):
        value = ctx.resolve_number(calculation.field) / calculation.divisor
        return int(value.to_integral_value(rounding=ROUND_CEILING))
    if isinstance(calculation, Multiply):
        value = ctx.resolve_number(calculation.field) * calculation.factor
        return int(value.to_integral_value(rounding=_ROUNDING[calculation.rounding]))
    raise InvalidOperandError(f"Unsupported calculation type: {type(calculation).__name__}")


def failed_eligibility_rules(record: Mapping[str, Any], rules: Iterable[EligibilityRule]) -> list[str]:
    ctx = record if isinstance(record, RuleContext) else RuleContext(fields=record)
    return [rule.id for rule in rules if not condition_holds(rule.condition, ctx)]


def evaluate_eligibility(record: Mapping[str, Any], rules: Iterable[EligibilityRule]) -> bool:
    # Empty rule set means every record is eligible.
    return not failed_eligibility_rules(record, rules)


def compute_accrual(record: Mapping[str, Any], rules: Iterable[AccrualRule]) -> AccrualResult:
    ctx = record if isinstance(record, RuleContext) else RuleContext(fields=record)
    total = 0
    applied: list[str] = []
    for rule in rules:
        if rule.condition is not None and not condition_holds(rule.condition, ctx):
            continue
        try:
            points = evaluate_calculation(rule.calculation, ctx)
        except (MissingFieldError, InvalidOperandError):
            continue
        total += points
        applied.append(rule.id)
    return AccrualResult(points=total, applied_rule_ids=applied)


def _values_equal(left: Any, right: Any) -> bool:
    if is_number(left) and is_number(right):
        return to_decimal(left) == to_decimal(right)
    return left == right


def _compare(left: Any, op: str, right: Any, *, path: str) -> bool:
    if op in ("eq", "ne"):
        equal = _values_equal(left, right)
        return equal if op == "eq" else not equal
    if is_number(left) and is_number(right):
        left, right = to_decimal(left), to_decimal(right)
    try:
        return _OPERATORS[op](left, right)
    except TypeError as exc:
        raise InvalidOperandError(f"Cannot order field '{path}' against {type(right).__name__}.") from exc
