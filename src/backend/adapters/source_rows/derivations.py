from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Any, Callable, Dict, Iterable, Optional

from common.rules_engine.context import InvalidOperandError, to_decimal


Derivation = Callable[[Any, Optional[Decimal]], Any]


class DerivationRegistry:
    def __init__(self):
        self._functions: Dict[str, Derivation] = {}

    def register(self, name: str, fn: Derivation) -> None:
        if not name:
            raise ValueError("Derivation missing name")
        if name in self._functions:
            raise ValueError(f"Duplicate derivation registered: {name}")
        self._functions[name] = fn

    def get(self, name: str) -> Derivation:
        return self._functions[name]

    def names(self) -> Iterable[str]:
        return self._functions.keys()


registry = DerivationRegistry()


def register_derivation(name: str) -> Callable[[Derivation], Derivation]:
    def _decorator(fn: Derivation) -> Derivation:
        registry.register(name, fn)
        return fn

    return _decorator


def _require_argument(argument: Optional[Decimal], name: str) -> Decimal:
    if argument is None:
        raise InvalidOperandError(f"Derivation '{name}' requires an argument.")
    return argument


@register_derivation("ceil_div")
def ceil_div(value: Any, argument: Optional[Decimal]) -> int:
    divisor = _require_argument(argument, "ceil_div")
    if divisor <= 0:
        raise InvalidOperandError("ceil_div divisor must be positive.")
    return int((to_decimal(value) / divisor).to_integral_value(rounding=ROUND_CEILING))


@register_derivation("floor_div")
def floor_div(value: Any, argument: Optional[Decimal]) -> int:
    divisor = _require_argument(argument, "floor_div")
    if divisor <= 0:
        raise InvalidOperandError("floor_div divisor must be positive.")
    return int((to_decimal(value) / divisor).to_integral_value(rounding=ROUND_FLOOR))


@register_derivation("multiply")
def multiply(value: Any, argument: Optional[Decimal]) -> int | float:
    product = to_decimal(value) * _require_argument(argument, "multiply")
    if product == product.to_integral_value():
        return int(product)
    return float(product)


@register_derivation("to_integer")
def to_integer(value: Any, argument: Optional[Decimal]) -> int:
    return int(to_decimal(value).to_integral_value(rounding=ROUND_FLOOR))
