from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping


class MissingFieldError(KeyError):
    pass


class InvalidOperandError(ValueError):
    pass


_MISSING = object()


@dataclass(frozen=True)
class RuleContext:
    """Read-only view over one transaction record's canonical field map."""

    fields: Mapping[str, Any]

    def resolve(self, path: str) -> Any:
        # An exact key wins over dot-notation traversal ("a.b" may be a flat column name).
        value = self.fields.get(path, _MISSING)
        if value is _MISSING and "." in path:
            value = self.fields
            for part in path.split("."):
                if not isinstance(value, Mapping) or part not in value:
                    value = _MISSING
                    break
                value = value[part]
        if value is _MISSING or value is None:
            raise MissingFieldError(path)
        return value

    def resolve_number(self, path: str) -> Decimal:
        return to_decimal(self.resolve(path), path=path)


def to_decimal(value: Any, *, path: str = "") -> Decimal:
    """Coerce a field value to a finite Decimal; NaN and infinities are not operands."""
    number = _as_decimal(value, path)
    if not number.is_finite():
        raise InvalidOperandError(f"Field '{path}' is not a finite number: {value!r}")
    return number


def _as_decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool):
        raise InvalidOperandError(f"Field '{path}' is boolean, not numeric.")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation as exc:
            raise InvalidOperandError(f"Field '{path}' is not numeric: {value!r}") from exc
    raise InvalidOperandError(f"Field '{path}' has unsupported type {type(value).__name__}.")


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)
