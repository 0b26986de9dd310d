from __future__ import annotations

import hashlib
from decimal import Decimal
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, field_validator


ComparisonOperator = Literal["eq", "ne", "gt", "gte", "lt", "lte"]
OrderingOperator = Literal["gt", "gte", "lt", "lte"]


class FieldEquals(BaseModel):
    kind: Literal["field_equals"] = "field_equals"
    field: str
    value: Any = None


class FieldNotEquals(BaseModel):
    kind: Literal["field_not_equals"] = "field_not_equals"
    field: str
    value: Any = None


class FieldCompare(BaseModel):
    """Compare two fields of the same record."""

    kind: Literal["field_compare"] = "field_compare"
    field: str
    operator: ComparisonOperator = "eq"
    other_field: str


class FieldThreshold(BaseModel):
    """Numeric field against a numeric literal (e.g. amount >= 100)."""

    kind: Literal["field_threshold"] = "field_threshold"
    field: str
    operator: OrderingOperator
    value: Decimal


class And(BaseModel):
    kind: Literal["and"] = "and"
    conditions: List["Condition"] = Field(default_factory=list)


class Or(BaseModel):
    kind: Literal["or"] = "or"
    conditions: List["Condition"] = Field(default_factory=list)


class Not(BaseModel):
    kind: Literal["not"] = "not"
    condition: "Condition"


Condition = Annotated[
    Union[FieldEquals, FieldNotEquals, FieldCompare, FieldThreshold, And, Or, Not],
    Field(discriminator="kind"),
]

And.model_rebuild()
Or.model_rebuild()
Not.model_rebuild()


class CeilDiv(BaseModel):
    kind: Literal["ceil_div"] = "ceil_div"
    field: str
    divisor: Decimal = Field(gt=0)


class Multiply(BaseModel):
    kind: Literal["multiply"] = "multiply"
    field: str
    factor: Decimal
    # Points are whole numbers; the product is rounded with this mode.
    rounding: Literal["floor", "ceiling", "half_up"] = "floor"


class FixedBonus(BaseModel):
    kind: Literal["fixed_bonus"] = "fixed_bonus"
    amount: int = Field(ge=0)


Calculation = Annotated[
    Union[CeilDiv, Multiply, FixedBonus],
    Field(discriminator="kind"),
]


class EligibilityRule(BaseModel):
    id: str
    condition: Condition
    description: str = ""

    @field_validator("condition", mode="before")
    @classmethod
    def _parse_condition_notation(cls, value: Any) -> Any:
        if isinstance(value, str):
            from .notation import parse_condition

            return parse_condition(value)
        return value


class AccrualRule(BaseModel):
    id: str
    # None means the rule applies to every eligible record.
    condition: Optional[Condition] = None
    calculation: Calculation
    description: str = ""

    @field_validator("condition", mode="before")
    @classmethod
    def _parse_condition_notation(cls, value: Any) -> Any:
        if isinstance(value, str):
            from .notation import parse_condition

            return parse_condition(value) if value.strip() else None
        return value

    @field_validator("calculation", mode="before")
    @classmethod
    def _parse_calculation_notation(cls, value: Any) -> Any:
        if isinstance(value, str):
            from .notation import parse_calculation

            return parse_calculation(value)
        return value


class RuleSet(BaseModel):
    eligibility_rules: List[EligibilityRule] = Field(
        default_factory=list,
        validation_alias=AliasChoices("eligibility_rules", "eligibilityRules"),
    )
    accrual_rules: List[AccrualRule] = Field(
        default_factory=list,
        validation_alias=AliasChoices("accrual_rules", "accrualRules"),
    )

    def referenced_fields(self) -> set[str]:
        fields: set[str] = set()
        for rule in self.eligibility_rules:
            fields |= condition_fields(rule.condition)
        for rule in self.accrual_rules:
            if rule.condition is not None:
                fields |= condition_fields(rule.condition)
            field_name = getattr(rule.calculation, "field", None)
            if field_name:
                fields.add(field_name)
        return fields

    def fingerprint(self) -> str:
        raw = self.model_dump_json()
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


class AccrualResult(BaseModel):
    points: int = 0
    applied_rule_ids: List[str] = Field(default_factory=list)


class RecordEvaluation(BaseModel):
    eligible: bool
    failed_rule_ids: List[str] = Field(default_factory=list)
    accrual: AccrualResult = Field(default_factory=AccrualResult)
    rule_set_fingerprint: str = ""

    @property
    def points(self) -> int:
        return self.accrual.points if self.eligible else 0


def condition_fields(condition: Any) -> set[str]:
    if isinstance(condition, (And, Or)):
        out: set[str] = set()
        for child in condition.conditions:
            out |= condition_fields(child)
        return out
    if isinstance(condition, Not):
        return condition_fields(condition.condition)
    if isinstance(condition, FieldCompare):
        return {condition.field, condition.other_field}
    field_name = getattr(condition, "field", None)
    return {field_name} if field_name else set()
