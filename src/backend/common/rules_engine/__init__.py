"""Declarative eligibility/accrual rules for campaign transaction records.

This package intentionally contains only domain logic:
- Rule inputs are a record's canonical field map + the campaign's RuleSet.
- No database, ledger, or clock access lives here; evaluation is replayable.
"""

from .context import InvalidOperandError, MissingFieldError, RuleContext
from .evaluator import (
    compute_accrual,
    evaluate_calculation,
    evaluate_condition,
    evaluate_eligibility,
    failed_eligibility_rules,
)
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
    RecordEvaluation,
    RuleSet,
)
from .notation import NotationError, parse_calculation, parse_condition
from .runner import evaluate_record
