from __future__ import annotations

from typing import Any, Mapping

from .context import RuleContext
from .evaluator import compute_accrual, failed_eligibility_rules
from .models import AccrualResult, RecordEvaluation, RuleSet


def evaluate_record(fields: Mapping[str, Any], rule_set: RuleSet) -> RecordEvaluation:
    """Run eligibility then accrual for one record; pure and replayable for audits."""
    ctx = RuleContext(fields=fields)
    failed = failed_eligibility_rules(ctx, rule_set.eligibility_rules)
    accrual = AccrualResult() if failed else compute_accrual(ctx, rule_set.accrual_rules)
    return RecordEvaluation(
        eligible=not failed,
        failed_rule_ids=failed,
        accrual=accrual,
        rule_set_fingerprint=rule_set.fingerprint(),
    )
