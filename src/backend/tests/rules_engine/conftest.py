import os
import sys


# Ensure `src/backend` is on sys.path so imports like `import common...` work.
BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

import pytest

from common.rules_engine.models import AccrualRule, EligibilityRule, RuleSet


@pytest.fixture
def make_record():
    def _make(**fields):
        base = {"participantId": "p-1", "amount": 450, "productLine": "Premium"}
        base.update(fields)
        return base

    return _make


@pytest.fixture
def make_rule_set():
    def _make(*, eligibility=(), accrual=()) -> RuleSet:
        return RuleSet(
            eligibility_rules=[
                rule if isinstance(rule, EligibilityRule) else EligibilityRule(**rule) for rule in eligibility
            ],
            accrual_rules=[rule if isinstance(rule, AccrualRule) else AccrualRule(**rule) for rule in accrual],
        )

    return _make
