"""
posregistry.scoring — Maps a settled task outcome to a reputation delta.

    success  →  min(0.1, amount / 10)
    partial  →  amount / 20           (not capped here; the ledger clamps the score)
    failed   →  -0.05                 (also any unrecognized outcome)

Amounts that are not finite positive numbers fall back to DEFAULT_AMOUNT.
"""

import math
from enum import Enum
from typing import Any

__all__ = [
    "TaskOutcome",
    "DEFAULT_AMOUNT",
    "SUCCESS_CAP",
    "FAILURE_PENALTY",
    "sanitize_amount",
    "derive_delta",
]

DEFAULT_AMOUNT = 0.05
SUCCESS_CAP = 0.1
FAILURE_PENALTY = -0.05


class TaskOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


def sanitize_amount(amount: Any) -> float:
    """Coerce a claimed payment amount to a finite positive float."""
    if isinstance(amount, bool):
        return DEFAULT_AMOUNT
    try:
        value = float(amount)
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_AMOUNT
    if not math.isfinite(value) or value <= 0:
        return DEFAULT_AMOUNT
    return value


def derive_delta(outcome: Any, amount: Any) -> float:
    """Signed reputation delta for a settled task. Never raises."""
    value = sanitize_amount(amount)
    tag = outcome.value if isinstance(outcome, TaskOutcome) else outcome

    if tag == TaskOutcome.SUCCESS.value:
        return min(SUCCESS_CAP, value / 10)
    if tag == TaskOutcome.PARTIAL.value:
        return value / 20
    return FAILURE_PENALTY
