"""Threshold rules deciding whether a student needs help."""

import math
from collections import namedtuple
from datetime import timedelta

from models import SEVERITY_RECENT, SEVERITY_WARNING, SEVERITY_CRITICAL

COMPLETION_THRESHOLD = 50.0
SCORE_THRESHOLD = 50.0
WARNING_AFTER_DAYS = 7
CRITICAL_AFTER_DAYS = 14

REASON_LOW_COMPLETION = "Low overall completion rate"
REASON_LOW_SCORE = "Low average score"

SEVERITY_POLICY_ELAPSED = "elapsed"
SEVERITY_POLICY_FIXED = "fixed"
SEVERITY_POLICIES = (SEVERITY_POLICY_ELAPSED, SEVERITY_POLICY_FIXED)

ONE_DAY = timedelta(days=1)

HelpEvaluation = namedtuple("HelpEvaluation", ["needs_help", "reasons"])


def format_overdue_reason(count: int) -> str:
    return f"{count} overdue assignment{'' if count == 1 else 's'}"


def evaluate(total_assignments: int, completion_rate: float,
             average_score: float, overdue_assignments: int) -> HelpEvaluation:
    """
    Decide whether a student needs help.

    A student with no assigned work is never flagged. Otherwise the checks
    run in a fixed order (completion, score, overdue) and each failing check
    appends its reason.

    Returns:
        HelpEvaluation(needs_help, reasons)
    """
    if not total_assignments:
        return HelpEvaluation(False, [])

    reasons = []
    if completion_rate < COMPLETION_THRESHOLD:
        reasons.append(REASON_LOW_COMPLETION)
    if average_score < SCORE_THRESHOLD:
        reasons.append(REASON_LOW_SCORE)
    if overdue_assignments > 0:
        reasons.append(format_overdue_reason(overdue_assignments))

    return HelpEvaluation(bool(reasons), reasons)


def is_recovered(completion_rate: float, average_score: float, overdue_assignments: int) -> bool:
    """All three recovery conditions must hold at once."""
    return (
        completion_rate >= COMPLETION_THRESHOLD
        and average_score >= SCORE_THRESHOLD
        and overdue_assignments == 0
    )


def days_needing_help(since, now) -> int:
    """Whole days since `since`, rounded up, never below 1."""
    elapsed = (now - since) / ONE_DAY
    return max(1, math.ceil(elapsed))


def severity_for(days: int, policy: str = SEVERITY_POLICY_ELAPSED) -> str:
    if policy == SEVERITY_POLICY_FIXED:
        return SEVERITY_RECENT
    if days > CRITICAL_AFTER_DAYS:
        return SEVERITY_CRITICAL
    if days > WARNING_AFTER_DAYS:
        return SEVERITY_WARNING
    return SEVERITY_RECENT
