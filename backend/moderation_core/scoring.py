"""
Triage priority used by the report queue and the case views.

The weights below are part of the public contract: changing any of them
changes observable queue ordering, so bump ``SCORING_VERSION`` with them.
"""

from __future__ import annotations

from .models import Severity


SCORING_VERSION = 1

SEVERITY_WEIGHTS: dict[str, int] = {
    Severity.critical.value: 100,
    Severity.high.value: 70,
    Severity.medium.value: 40,
    Severity.low.value: 10,
}

REPORT_COUNT_STEP = 5
REPORT_COUNT_CAP = 30
AGE_HOURLY_STEP = 0.5
AGE_CAP = 40
SCORE_CAP = 200


def score(severity: str | Severity, report_count: int, age_in_hours: float) -> float:
    key = severity.value if isinstance(severity, Severity) else str(severity)
    try:
        weight = SEVERITY_WEIGHTS[key]
    except KeyError:
        raise ValueError(f"Unknown severity: {severity!r}") from None

    count_part = min(max(0, report_count) * REPORT_COUNT_STEP, REPORT_COUNT_CAP)
    age_part = min(max(0.0, age_in_hours) * AGE_HOURLY_STEP, AGE_CAP)
    return float(min(weight + count_part + age_part, SCORE_CAP))


def normalized_priority(value: float) -> int:
    """Scale a raw score onto the 0-100 range stored on reports."""
    return int(round(min(max(value, 0.0), SCORE_CAP) * 100 / SCORE_CAP))


def severity_rank(severity: str) -> int:
    return SEVERITY_WEIGHTS.get(str(severity), 0)
