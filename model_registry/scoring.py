"""Significance scoring for discoveries."""

from __future__ import annotations

from typing import Dict, Iterable

CAPABILITY_WEIGHTS: Dict[str, int] = {
    "reasoning": 10,
    "code": 8,
    "vision": 6,
    "audio": 5,
}

MAX_SCORE = 100


class Severity:
    INFO = "INFO"
    WARN = "WARN"
    CRITICAL = "CRITICAL"


def score(capabilities: Iterable[str]) -> int:
    """Sum of fixed per-capability weights, clamped to [0, 100].
    Pure: same capability set, same score."""
    total = sum(CAPABILITY_WEIGHTS.get(c, 0) for c in set(capabilities))
    return max(0, min(total, MAX_SCORE))


def severity_for(significance: int) -> str:
    if significance >= 20:
        return Severity.CRITICAL
    if significance >= 10:
        return Severity.WARN
    return Severity.INFO
