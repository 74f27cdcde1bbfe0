"""Pure metric math helpers used by reconciliation & audit reporting."""
from __future__ import annotations

from typing import Sequence


def safe_div(numerator: float | int, denominator: float | int) -> float:
    if denominator in (0, 0.0):
        return 0.0
    return float(numerator) / float(denominator)


def success_rate(total: int, missing: int) -> float:
    """(total - missing) / total as a fraction; 1.0 when there is nothing to deliver."""
    if total <= 0:
        return 1.0
    return safe_div(total - missing, total)


def mean(values: Sequence[float]) -> float | None:
    if not values:
        return None
    return safe_div(sum(values), len(values))


__all__ = ["safe_div", "success_rate", "mean"]
