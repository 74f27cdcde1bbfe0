"""Exponential backoff with jitter, parameterised per upstream policy.

Keitaro retries use ``BACKOFF_POLICY``; the Telegram transport passes
``TELEGRAM_BACKOFF_POLICY`` and forwards the ``retry_after`` hint Telegram
returns with 429 responses.
"""
from __future__ import annotations

import random
from typing import Mapping, Optional

from postback_relay.config import BACKOFF_POLICY


def compute_backoff_seconds(
    attempt: int,
    *,
    policy: Optional[Mapping[str, float]] = None,
    retry_after: Optional[float] = None,
    base: Optional[float] = None,
    factor: Optional[float] = None,
    max_seconds: Optional[float] = None,
    jitter_pct: Optional[float] = None,
) -> float:
    """
    Delay before retry number ``attempt`` (1-based).

    Explicit keyword values override ``policy``, which overrides
    ``BACKOFF_POLICY``. A server-supplied ``retry_after`` replaces the
    exponential delay, still capped at the policy maximum.
    """
    settings = dict(BACKOFF_POLICY)
    if policy:
        settings.update(policy)
    base = float(base if base is not None else settings["base_seconds"])
    factor = float(factor if factor is not None else settings["factor"])
    max_seconds = float(max_seconds if max_seconds is not None else settings["max_seconds"])
    jitter_pct = float(jitter_pct if jitter_pct is not None else settings["jitter_pct"])

    if retry_after is not None and retry_after >= 0:
        return min(float(retry_after), max_seconds)

    delay = min(base * (factor ** (max(attempt, 1) - 1)), max_seconds)
    if jitter_pct > 0:
        spread = delay * jitter_pct
        delay = random.uniform(delay - spread, delay + spread)
    return max(delay, 0.0)


__all__ = ["compute_backoff_seconds"]
