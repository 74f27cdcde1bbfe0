"""Postback status classification.

Gateways use inconsistent status vocabularies, so classification is substring
based with a fixed precedence: rejection first, then lead exclusion, then the
deposit family, then a small legacy exact-match list.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

from postback_relay.config import STATUS_KEYWORDS
from postback_relay.models.db.enums import StatusDecision


@dataclass(frozen=True)
class StatusClassification:
    decision: StatusDecision
    reason: str
    keyword: str | None = None

    @property
    def accepted(self) -> bool:
        return self.decision == StatusDecision.ACCEPT


def _first_match(text: str, keywords: Sequence[str]) -> str | None:
    for keyword in keywords:
        if keyword in text:
            return keyword
    return None


def classify_status(status: str | None, *, keywords: Mapping[str, Sequence[str]] | None = None) -> StatusClassification:
    """Map a free-text gateway status to accept / reject / ignore.

    The lead exclusion is lifted only by the narrow ``lead_override`` substrings
    ("dep", "sale"), not by the full deposit list.
    """
    kw = keywords if keywords is not None else STATUS_KEYWORDS
    raw = (status or "").strip()
    text = raw.lower()
    if not text:
        return StatusClassification(StatusDecision.IGNORE, "empty_status")

    hit = _first_match(text, kw["rejection"])
    if hit:
        return StatusClassification(StatusDecision.REJECT, "rejection_keyword", hit)

    lead_hit = _first_match(text, kw["lead"])
    if lead_hit and not _first_match(text, kw["lead_override"]):
        return StatusClassification(StatusDecision.IGNORE, "lead_keyword", lead_hit)

    hit = _first_match(text, kw["deposit"])
    if hit:
        return StatusClassification(StatusDecision.ACCEPT, "deposit_keyword", hit)

    # Legacy list is compared against the original spelling
    if raw in kw["legacy_exact"]:
        return StatusClassification(StatusDecision.ACCEPT, "legacy", raw)

    return StatusClassification(StatusDecision.IGNORE, "no_indicator")


__all__ = ["StatusClassification", "classify_status"]
