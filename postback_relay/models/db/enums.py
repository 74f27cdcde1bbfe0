"""Central Enum definitions for core domain states.

These replace scattered string literals to ensure consistency across
DB models, schemas, and pipeline / audit logic.
"""
from __future__ import annotations
import enum


class SubscriberStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    BANNED = "banned"


class SubscriberRole(str, enum.Enum):
    USER = "user"
    OWNER = "owner"


class NotificationKind(str, enum.Enum):
    DEPOSIT = "deposit"
    SYSTEM = "system"
    ERROR = "error"

# ------------------------ Postback pipeline enums ------------------------ #

class StatusDecision(str, enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    IGNORE = "ignore"


class PipelineStage(str, enum.Enum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    CLASSIFIED = "CLASSIFIED"
    DEDUP_CHECKED = "DEDUP_CHECKED"
    LOOKED_UP = "LOOKED_UP"


class PipelineOutcome(str, enum.Enum):
    DELIVERED = "DELIVERED"
    FALLBACK_DELIVERED = "FALLBACK_DELIVERED"
    IGNORED = "IGNORED"
    FAILED = "FAILED"


class IgnoreReason(str, enum.Enum):
    STATUS_REJECTED = "status_rejected"
    STATUS_IGNORED = "status_ignored"
    DUPLICATE = "duplicate"
    IN_FLIGHT = "in_flight"
    NON_TARGET_CHANNEL = "non_target_channel"
    ATTRIBUTION_UNAVAILABLE = "attribution_unavailable"
    NO_ATTRIBUTION = "no_attribution"


class FailureReason(str, enum.Enum):
    VALIDATION = "validation_error"
    DELIVERY = "delivery_error"
    INTERNAL = "internal_error"

# ------------------------------ Audit enums ------------------------------ #

class MatchStatus(str, enum.Enum):
    SENT = "sent"
    MISSING = "missing"


class ProbableCause(str, enum.Enum):
    NON_TARGET = "non_target"
    NO_FALLBACK_MAPPING = "no_fallback_mapping"
    TOO_RECENT = "too_recent"
    NO_POSTBACK_RECEIVED = "no_postback_received"


__all__ = [
    "SubscriberStatus",
    "SubscriberRole",
    "NotificationKind",
    "StatusDecision",
    "PipelineStage",
    "PipelineOutcome",
    "IgnoreReason",
    "FailureReason",
    "MatchStatus",
    "ProbableCause",
]
