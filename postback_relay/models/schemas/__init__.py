from .base import ResponseBase, PostbackResponse
from .postback import PostbackEvent
from .attribution import ConversionRecord, TrafficSource
from .audit import (
    AuditPeriodRequest,
    AuditFinding,
    Recommendation,
    AuditReport,
    IdentifierAuditResult,
)

__all__ = [
    # Base
    "ResponseBase",
    "PostbackResponse",

    # Intake
    "PostbackEvent",

    # Attribution
    "ConversionRecord",
    "TrafficSource",

    # Audit
    "AuditPeriodRequest",
    "AuditFinding",
    "Recommendation",
    "AuditReport",
    "IdentifierAuditResult",
]
