"""
Pydantic schemas for reconciliation (deposit audit) operations.
"""
from datetime import date, datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, model_validator
from ..db.enums import MatchStatus, ProbableCause
from .attribution import ConversionRecord


class AuditPeriodRequest(BaseModel):
    """Manual audit trigger."""
    date_from: date
    date_to: date

    @model_validator(mode="after")
    def validate_range(self):
        if self.date_to < self.date_from:
            raise ValueError("date_to must not be before date_from")
        return self


class AuditFinding(BaseModel):
    identifier: str
    match_status: MatchStatus
    probable_cause: Optional[ProbableCause] = None
    source_record: ConversionRecord


class Recommendation(BaseModel):
    kind: str = Field(description="Short machine tag, e.g. webhook_health")
    priority: str = Field(description="high|medium|low")
    cause: ProbableCause
    count: int
    message: str
    action: str


class AuditReport(BaseModel):
    """Result of one reconciliation run over a period.

    ``success_rate`` is a fraction in [0, 1]: (target - missing) / target, 1.0 when
    the period has no target-channel conversions.
    """
    audit_id: str
    period: Dict[str, str]
    generated_at: datetime
    duration_ms: float = 0.0
    total_conversions: int
    target_channel_count: int
    sent_count: int
    missing_count: int
    success_rate: float
    delivery_log_count: int = 0
    matched_identifiers_count: int = 0
    cause_histogram: Dict[str, int] = Field(default_factory=dict)
    findings: List[AuditFinding] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)

    @property
    def missing(self) -> List[AuditFinding]:
        return [f for f in self.findings if f.match_status == MatchStatus.MISSING]


class IdentifierAuditResult(BaseModel):
    identifier: str
    status: str = Field(description="not_found_in_tracker|notification_sent|notification_missing")
    is_target_channel: bool = False
    conversion: Optional[ConversionRecord] = None
    delivery_log: Optional[Dict[str, Any]] = None
