"""
Base schemas used across the application.
"""
from datetime import datetime, timezone
from typing import Optional, Any, Dict
from pydantic import BaseModel, Field, ConfigDict


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ResponseBase(BaseModel):
    """Base response format for API endpoints with an optional arbitrary data payload."""
    success: bool = True
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utc_now)
    data: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)


class PostbackResponse(ResponseBase):
    """Envelope returned to postback senders.

    ``outcome`` is one of DELIVERED, FALLBACK_DELIVERED, IGNORED, FAILED. Delivery
    counts live under ``data["broadcast"]``.
    """
    request_id: Optional[str] = None
    outcome: Optional[str] = None
    reason: Optional[str] = None
    identifier: Optional[str] = None
