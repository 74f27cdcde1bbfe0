"""
Pydantic schemas for tracking-platform conversion snapshots.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class ConversionRecord(BaseModel):
    """Read-only snapshot of one conversion as recorded by the tracking platform."""
    identifier: Optional[str] = Field(None, description="Tracking sub_id; rows without one are skipped by audits")
    sub_id_1: Optional[str] = Field(None, description="Buyer / affiliate id")
    sub_id_2: Optional[str] = None
    sub_id_3: Optional[str] = None
    sub_id_4: Optional[str] = Field(None, description="Creative id")
    sub_id_5: Optional[str] = None
    channel_id: Optional[int] = Field(None, description="Tracking platform traffic source id")
    channel_name: Optional[str] = None
    country_code: Optional[str] = None
    revenue: float = 0.0
    campaign_name: Optional[str] = None
    offer_name: Optional[str] = None
    status: Optional[str] = None
    event_timestamp: Optional[datetime] = None

    @property
    def buyer_id(self) -> Optional[str]:
        return self.sub_id_1


class TrafficSource(BaseModel):
    id: int
    name: str
    state: Optional[str] = None
