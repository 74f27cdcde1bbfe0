"""
Pydantic schema for inbound payment-gateway postbacks.

Gateways send short field names (``subid``, ``payout``, ``geo``, ``from``); the
canonical names are accepted as well. Unknown fields are kept in ``model_extra``
and passed through unvalidated.
"""
from decimal import Decimal
from typing import Optional, Any
from pydantic import BaseModel, Field, ConfigDict, AliasChoices, field_validator


class PostbackEvent(BaseModel):
    identifier: str = Field(
        validation_alias=AliasChoices("identifier", "subid", "sub_id"),
        description="Opaque tracking click / conversion key",
    )
    status: str = Field(description="Free-text gateway status")
    payout_amount: Optional[Decimal] = Field(
        None,
        ge=0,
        validation_alias=AliasChoices("payoutAmount", "payout_amount", "payout"),
    )
    geo_code: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("geoCode", "geo_code", "geo"),
    )
    source_token: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("sourceToken", "source_token", "from"),
        description="Coarse origin hint, consumed only by fallback attribution",
    )

    model_config = ConfigDict(
        extra="allow",
        frozen=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        json_schema_extra={
            "example": {
                "subid": "abc12345xyz",
                "status": "dep_confirmed",
                "payout": "25.00",
                "geo": "BR",
                "from": "bettitltr",
            }
        },
    )

    @field_validator("identifier", "status")
    @classmethod
    def validate_required_text(cls, v: str, info):
        if not v:
            raise ValueError(f"{info.field_name} must not be empty")
        return v

    @field_validator("payout_amount", "geo_code", "source_token", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any):
        # Gateways send empty placeholders for optional macros
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("geo_code")
    @classmethod
    def validate_geo_code(cls, v: Optional[str]):
        if v is None:
            return v
        if len(v) != 2 or not v.isalpha():
            raise ValueError("geo_code must be a 2-letter country code")
        return v.upper()

    @property
    def extra_fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})
