"""
Offer Schemas
=============

Store offer catalog shapes (Google Play Billing subscription offer
details) plus request/response schemas for the billing endpoints.
"""

from enum import IntEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class RecurrenceMode(IntEnum):
    """Google Play ``recurrenceMode`` values."""

    INFINITE_RECURRING = 1
    FINITE_RECURRING = 2
    NON_RECURRING = 3


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class PricingPhase(_CamelModel):
    """One phase of an offer's price schedule."""

    billing_period: str = ""
    price_amount_micros: int = 0
    recurrence_mode: Optional[int] = None
    formatted_price: Optional[str] = None
    billing_cycle_count: Optional[int] = None
    price_currency_code: Optional[str] = None

    @property
    def is_free(self) -> bool:
        return self.price_amount_micros == 0

    @property
    def is_paid(self) -> bool:
        return self.price_amount_micros > 0

    @property
    def is_infinite_recurring(self) -> bool:
        return self.recurrence_mode == RecurrenceMode.INFINITE_RECURRING


class OfferDetail(_CamelModel):
    """A purchasable offer for a subscription base plan."""

    offer_id: Optional[str] = None
    base_plan_id: Optional[str] = None
    offer_tags: list[str] = Field(default_factory=list)
    offer_token: Optional[str] = None
    pricing_phases: list[PricingPhase] = Field(default_factory=list)

    @field_validator("offer_tags", mode="before")
    @classmethod
    def _tags_default(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("pricing_phases", mode="before")
    @classmethod
    def _unwrap_phase_list(cls, value: Any) -> Any:
        # Play Billing nests phases as {"pricingPhaseList": [...]}
        if value is None:
            return []
        if isinstance(value, dict):
            return value.get("pricingPhaseList") or value.get("pricing_phase_list") or []
        return value

    @property
    def has_token(self) -> bool:
        return bool(self.offer_token and self.offer_token.strip())


class TrialOfferResolution(_CamelModel):
    is_eligible: bool = False
    offer_token: Optional[str] = None


class StandardOfferResolution(_CamelModel):
    offer_token: Optional[str] = None


# ─── Request / Response Schemas ──────────────────────────────────────────────


class OfferResolveRequest(_CamelModel):
    """Request schema for offer resolution."""

    offers: list[OfferDetail] = Field(default_factory=list)
    fallback_display_price: Optional[str] = None


class OfferResolveResponse(BaseModel):
    """Response schema for offer resolution."""

    success: bool = True
    data: dict[str, Any]


class PurchaseItem(_CamelModel):
    """A purchase the client holds for the current store account."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    product_id: Optional[str] = None
    purchase_token: Optional[str] = None
    transaction_date: Optional[int] = None


class PrioritizeRequest(_CamelModel):
    """Request schema for purchase prioritization."""

    purchases: list[PurchaseItem] = Field(default_factory=list)


class PrioritizeResponse(BaseModel):
    """Response schema for purchase prioritization."""

    success: bool = True
    data: dict[str, Any]
