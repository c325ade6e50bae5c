"""
Offer Catalog Resolver
======================

Picks the offer token to purchase from a store's subscription offer list.

A trial offer is recognised, in order, by:
1. ``offer_id`` equal to the configured trial offer id
2. the trial offer id appearing in ``offer_tags``
3. a free weekly phase followed by a paid, infinitely recurring monthly phase

All functions are pure.
"""

from typing import Iterable, Optional

from app.core.products import ProductCatalog, get_product_catalog
from app.schemas.offers import (
    OfferDetail,
    PricingPhase,
    StandardOfferResolution,
    TrialOfferResolution,
)

TRIAL_BILLING_PERIODS = frozenset({"P7D", "P1W"})
MONTHLY_BILLING_PERIOD = "P1M"


def _is_free_trial_phase(phase: PricingPhase) -> bool:
    return phase.is_free and phase.billing_period in TRIAL_BILLING_PERIODS


def _is_paid_monthly_recurring(phase: PricingPhase) -> bool:
    return (
        phase.is_paid
        and phase.is_infinite_recurring
        and phase.billing_period == MONTHLY_BILLING_PERIOD
    )


def has_trial_pricing_pattern(offer: OfferDetail) -> bool:
    phases = offer.pricing_phases
    return any(_is_free_trial_phase(p) for p in phases) and any(
        _is_paid_monthly_recurring(p) for p in phases
    )


def is_trial_offer(offer: OfferDetail, catalog: Optional[ProductCatalog] = None) -> bool:
    catalog = catalog or get_product_catalog()
    trial_id = catalog.monthly_trial_offer_id

    if offer.offer_id == trial_id:
        return True
    if trial_id in offer.offer_tags:
        return True
    return has_trial_pricing_pattern(offer)


def resolve_trial_offer(
    offers: Optional[Iterable[OfferDetail]],
    catalog: Optional[ProductCatalog] = None,
) -> TrialOfferResolution:
    """First trial offer (catalog order) that carries a usable token."""
    catalog = catalog or get_product_catalog()

    for offer in offers or ():
        if offer.has_token and is_trial_offer(offer, catalog):
            return TrialOfferResolution(is_eligible=True, offer_token=offer.offer_token)

    return TrialOfferResolution(is_eligible=False, offer_token=None)


def resolve_standard_offer(
    offers: Optional[Iterable[OfferDetail]],
    catalog: Optional[ProductCatalog] = None,
) -> StandardOfferResolution:
    """
    Non-trial offer to buy without a trial.

    Prefers one with a paid monthly recurring phase, otherwise the first
    non-trial offer with a token.
    """
    catalog = catalog or get_product_catalog()

    candidates = [
        offer
        for offer in offers or ()
        if offer.has_token and not is_trial_offer(offer, catalog)
    ]
    if not candidates:
        return StandardOfferResolution(offer_token=None)

    for offer in candidates:
        if any(_is_paid_monthly_recurring(phase) for phase in offer.pricing_phases):
            return StandardOfferResolution(offer_token=offer.offer_token)

    return StandardOfferResolution(offer_token=candidates[0].offer_token)


def get_display_price(
    offers: Optional[Iterable[OfferDetail]],
    fallback: Optional[str] = None,
) -> Optional[str]:
    """
    Formatted recurring price for a price label.

    Skips free trial phases so a trial offer still shows the price the
    user will pay afterwards.
    """
    for offer in offers or ():
        for phase in offer.pricing_phases:
            if phase.is_paid and phase.is_infinite_recurring and phase.formatted_price:
                return phase.formatted_price
    return fallback
