"""
Billing API Endpoints
=====================

Offer selection and purchase ordering for the in-app purchase flow.

Both endpoints are pure: they read nothing from the database and write
nothing. The client posts what the store SDK returned and gets back the
offer token to buy, or the canonical purchase to validate.
"""

import logging

from fastapi import APIRouter

from app.dependencies import Catalog
from app.schemas.offers import (
    OfferResolveRequest,
    OfferResolveResponse,
    PrioritizeRequest,
    PrioritizeResponse,
)
from app.services.offer_catalog import (
    get_display_price,
    resolve_standard_offer,
    resolve_trial_offer,
)
from app.services.purchase_priority import get_product_priority, sort_by_priority

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/offers/resolve",
    response_model=OfferResolveResponse,
)
async def resolve_offers(
    request: OfferResolveRequest,
    catalog: Catalog,
):
    """
    Pick the trial and standard offer tokens from a subscription offer list.
    """
    trial = resolve_trial_offer(request.offers, catalog)
    standard = resolve_standard_offer(request.offers, catalog)

    logger.debug(
        "Resolved %d offers: trial_eligible=%s standard=%s",
        len(request.offers),
        trial.is_eligible,
        standard.offer_token is not None,
    )

    return OfferResolveResponse(
        success=True,
        data={
            "trial": trial.model_dump(by_alias=True),
            "standard": standard.model_dump(by_alias=True),
            "displayPrice": get_display_price(request.offers, request.fallback_display_price),
        },
    )


@router.post(
    "/purchases/prioritize",
    response_model=PrioritizeResponse,
)
async def prioritize_purchases(
    request: PrioritizeRequest,
    catalog: Catalog,
):
    """
    Sort purchases by product priority (lifetime, yearly, monthly).

    ``canonical`` is the first entry, or null for an empty list.
    """
    ordered = sort_by_priority(request.purchases, catalog)
    purchases = [
        {
            **purchase.model_dump(by_alias=True, exclude_none=True),
            "priority": get_product_priority(purchase.product_id, catalog),
        }
        for purchase in ordered
    ]

    return PrioritizeResponse(
        success=True,
        data={
            "purchases": purchases,
            "canonical": purchases[0] if purchases else None,
        },
    )
