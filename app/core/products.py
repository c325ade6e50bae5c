"""
Product Catalog
===============

Static product tables for premium plans.

The catalog is built once from settings and passed by reference to the
entitlement mapper, the offer resolver and the purchase priority sorter.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from app.config import Settings, get_settings

PLAN_MONTHLY = "monthly"
PLAN_YEARLY = "yearly"

# Sorts after every known product
UNKNOWN_PRODUCT_PRIORITY = 2**31 - 1


@dataclass(frozen=True)
class ProductCatalog:
    """Immutable lookup tables for store product identifiers."""

    monthly_product_id: str
    yearly_product_id: str
    lifetime_product_ids: tuple[str, ...]
    monthly_trial_offer_id: str
    premium_entitlement_id: str = "premium"

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProductCatalog":
        return cls(
            monthly_product_id=settings.MONTHLY_PRODUCT_ID,
            yearly_product_id=settings.YEARLY_PRODUCT_ID,
            lifetime_product_ids=tuple(settings.lifetime_product_ids_list),
            monthly_trial_offer_id=settings.MONTHLY_TRIAL_OFFER_ID,
            premium_entitlement_id=settings.PREMIUM_ENTITLEMENT_ID.strip().lower(),
        )

    @property
    def priority_order(self) -> tuple[str, ...]:
        """Product ids from most to least valuable."""
        return (*self.lifetime_product_ids, self.yearly_product_id, self.monthly_product_id)

    def plan_for_product(self, product_id: Optional[str]) -> Optional[str]:
        """Map a subscription product id to its plan, or None."""
        if not product_id:
            return None
        if product_id == self.monthly_product_id:
            return PLAN_MONTHLY
        if product_id == self.yearly_product_id:
            return PLAN_YEARLY
        return None

    def is_subscription_product(self, product_id: Optional[str]) -> bool:
        return self.plan_for_product(product_id) is not None

    def is_lifetime_product(self, product_id: Optional[str]) -> bool:
        return bool(product_id) and product_id in self.lifetime_product_ids

    def product_priority(self, product_id: Optional[str]) -> int:
        """Lower is preferred; unknown or missing ids sort last."""
        if not product_id:
            return UNKNOWN_PRODUCT_PRIORITY
        try:
            return self.priority_order.index(product_id)
        except ValueError:
            return UNKNOWN_PRODUCT_PRIORITY


@lru_cache
def get_product_catalog() -> ProductCatalog:
    """Build the process-wide catalog from settings (once)."""
    return ProductCatalog.from_settings(get_settings())
