"""
Purchase Priority Sorter
========================

Orders purchases so that the most valuable product comes first
(lifetime, then yearly, then monthly). Used to pick one canonical
purchase when a user holds several valid ones.
"""

from collections.abc import Mapping
from typing import Any, Iterable, Optional, TypeVar

from app.core.products import ProductCatalog, get_product_catalog

T = TypeVar("T")


def _product_id_of(purchase: Any) -> Optional[str]:
    if isinstance(purchase, str):
        return purchase
    if isinstance(purchase, Mapping):
        value = purchase.get("productId", purchase.get("product_id"))
    else:
        value = getattr(purchase, "product_id", None)
    return value if isinstance(value, str) else None


def get_product_priority(
    product_id: Optional[str],
    catalog: Optional[ProductCatalog] = None,
) -> int:
    """Rank of ``product_id``; lower is preferred, unknown ids rank last."""
    catalog = catalog or get_product_catalog()
    return catalog.product_priority(product_id)


def sort_by_priority(
    purchases: Iterable[T],
    catalog: Optional[ProductCatalog] = None,
) -> list[T]:
    """
    Return a new list sorted by product priority.

    The sort is stable: purchases of equal rank keep their input order.
    Accepts mappings (``productId`` / ``product_id``), objects with a
    ``product_id`` attribute, or bare product id strings.
    """
    catalog = catalog or get_product_catalog()
    return sorted(purchases, key=lambda purchase: catalog.product_priority(_product_id_of(purchase)))
