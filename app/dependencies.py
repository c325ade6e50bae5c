"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

from typing import Annotated

from fastapi import Depends

from app.core.products import ProductCatalog, get_product_catalog
from app.db.session import get_session_factory
from app.services.entitlement_store import EntitlementStore, SqlAlchemyEntitlementStore
from app.services.reconciler import EntitlementReconciler


def get_catalog() -> ProductCatalog:
    """Process-wide product catalog."""
    return get_product_catalog()


def get_entitlement_store() -> EntitlementStore:
    """Entitlement store bound to the application database."""
    return SqlAlchemyEntitlementStore(get_session_factory())


def get_reconciler(
    store: Annotated[EntitlementStore, Depends(get_entitlement_store)],
    catalog: Annotated[ProductCatalog, Depends(get_catalog)],
) -> EntitlementReconciler:
    return EntitlementReconciler(store, catalog)


# Type aliases for cleaner route signatures
Catalog = Annotated[ProductCatalog, Depends(get_catalog)]
Reconciler = Annotated[EntitlementReconciler, Depends(get_reconciler)]
