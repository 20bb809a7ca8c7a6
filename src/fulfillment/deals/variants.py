"""Product variant resolution -- collapse SKU variants onto their parent product.

Stock is tracked per canonical product, so every product row coming from
the CRM passes through ProductVariantResolver before it is written to the
cache. Lookups are memoised for the lifetime of the resolver (one
ingestion run), since a catalog parent does not change mid-run.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from src.fulfillment.deals.crm.adapter import CRMGateway
from src.fulfillment.deals.schemas import RemoteProductRow

logger = structlog.get_logger(__name__)


class ProductVariantResolver:
    """Maps a product id to its canonical (parent) product id.

    Args:
        gateway: CRM gateway used for catalog parent lookups.
    """

    def __init__(self, gateway: CRMGateway) -> None:
        self._gateway = gateway
        self._canonical: dict[int, int] = {}

    async def resolve(self, product_id: int) -> int:
        """Return the parent id if the catalog marks ``product_id`` as a variant.

        A missing or empty parent reference means the product is a root
        product and resolves to itself.
        """
        cached = self._canonical.get(product_id)
        if cached is not None:
            return cached

        parent_id = await self._gateway.get_canonical_parent(product_id)
        canonical = parent_id if parent_id else product_id
        self._canonical[product_id] = canonical

        if canonical != product_id:
            logger.debug(
                "variants.resolved_to_parent",
                product_id=product_id,
                parent_id=canonical,
            )
        return canonical

    async def resolve_rows(
        self, rows: Sequence[RemoteProductRow]
    ) -> list[RemoteProductRow]:
        """Resolve every row and merge rows that share a canonical product.

        Quantities of variants collapsing onto the same parent are summed;
        the output keeps the order in which each canonical id first appears.
        """
        merged: dict[int, float] = {}
        for row in rows:
            canonical = await self.resolve(row.product_id)
            merged[canonical] = merged.get(canonical, 0.0) + row.quantity

        return [
            RemoteProductRow(product_id=product_id, quantity=quantity)
            for product_id, quantity in merged.items()
        ]
