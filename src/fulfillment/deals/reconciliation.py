"""Installer reconciliation -- record what was actually delivered on a deal.

An installation-crew member reports a fact amount per product. The whole
report is applied in one transaction together with ``is_conducted = true``:
either every line item is updated and the deal is conducted, or nothing is.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from src.fulfillment.config import Settings, get_settings
from src.fulfillment.deals.permissions import require_capability
from src.fulfillment.deals.repository import DealStore
from src.fulfillment.deals.schemas import (
    Capability,
    DealProductRead,
    DealWithProducts,
    FactAmountReport,
    UserRead,
)
from src.fulfillment.errors import FulfillmentError, ValidationError

logger = structlog.get_logger(__name__)


class ReconciliationEngine:
    """Applies installer fact-amount reports to the local cache.

    Args:
        store: Local deal cache.
        settings: Application settings. Uses get_settings() if None.
    """

    def __init__(self, store: DealStore, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()

    async def record_fact_amounts(
        self,
        actor: UserRead,
        deal_id: int,
        reports: Sequence[FactAmountReport],
    ) -> list[DealProductRead]:
        """Record delivered quantities and mark the deal conducted.

        Returns:
            The deal's line items after the update, with recomputed totals.

        Raises:
            PermissionDeniedError: If the actor is not on the installation crew.
            ValidationError: If nothing is reported or a fact amount is negative.
            NotFoundError: If the deal or a reported line item does not exist.
        """
        require_capability(actor, Capability.INSTALLATION_CREW, self._settings)

        if not reports:
            raise ValidationError("No fact amounts reported", deal_id=deal_id)

        negative = [r.product_id for r in reports if r.fact_amount < 0]
        if negative:
            raise ValidationError(
                "Fact amounts must not be negative",
                deal_id=deal_id,
                product_ids=negative,
            )

        log = logger.bind(deal_id=deal_id, actor_id=actor.id)
        try:
            rows = await self._store.record_fact_amounts(deal_id, reports)
        except FulfillmentError as exc:
            log.warning("reconciliation.rejected", code=exc.code, error=str(exc))
            raise

        log.info("reconciliation.deal_conducted", reported=len(reports))
        return rows

    async def list_open_deals(self, actor: UserRead) -> list[DealWithProducts]:
        """Deals assigned to the actor that are approved but not yet conducted."""
        require_capability(actor, Capability.INSTALLATION_CREW, self._settings)

        deals = await self._store.list_deals_with_products(assigned_id=actor.id)
        return [d for d in deals if d.is_approved and not d.is_conducted]
