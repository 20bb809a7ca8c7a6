"""CRM -> cache ingestion pipeline.

Pulls deals, product rows, users and catalog entries from the CRM gateway
and writes them into the local DealStore.

Per-deal ingestion is a strictly sequential state machine:
1. fetch the deal header (a deal without an assignee is rejected)
2. upsert the header
3. fetch every product row of the deal
4. resolve each row's product onto its canonical parent
5. batch-upsert the resolved rows with fact_amount left untouched

A failure at any step aborts the remaining steps. Steps already committed
stay committed: ingestion is at-least-once, and because every write is an
upsert on a natural key, running it again converges on the same state.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from src.fulfillment.config import Settings, get_settings
from src.fulfillment.deals.crm.adapter import CRMGateway
from src.fulfillment.deals.crm.field_mapping import (
    deal_from_remote,
    product_from_remote,
    user_from_remote,
)
from src.fulfillment.deals.repository import DealStore
from src.fulfillment.deals.schemas import DealProductUpsert, SyncResult
from src.fulfillment.deals.variants import ProductVariantResolver
from src.fulfillment.errors import ValidationError

logger = structlog.get_logger(__name__)


class SyncOrchestrator:
    """Orchestrates ingestion from the CRM into the local cache.

    A fresh ProductVariantResolver (and so a fresh lookup cache) is used
    for every run unless one is injected.

    Args:
        gateway: Remote CRM gateway.
        store: Local deal cache.
        resolver: Optional resolver shared across runs.
        settings: Application settings. Uses get_settings() if None.
    """

    def __init__(
        self,
        gateway: CRMGateway,
        store: DealStore,
        resolver: ProductVariantResolver | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._resolver = resolver
        self._settings = settings or get_settings()

    def _new_resolver(self) -> ProductVariantResolver:
        return self._resolver or ProductVariantResolver(self._gateway)

    # ── Deals ───────────────────────────────────────────────────────────────

    async def ingest_deal(self, deal_id: int) -> SyncResult:
        """Ingest one deal header and its product rows.

        Raises:
            ValidationError: If the CRM deal has no assignee.
            RemoteServiceError: If any CRM call fails.
            StorageError: If a cache write fails.
        """
        log = logger.bind(deal_id=deal_id)

        remote = await self._gateway.get_deal(deal_id)
        header = deal_from_remote(remote, self._settings.DEAL_ASSIGNEE_FIELD)
        if header.assigned_id is None:
            log.warning("sync.deal_unassigned")
            raise ValidationError(
                f"Deal {deal_id} doesn't have assigned id", deal_id=deal_id
            )

        await self._store.upsert_deals([header])
        log.info("sync.deal_header_stored", assigned_id=header.assigned_id)

        written = await self._ingest_rows(deal_id, self._new_resolver())
        log.info("sync.deal_ingested", deal_products=written)
        return SyncResult(deals=1, deal_products=written)

    async def sync_deals(self, filters: Mapping[str, Any] | None = None) -> SyncResult:
        """Upsert the headers of every CRM deal matching ``filters``.

        Deals without an assignee are not actionable and are skipped.
        """
        remote_deals = await self._gateway.list_deals_by_filter(filters)
        headers = [
            deal_from_remote(d, self._settings.DEAL_ASSIGNEE_FIELD) for d in remote_deals
        ]
        assigned = [h for h in headers if h.assigned_id is not None]
        skipped = len(headers) - len(assigned)

        written = await self._store.upsert_deals(assigned)
        logger.info("sync.deals_synced", deals=written, skipped=skipped)
        return SyncResult(deals=written, skipped=skipped)

    async def sync_all_deal_products(self) -> SyncResult:
        """Fetch, resolve and upsert product rows for every cached deal.

        Rows of all deals are collected first and written in one batch, so
        a remote failure part-way through leaves the cache untouched.
        """
        resolver = self._new_resolver()
        deals = await self._store.list_deals()

        pending: list[DealProductUpsert] = []
        for deal in deals:
            pending.extend(await self._resolved_rows(deal.id, resolver))

        written = await self._store.upsert_deal_products(pending)
        logger.info(
            "sync.deal_products_synced",
            deals=len(deals),
            deal_products=written,
        )
        return SyncResult(deal_products=written)

    async def remove_deal(self, deal_id: int) -> bool:
        """Drop a deal (and through the cascade its line items) from the cache."""
        deleted = await self._store.delete_deal(deal_id)
        if not deleted:
            logger.info("sync.deal_not_cached", deal_id=deal_id)
        return deleted

    # ── Users & Catalog ─────────────────────────────────────────────────────

    async def sync_users(self, filters: Mapping[str, Any] | None = None) -> SyncResult:
        """Upsert every CRM user matching ``filters`` (passwords are kept)."""
        remote_users = await self._gateway.list_users_by_filter(filters)
        written = await self._store.upsert_users(
            [user_from_remote(u) for u in remote_users]
        )
        logger.info("sync.users_synced", users=written)
        return SyncResult(users=written)

    async def sync_products(
        self, filters: Mapping[str, Any] | None = None
    ) -> SyncResult:
        """Upsert every CRM catalog entry matching ``filters``."""
        remote_products = await self._gateway.list_products(filters)
        written = await self._store.upsert_products(
            [product_from_remote(p) for p in remote_products]
        )
        logger.info("sync.products_synced", products=written)
        return SyncResult(products=written)

    async def ingest_product(self, product_id: int) -> SyncResult:
        """Upsert a single catalog entry."""
        remote = await self._gateway.get_product(product_id)
        written = await self._store.upsert_products([product_from_remote(remote)])
        logger.info("sync.product_ingested", product_id=product_id)
        return SyncResult(products=written)

    # ── Internals ───────────────────────────────────────────────────────────

    async def _resolved_rows(
        self, deal_id: int, resolver: ProductVariantResolver
    ) -> list[DealProductUpsert]:
        """Steps 3-4: fetch a deal's rows and key them by canonical product."""
        rows = await self._gateway.list_product_rows(deal_id)
        resolved = await resolver.resolve_rows(rows)
        # fact_amount omitted: stored installer reports are kept
        return [
            DealProductUpsert(
                deal_id=deal_id,
                product_id=row.product_id,
                given_amount=row.quantity,
            )
            for row in resolved
        ]

    async def _ingest_rows(self, deal_id: int, resolver: ProductVariantResolver) -> int:
        """Steps 3-5 for one deal."""
        pending = await self._resolved_rows(deal_id, resolver)
        return await self._store.upsert_deal_products(pending)
