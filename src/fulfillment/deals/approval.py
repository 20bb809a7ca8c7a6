"""Warehouse approval -- assign a deal and push its product rows to the CRM.

approve_and_assign runs five ordered steps:
1. LOCAL_ASSIGN   persist assigned_id and is_approved locally
2. REMOTE_ASSIGN  write the assignee and approval marker to the CRM deal
3. COMPUTE_ROWS   resolve planned products onto their canonical parent and
                 derive the reported quantity of every row
4. REMOTE_ROWS    overwrite the CRM deal's product rows with that set
5. LOCAL_ROWS     write the rows back locally, keeping fact amounts

A failing step aborts the ones after it. Earlier steps are not undone:
the local commit and the remote push are never atomic together, so a
partially approved deal is brought in line by running the operation again.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from src.fulfillment.config import Settings, get_settings
from src.fulfillment.deals.crm.adapter import CRMGateway
from src.fulfillment.deals.crm.field_mapping import approval_fields
from src.fulfillment.deals.permissions import require_capability
from src.fulfillment.deals.repository import DealStore
from src.fulfillment.deals.schemas import (
    ApprovalResult,
    ApprovalStep,
    Capability,
    DealProductRead,
    DealProductUpsert,
    DealUpdate,
    DealWithProducts,
    PlannedProduct,
    ProductRead,
    ReportedRow,
    UserRead,
)
from src.fulfillment.deals.variants import ProductVariantResolver
from src.fulfillment.errors import FulfillmentError, NotFoundError, RemoteServiceError

logger = structlog.get_logger(__name__)


def reported_quantity(row: DealProductRead) -> float:
    """Quantity the CRM should show: the delivered amount once one is known."""
    return row.fact_amount if row.fact_amount is not None else row.given_amount


class ApprovalPropagator:
    """Propagates warehouse approval decisions to the cache and the CRM.

    Args:
        gateway: Remote CRM gateway.
        store: Local deal cache.
        resolver: Optional variant resolver. A fresh one is used per
            approval if None.
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

    async def approve_and_assign(
        self,
        actor: UserRead,
        deal_id: int,
        assigned_id: int,
        products: Sequence[PlannedProduct] | None = None,
    ) -> ApprovalResult:
        """Approve a deal, assign it to an installer and report its rows.

        When ``products`` is given it replaces the deal's planned line items:
        rows missing from it are dropped both remotely and locally, and fact
        amounts already recorded for the remaining products are kept. Planned
        variants are keyed by their parent product like ingested rows, and
        variants of the same parent are summed into one row.

        Raises:
            PermissionDeniedError: If the actor is not a warehouse manager.
            NotFoundError: If the deal is not cached.
            RemoteServiceError: If a CRM call fails or is refused.
            StorageError: If a cache write fails.
        """
        require_capability(actor, Capability.WAREHOUSE_MANAGER, self._settings)

        log = logger.bind(deal_id=deal_id, actor_id=actor.id, assigned_id=assigned_id)
        completed: list[ApprovalStep] = []
        step = ApprovalStep.LOCAL_ASSIGN

        try:
            await self._store.update_deal(
                deal_id, DealUpdate(assigned_id=assigned_id, is_approved=True)
            )
            completed.append(step)
            log.info("approval.step_completed", step=step.value)

            step = ApprovalStep.REMOTE_ASSIGN
            fields = approval_fields(
                assigned_id,
                self._settings.DEAL_ASSIGNEE_FIELD,
                self._settings.DEAL_APPROVAL_FIELD,
            )
            if not await self._gateway.update_deal_fields(deal_id, fields):
                raise RemoteServiceError("crm.deal.update", "update refused", deal_id=deal_id)
            completed.append(step)
            log.info("approval.step_completed", step=step.value)

            step = ApprovalStep.COMPUTE_ROWS
            planned = await self._planned_rows(deal_id, products)
            rows = [
                ReportedRow(product_id=r.product_id, quantity=reported_quantity(r))
                for r in planned
            ]
            completed.append(step)
            log.info("approval.step_completed", step=step.value, rows=len(rows))

            step = ApprovalStep.REMOTE_ROWS
            await self._push_rows(deal_id, rows)
            completed.append(step)
            log.info("approval.step_completed", step=step.value)

            step = ApprovalStep.LOCAL_ROWS
            upserts = [
                DealProductUpsert(
                    deal_id=deal_id,
                    product_id=r.product_id,
                    given_amount=r.given_amount,
                )
                for r in planned
            ]
            if products is not None:
                await self._store.sync_deal_products(deal_id, upserts)
            else:
                await self._store.upsert_deal_products(upserts)
            completed.append(step)
            log.info("approval.step_completed", step=step.value)
        except FulfillmentError as exc:
            log.error(
                "approval.step_failed",
                step=step.value,
                completed=[s.value for s in completed],
                code=exc.code,
                error=str(exc),
            )
            raise

        log.info("approval.deal_approved")
        return ApprovalResult(deal_id=deal_id, completed_steps=completed, rows=rows)

    async def confirm_rows(self, actor: UserRead, deal_id: int) -> ApprovalResult:
        """Re-push the reported quantities of a deal's cached rows to the CRM.

        Used after reconciliation so the CRM shows delivered amounts. Only
        the remote rows are rewritten; repeating it is harmless.
        """
        require_capability(actor, Capability.WAREHOUSE_MANAGER, self._settings)

        if await self._store.get_deal(deal_id) is None:
            raise NotFoundError(f"Deal {deal_id} not found", deal_id=deal_id)

        rows = [
            ReportedRow(product_id=r.product_id, quantity=reported_quantity(r))
            for r in await self._store.list_deal_products(deal_id)
        ]
        await self._push_rows(deal_id, rows)

        logger.info("approval.rows_confirmed", deal_id=deal_id, rows=len(rows))
        return ApprovalResult(
            deal_id=deal_id,
            completed_steps=[ApprovalStep.COMPUTE_ROWS, ApprovalStep.REMOTE_ROWS],
            rows=rows,
        )

    async def warehouse_panel(
        self, actor: UserRead
    ) -> tuple[list[UserRead], list[DealWithProducts]]:
        """Installation-crew members and every cached deal with its products."""
        require_capability(actor, Capability.WAREHOUSE_MANAGER, self._settings)

        crew = await self._store.list_users_in_department(
            self._settings.INSTALLATION_DEPARTMENT_ID
        )
        deals = await self._store.list_deals_with_products()
        return crew, deals

    async def list_catalog(self, actor: UserRead) -> list[ProductRead]:
        """The cached product catalog."""
        require_capability(actor, Capability.WAREHOUSE_MANAGER, self._settings)
        return await self._store.list_products()

    # ── Internals ───────────────────────────────────────────────────────────

    async def _planned_rows(
        self, deal_id: int, products: Sequence[PlannedProduct] | None
    ) -> list[DealProductRead]:
        """Line items the approval reports, with any recorded fact amounts."""
        existing = await self._store.list_deal_products(deal_id)
        if products is None:
            return existing

        resolver = self._new_resolver()
        given: dict[int, float] = {}
        for p in products:
            canonical = await resolver.resolve(p.product_id)
            given[canonical] = given.get(canonical, 0.0) + p.given_amount

        facts = {r.product_id: r.fact_amount for r in existing}
        return [
            DealProductRead(
                id=0,
                deal_id=deal_id,
                product_id=product_id,
                given_amount=amount,
                fact_amount=facts.get(product_id),
            )
            for product_id, amount in given.items()
        ]

    async def _push_rows(self, deal_id: int, rows: Sequence[ReportedRow]) -> None:
        if not await self._gateway.replace_product_rows(deal_id, rows):
            raise RemoteServiceError(
                "crm.deal.productrows.set", "update refused", deal_id=deal_id
            )
