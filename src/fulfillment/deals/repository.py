"""Local deal cache repository -- async CRUD and upserts for the four relations.

Provides DealStore with the session_factory callable pattern. Each public
method is one logical operation: it opens its own session and, when it
writes, wraps every statement in a single transaction so a batch either
lands completely or not at all.

Upsert policies differ by entity:
- users: merge, the locally held password is never overwritten by a sync
- deals: header fields replaced, local workflow flags preserved
- products: insert-or-replace by id
- deal_products: insert-or-update on (deal_id, product_id); fact_amount is
  only written when the caller supplied it

``deal_products.total`` is a generated column and is never written here.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import asynccontextmanager, contextmanager
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.fulfillment.core.database import SessionFactory
from src.fulfillment.deals.models import (
    DealModel,
    DealProductModel,
    ProductModel,
    UserModel,
)
from src.fulfillment.deals.schemas import (
    DealLineItem,
    DealProductRead,
    DealProductUpsert,
    DealRead,
    DealUpdate,
    DealUpsert,
    DealWithProducts,
    FactAmountReport,
    ProductRead,
    ProductUpsert,
    UserRead,
    UserUpdate,
    UserUpsert,
)
from src.fulfillment.errors import NotFoundError, StorageError, ValidationError

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_user(model: UserModel) -> UserRead:
    """Convert UserModel to UserRead schema."""
    return UserRead(
        id=model.id,
        name=model.name,
        last_name=model.last_name,
        department_ids=[int(d) for d in (model.department_ids or [])],
        has_password=bool(model.password),
    )


def _model_to_deal(model: DealModel) -> DealRead:
    """Convert DealModel to DealRead schema."""
    return DealRead(
        id=model.id,
        title=model.title,
        date_create=model.date_create,
        assigned_id=model.assigned_id,
        is_approved=bool(model.is_approved),
        is_conducted=bool(model.is_conducted),
    )


def _model_to_product(model: ProductModel) -> ProductRead:
    """Convert ProductModel to ProductRead schema."""
    return ProductRead(id=model.id, name=model.name)


def _model_to_deal_product(model: DealProductModel) -> DealProductRead:
    """Convert DealProductModel to DealProductRead schema."""
    return DealProductRead(
        id=model.id,
        deal_id=model.deal_id,
        product_id=model.product_id,
        given_amount=model.given_amount,
        fact_amount=model.fact_amount,
        total=model.total,
    )


def _insert_for(session: AsyncSession, model: type) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT DO UPDATE."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


@contextmanager
def _storage_errors(operation: str, **context: Any) -> Iterator[None]:
    """Log SQLAlchemy failures with context and surface them as StorageError."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error(
            "store.operation_failed",
            operation=operation,
            error=str(exc),
            **context,
        )
        raise StorageError(f"{operation} failed", **context) from exc


# ── Repository ──────────────────────────────────────────────────────────────


class DealStore:
    """Durable cache of users, deals, products and deal line items.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Borrow one session from the factory and close it on exit."""
        sessions = self._session_factory()
        try:
            yield await anext(sessions)
        finally:
            await sessions.aclose()

    # ── Users ───────────────────────────────────────────────────────────────

    async def upsert_users(self, users: Sequence[UserUpsert]) -> int:
        """Insert users or merge their CRM fields, keeping stored passwords.

        Returns:
            Number of users written.
        """
        if not users:
            return 0

        with _storage_errors("upsert_users", count=len(users)):
            async with self._session() as session:
                async with session.begin():
                    stmt = _insert_for(session, UserModel).values(
                        [u.model_dump() for u in users]
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["id"],
                        set_={
                            "name": stmt.excluded.name,
                            "last_name": stmt.excluded.last_name,
                            "department_ids": stmt.excluded.department_ids,
                        },
                    )
                    await session.execute(stmt)

        logger.info("store.users_upserted", count=len(users))
        return len(users)

    async def update_user(self, user_id: int, data: UserUpdate) -> UserRead:
        """Write only the explicitly set fields of an existing user.

        Raises:
            ValidationError: If no field was set.
            NotFoundError: If the user is not cached.
        """
        fields = data.model_dump(exclude_unset=True)
        if not fields:
            raise ValidationError("No fields to update", user_id=user_id)

        with _storage_errors("update_user", user_id=user_id):
            async with self._session() as session:
                async with session.begin():
                    model = await session.get(UserModel, user_id)
                    if model is None:
                        raise NotFoundError(f"User {user_id} not found", user_id=user_id)
                    for key, value in fields.items():
                        setattr(model, key, value)
                return _model_to_user(model)

    async def get_user(self, user_id: int) -> UserRead | None:
        """Get a cached user by CRM id."""
        with _storage_errors("get_user", user_id=user_id):
            async with self._session() as session:
                model = await session.get(UserModel, user_id)
                return _model_to_user(model) if model is not None else None

    async def get_user_by_full_name(self, full_name: str) -> UserRead | None:
        """Find a user by "Name LastName", case-insensitively."""
        parts = full_name.split()
        if len(parts) < 2:
            return None
        name, last_name = parts[0], parts[1]

        with _storage_errors("get_user_by_full_name"):
            async with self._session() as session:
                stmt = select(UserModel).where(
                    func.lower(UserModel.name) == name.lower(),
                    func.lower(UserModel.last_name) == last_name.lower(),
                )
                result = await session.execute(stmt)
                model = result.scalars().first()
                return _model_to_user(model) if model is not None else None

    async def get_password_hash(self, user_id: int) -> str | None:
        """Stored password hash of a user, None if unknown or never registered."""
        with _storage_errors("get_password_hash", user_id=user_id):
            async with self._session() as session:
                result = await session.execute(
                    select(UserModel.password).where(UserModel.id == user_id)
                )
                return result.scalar_one_or_none()

    async def list_users_in_department(self, department_id: int) -> list[UserRead]:
        """List users whose department set contains ``department_id``."""
        with _storage_errors("list_users_in_department", department_id=department_id):
            async with self._session() as session:
                result = await session.execute(select(UserModel).order_by(UserModel.id))
                users = [_model_to_user(m) for m in result.scalars().all()]
                return [u for u in users if department_id in u.department_ids]

    # ── Deals ───────────────────────────────────────────────────────────────

    async def upsert_deals(self, deals: Sequence[DealUpsert]) -> int:
        """Insert deals or replace their CRM header fields.

        is_approved and is_conducted are left untouched on conflict.
        """
        if not deals:
            return 0

        with _storage_errors("upsert_deals", count=len(deals)):
            async with self._session() as session:
                async with session.begin():
                    stmt = _insert_for(session, DealModel).values(
                        [d.model_dump() for d in deals]
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["id"],
                        set_={
                            "title": stmt.excluded.title,
                            "date_create": stmt.excluded.date_create,
                            "assigned_id": stmt.excluded.assigned_id,
                        },
                    )
                    await session.execute(stmt)

        logger.info("store.deals_upserted", count=len(deals))
        return len(deals)

    async def update_deal(self, deal_id: int, data: DealUpdate) -> DealRead:
        """Write only the explicitly set fields of an existing deal.

        Raises:
            ValidationError: If no field was set.
            NotFoundError: If the deal is not cached.
        """
        fields = data.model_dump(exclude_unset=True)
        if not fields:
            raise ValidationError("No fields to update", deal_id=deal_id)

        with _storage_errors("update_deal", deal_id=deal_id):
            async with self._session() as session:
                async with session.begin():
                    model = await session.get(DealModel, deal_id)
                    if model is None:
                        raise NotFoundError(f"Deal {deal_id} not found", deal_id=deal_id)
                    for key, value in fields.items():
                        setattr(model, key, value)

                logger.info(
                    "store.deal_updated",
                    deal_id=deal_id,
                    fields=sorted(fields),
                )
                return _model_to_deal(model)

    async def get_deal(self, deal_id: int) -> DealRead | None:
        """Get a cached deal by CRM id."""
        with _storage_errors("get_deal", deal_id=deal_id):
            async with self._session() as session:
                model = await session.get(DealModel, deal_id)
                return _model_to_deal(model) if model is not None else None

    async def list_deals(self, assigned_id: int | None = None) -> list[DealRead]:
        """List cached deals, optionally only those assigned to one user."""
        with _storage_errors("list_deals", assigned_id=assigned_id):
            async with self._session() as session:
                stmt = select(DealModel).order_by(DealModel.id)
                if assigned_id is not None:
                    stmt = stmt.where(DealModel.assigned_id == assigned_id)
                result = await session.execute(stmt)
                return [_model_to_deal(m) for m in result.scalars().all()]

    async def delete_deal(self, deal_id: int) -> bool:
        """Delete a deal; its line items go with it through the FK cascade.

        Returns:
            True if a deal was deleted, False if it was not cached.
        """
        with _storage_errors("delete_deal", deal_id=deal_id):
            async with self._session() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(DealModel).where(DealModel.id == deal_id)
                    )
                deleted = result.rowcount > 0
                logger.info("store.deal_deleted", deal_id=deal_id, deleted=deleted)
                return deleted

    # ── Products ────────────────────────────────────────────────────────────

    async def upsert_products(self, products: Sequence[ProductUpsert]) -> int:
        """Insert products or replace their name."""
        if not products:
            return 0

        with _storage_errors("upsert_products", count=len(products)):
            async with self._session() as session:
                async with session.begin():
                    stmt = _insert_for(session, ProductModel).values(
                        [p.model_dump() for p in products]
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["id"],
                        set_={"name": stmt.excluded.name},
                    )
                    await session.execute(stmt)

        logger.info("store.products_upserted", count=len(products))
        return len(products)

    async def list_products(self) -> list[ProductRead]:
        """List the cached catalog."""
        with _storage_errors("list_products"):
            async with self._session() as session:
                result = await session.execute(
                    select(ProductModel).order_by(ProductModel.id)
                )
                return [_model_to_product(m) for m in result.scalars().all()]

    async def delete_product(self, product_id: int) -> bool:
        """Delete a catalog entry. Line items referencing it are kept."""
        with _storage_errors("delete_product", product_id=product_id):
            async with self._session() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(ProductModel).where(ProductModel.id == product_id)
                    )
                return result.rowcount > 0

    # ── Deal Products ───────────────────────────────────────────────────────

    async def upsert_deal_products(self, rows: Sequence[DealProductUpsert]) -> int:
        """Insert line items or update them on the (deal_id, product_id) key.

        Rows that do not supply fact_amount keep the stored value.

        Returns:
            Number of distinct line items written.
        """
        if not rows:
            return 0

        with _storage_errors("upsert_deal_products", count=len(rows)):
            async with self._session() as session:
                async with session.begin():
                    written = await self._write_deal_products(session, rows)

        logger.info("store.deal_products_upserted", count=written)
        return written

    async def sync_deal_products(
        self, deal_id: int, rows: Sequence[DealProductUpsert]
    ) -> int:
        """Make ``rows`` the complete line-item set of a deal.

        Line items of the deal whose product is absent from ``rows`` are
        deleted; the rest are upserted with the same fact_amount rule as
        upsert_deal_products. Runs in one transaction.
        """
        foreign = [r for r in rows if r.deal_id != deal_id]
        if foreign:
            raise ValidationError(
                f"Rows for deal {foreign[0].deal_id} passed to sync of deal {deal_id}",
                deal_id=deal_id,
            )

        product_ids = [r.product_id for r in rows]
        with _storage_errors("sync_deal_products", deal_id=deal_id):
            async with self._session() as session:
                async with session.begin():
                    stmt = delete(DealProductModel).where(
                        DealProductModel.deal_id == deal_id
                    )
                    if product_ids:
                        stmt = stmt.where(DealProductModel.product_id.notin_(product_ids))
                    pruned = await session.execute(stmt)
                    written = await self._write_deal_products(session, rows)

        logger.info(
            "store.deal_products_synced",
            deal_id=deal_id,
            written=written,
            pruned=pruned.rowcount,
        )
        return written

    async def list_deal_products(self, deal_id: int | None = None) -> list[DealProductRead]:
        """List line items, optionally for one deal."""
        with _storage_errors("list_deal_products", deal_id=deal_id):
            async with self._session() as session:
                stmt = select(DealProductModel).order_by(DealProductModel.id)
                if deal_id is not None:
                    stmt = stmt.where(DealProductModel.deal_id == deal_id)
                result = await session.execute(stmt)
                return [_model_to_deal_product(m) for m in result.scalars().all()]

    async def record_fact_amounts(
        self, deal_id: int, reports: Sequence[FactAmountReport]
    ) -> list[DealProductRead]:
        """Set delivered quantities and mark the deal conducted, atomically.

        Every report must match an existing line item. If any one does not,
        nothing is written: earlier fact amounts in the batch are rolled back
        and is_conducted stays unchanged.

        Raises:
            NotFoundError: If the deal or any (deal_id, product_id) line item
                is missing.
        """
        with _storage_errors("record_fact_amounts", deal_id=deal_id):
            async with self._session() as session:
                async with session.begin():
                    deal = await session.get(DealModel, deal_id)
                    if deal is None:
                        raise NotFoundError(f"Deal {deal_id} not found", deal_id=deal_id)

                    for report in reports:
                        result = await session.execute(
                            update(DealProductModel)
                            .where(
                                DealProductModel.deal_id == deal_id,
                                DealProductModel.product_id == report.product_id,
                            )
                            .values(fact_amount=report.fact_amount)
                        )
                        if result.rowcount == 0:
                            raise NotFoundError(
                                f"Product {report.product_id} is not part of deal {deal_id}",
                                deal_id=deal_id,
                                product_id=report.product_id,
                            )

                    deal.is_conducted = True
                    await session.flush()

                    result = await session.execute(
                        select(DealProductModel)
                        .where(DealProductModel.deal_id == deal_id)
                        .order_by(DealProductModel.id)
                        .execution_options(populate_existing=True)
                    )
                    rows = [_model_to_deal_product(m) for m in result.scalars().all()]

        logger.info(
            "store.fact_amounts_recorded",
            deal_id=deal_id,
            count=len(reports),
        )
        return rows

    # ── Views ───────────────────────────────────────────────────────────────

    async def list_deals_with_products(
        self, assigned_id: int | None = None
    ) -> list[DealWithProducts]:
        """Deals joined with their line items and catalog names.

        Line items whose product is missing from the catalog are logged and
        left out of the view.
        """
        deals = await self.list_deals(assigned_id)
        catalog = {p.id: p for p in await self.list_products()}
        line_items = await self.list_deal_products()

        by_deal: dict[int, list[DealLineItem]] = {}
        for item in line_items:
            product = catalog.get(item.product_id)
            if product is None:
                logger.warning(
                    "store.line_item_product_missing",
                    deal_id=item.deal_id,
                    product_id=item.product_id,
                )
                continue
            by_deal.setdefault(item.deal_id, []).append(
                DealLineItem(
                    id=product.id,
                    name=product.name,
                    given_amount=item.given_amount,
                    fact_amount=item.fact_amount,
                    total=item.total,
                )
            )

        return [
            DealWithProducts(**deal.model_dump(), products=by_deal.get(deal.id, []))
            for deal in deals
        ]

    # ── Internals ───────────────────────────────────────────────────────────

    @staticmethod
    async def _write_deal_products(
        session: AsyncSession, rows: Sequence[DealProductUpsert]
    ) -> int:
        """Upsert line items inside the caller's transaction.

        A batch may name the same key twice; the last row wins so a single
        statement never touches one row twice.
        """
        latest: dict[tuple[int, int], DealProductUpsert] = {}
        for row in rows:
            latest[(row.deal_id, row.product_id)] = row

        with_fact = [r for r in latest.values() if r.supplies_fact_amount]
        without_fact = [r for r in latest.values() if not r.supplies_fact_amount]

        for batch, writes_fact in ((with_fact, True), (without_fact, False)):
            if not batch:
                continue
            stmt = _insert_for(session, DealProductModel).values(
                [
                    {
                        "deal_id": r.deal_id,
                        "product_id": r.product_id,
                        "given_amount": r.given_amount,
                        "fact_amount": r.fact_amount,
                    }
                    for r in batch
                ]
            )
            set_: dict[str, Any] = {"given_amount": stmt.excluded.given_amount}
            if writes_fact:
                set_["fact_amount"] = stmt.excluded.fact_amount
            stmt = stmt.on_conflict_do_update(
                index_elements=["deal_id", "product_id"],
                set_=set_,
            )
            await session.execute(stmt)

        return len(latest)
