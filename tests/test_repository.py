"""Integration tests for DealStore against a real sqlite+aiosqlite database.

Covers the per-entity upsert policies, the generated total column, the
deal -> deal_products cascade and the atomic fact-amount reconciliation.
"""

from __future__ import annotations

import pytest

from src.fulfillment.deals.schemas import (
    DealProductUpsert,
    DealUpdate,
    DealUpsert,
    FactAmountReport,
    ProductUpsert,
    UserUpdate,
    UserUpsert,
)
from src.fulfillment.errors import NotFoundError, StorageError, ValidationError


async def _seed_deal(store, deal_id: int = 10, assigned_id: int | None = 7, rows=((1, 100.0),)):
    await store.upsert_deals([DealUpsert(id=deal_id, title=f"Deal {deal_id}", assigned_id=assigned_id)])
    await store.upsert_deal_products(
        [DealProductUpsert(deal_id=deal_id, product_id=p, given_amount=g) for p, g in rows]
    )


# ── Users ──────────────────────────────────────────────────────────────────


class TestUsers:
    async def test_sync_preserves_registered_password(self, store):
        await store.upsert_users([UserUpsert(id=7, name="Ivan", last_name="Petrov", department_ids=[27])])
        await store.update_user(7, UserUpdate(password="hashed"))

        await store.upsert_users([UserUpsert(id=7, name="Ivan", last_name="Petrov-Vodkin", department_ids=[27, 45])])

        user = await store.get_user(7)
        assert user.has_password is True
        assert user.last_name == "Petrov-Vodkin"
        assert user.department_ids == [27, 45]

    async def test_get_password_hash(self, store):
        await store.upsert_users([UserUpsert(id=7, name="Ivan", last_name="Petrov")])
        assert await store.get_password_hash(7) is None

        await store.update_user(7, UserUpdate(password="hashed"))

        assert await store.get_password_hash(7) == "hashed"
        assert await store.get_password_hash(404) is None

    async def test_update_user_requires_fields(self, store):
        with pytest.raises(ValidationError):
            await store.update_user(7, UserUpdate())

    async def test_update_missing_user_raises(self, store):
        with pytest.raises(NotFoundError):
            await store.update_user(404, UserUpdate(password="x"))

    async def test_get_user_by_full_name_ignores_case(self, store):
        await store.upsert_users([UserUpsert(id=7, name="Ivan", last_name="Petrov")])

        found = await store.get_user_by_full_name("ivan PETROV")

        assert found is not None
        assert found.id == 7
        assert found.full_name == "Ivan Petrov"

    async def test_get_user_by_single_token_returns_none(self, store):
        await store.upsert_users([UserUpsert(id=7, name="Ivan", last_name="Petrov")])
        assert await store.get_user_by_full_name("Ivan") is None

    async def test_list_users_in_department(self, store):
        await store.upsert_users(
            [
                UserUpsert(id=1, name="A", last_name="A", department_ids=[27]),
                UserUpsert(id=2, name="B", last_name="B", department_ids=[45]),
                UserUpsert(id=3, name="C", last_name="C", department_ids=[45, 27]),
            ]
        )

        crew = await store.list_users_in_department(27)

        assert [u.id for u in crew] == [1, 3]


# ── Deals ──────────────────────────────────────────────────────────────────


class TestDeals:
    async def test_reingest_replaces_header_but_keeps_workflow_flags(self, store):
        await store.upsert_deals([DealUpsert(id=10, title="Old", assigned_id=7)])
        await store.update_deal(10, DealUpdate(is_approved=True))

        await store.upsert_deals([DealUpsert(id=10, title="New", assigned_id=8)])

        deal = await store.get_deal(10)
        assert deal.title == "New"
        assert deal.assigned_id == 8
        assert deal.is_approved is True
        assert deal.is_conducted is False

    async def test_update_missing_deal_raises(self, store):
        with pytest.raises(NotFoundError):
            await store.update_deal(404, DealUpdate(is_approved=True))

    async def test_list_deals_filters_by_assignee(self, store):
        await store.upsert_deals(
            [
                DealUpsert(id=10, assigned_id=7),
                DealUpsert(id=11, assigned_id=8),
                DealUpsert(id=12, assigned_id=7),
            ]
        )

        assert [d.id for d in await store.list_deals(assigned_id=7)] == [10, 12]
        assert len(await store.list_deals()) == 3

    async def test_delete_deal_cascades_to_line_items(self, store):
        await _seed_deal(store, rows=((1, 5.0), (2, 6.0)))

        assert await store.delete_deal(10) is True

        assert await store.get_deal(10) is None
        assert await store.list_deal_products(10) == []

    async def test_delete_missing_deal_returns_false(self, store):
        assert await store.delete_deal(404) is False


# ── Products ───────────────────────────────────────────────────────────────


class TestProducts:
    async def test_upsert_replaces_name(self, store):
        await store.upsert_products([ProductUpsert(id=1, name="Cable")])
        await store.upsert_products([ProductUpsert(id=1, name="Cable 3x2.5")])

        products = await store.list_products()

        assert [(p.id, p.name) for p in products] == [(1, "Cable 3x2.5")]

    async def test_delete_product(self, store):
        await store.upsert_products([ProductUpsert(id=1, name="Cable")])

        assert await store.delete_product(1) is True
        assert await store.delete_product(1) is False


# ── Deal Products ──────────────────────────────────────────────────────────


class TestDealProducts:
    async def test_total_is_null_until_fact_amount_is_set(self, store):
        await _seed_deal(store, rows=((1, 100.0),))

        (row,) = await store.list_deal_products(10)

        assert row.fact_amount is None
        assert row.total is None

    async def test_total_is_derived_from_given_and_fact(self, store):
        await _seed_deal(store, rows=((1, 100.0),))
        await store.upsert_deal_products(
            [DealProductUpsert(deal_id=10, product_id=1, given_amount=100.0, fact_amount=40.0)]
        )

        (row,) = await store.list_deal_products(10)

        assert row.total == 60.0

    async def test_upsert_without_fact_amount_preserves_it(self, store):
        await _seed_deal(store, rows=((1, 100.0),))
        await store.record_fact_amounts(10, [FactAmountReport(product_id=1, fact_amount=90.0)])

        await store.upsert_deal_products([DealProductUpsert(deal_id=10, product_id=1, given_amount=120.0)])

        (row,) = await store.list_deal_products(10)
        assert row.given_amount == 120.0
        assert row.fact_amount == 90.0
        assert row.total == 30.0

    async def test_explicit_null_fact_amount_clears_it(self, store):
        await _seed_deal(store, rows=((1, 100.0),))
        await store.record_fact_amounts(10, [FactAmountReport(product_id=1, fact_amount=90.0)])

        await store.upsert_deal_products(
            [DealProductUpsert(deal_id=10, product_id=1, given_amount=100.0, fact_amount=None)]
        )

        (row,) = await store.list_deal_products(10)
        assert row.fact_amount is None
        assert row.total is None

    async def test_duplicate_keys_in_one_batch_keep_the_last_row(self, store):
        await store.upsert_deals([DealUpsert(id=10, assigned_id=7)])

        written = await store.upsert_deal_products(
            [
                DealProductUpsert(deal_id=10, product_id=1, given_amount=1.0),
                DealProductUpsert(deal_id=10, product_id=1, given_amount=2.0),
            ]
        )

        assert written == 1
        (row,) = await store.list_deal_products(10)
        assert row.given_amount == 2.0

    async def test_line_item_for_unknown_deal_is_a_storage_error(self, store):
        with pytest.raises(StorageError) as exc_info:
            await store.upsert_deal_products([DealProductUpsert(deal_id=404, product_id=1, given_amount=1.0)])

        assert exc_info.value.public_message == "server error"

    async def test_sync_deal_products_prunes_missing_rows(self, store):
        await _seed_deal(store, rows=((1, 5.0), (2, 6.0), (3, 7.0)))
        await store.record_fact_amounts(10, [FactAmountReport(product_id=2, fact_amount=4.0)])

        await store.sync_deal_products(
            10,
            [
                DealProductUpsert(deal_id=10, product_id=2, given_amount=8.0),
                DealProductUpsert(deal_id=10, product_id=4, given_amount=1.0),
            ],
        )

        rows = {r.product_id: r for r in await store.list_deal_products(10)}
        assert set(rows) == {2, 4}
        assert rows[2].given_amount == 8.0
        assert rows[2].fact_amount == 4.0

    async def test_sync_deal_products_with_empty_set_clears_the_deal(self, store):
        await _seed_deal(store, rows=((1, 5.0), (2, 6.0)))

        await store.sync_deal_products(10, [])

        assert await store.list_deal_products(10) == []

    async def test_sync_deal_products_rejects_rows_of_another_deal(self, store):
        await _seed_deal(store)

        with pytest.raises(ValidationError):
            await store.sync_deal_products(10, [DealProductUpsert(deal_id=11, product_id=1, given_amount=1.0)])


# ── Reconciliation ─────────────────────────────────────────────────────────


class TestRecordFactAmounts:
    async def test_sets_fact_amounts_and_conducts_the_deal(self, store):
        await _seed_deal(store, rows=((1, 10.0), (2, 5.0)))

        rows = await store.record_fact_amounts(
            10,
            [
                FactAmountReport(product_id=1, fact_amount=8.0),
                FactAmountReport(product_id=2, fact_amount=5.0),
            ],
        )

        assert {r.product_id: r.total for r in rows} == {1: 2.0, 2: 0.0}
        assert (await store.get_deal(10)).is_conducted is True

    async def test_unknown_product_rolls_back_the_whole_report(self, store):
        await _seed_deal(store, rows=((1, 10.0),))

        with pytest.raises(NotFoundError):
            await store.record_fact_amounts(
                10,
                [
                    FactAmountReport(product_id=1, fact_amount=8.0),
                    FactAmountReport(product_id=99, fact_amount=1.0),
                ],
            )

        (row,) = await store.list_deal_products(10)
        assert row.fact_amount is None
        assert (await store.get_deal(10)).is_conducted is False
        assert [r.product_id for r in await store.list_deal_products(10)] == [1]

    async def test_unknown_deal_raises(self, store):
        with pytest.raises(NotFoundError):
            await store.record_fact_amounts(404, [FactAmountReport(product_id=1, fact_amount=1.0)])


# ── Views ──────────────────────────────────────────────────────────────────


class TestDealsWithProducts:
    async def test_joins_catalog_names_and_skips_unknown_products(self, store):
        await store.upsert_products([ProductUpsert(id=1, name="Cable")])
        await _seed_deal(store, rows=((1, 100.0), (2, 3.0)))

        (deal,) = await store.list_deals_with_products()

        assert deal.id == 10
        assert [(p.id, p.name, p.given_amount) for p in deal.products] == [(1, "Cable", 100.0)]

    async def test_deal_without_rows_has_empty_products(self, store):
        await store.upsert_deals([DealUpsert(id=10, assigned_id=7)])

        (deal,) = await store.list_deals_with_products(assigned_id=7)

        assert deal.products == []
