"""Test fixtures for the deal cache.

Provides:
- Settings pinned to test values (no .env lookup)
- A file-backed sqlite+aiosqlite engine per test with the schema created
- DealStore bound to that engine
- FakeCRMGateway: in-memory CRMGateway recording every remote write
- Installer and warehouse-manager actors
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Mapping, Sequence
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from src.fulfillment.config import Settings
from src.fulfillment.core.database import build_engine, init_db, session_factory_for
from src.fulfillment.deals.crm.adapter import CRMGateway
from src.fulfillment.deals.repository import DealStore
from src.fulfillment.deals.schemas import (
    RemoteDeal,
    RemoteProduct,
    RemoteProductRow,
    RemoteUser,
    ReportedRow,
    UserRead,
)
from src.fulfillment.errors import RemoteServiceError

ASSIGNEE_FIELD = "UF_CRM_1728999528"
APPROVAL_FIELD = "UF_CRM_1730790163295"


class FakeCRMGateway(CRMGateway):
    """In-memory CRM. Remote writes are applied and recorded in ``calls``."""

    def __init__(self) -> None:
        self.deals: dict[int, dict[str, Any]] = {}
        self.rows: dict[int, list[dict[str, Any]]] = {}
        self.parents: dict[int, int | None] = {}
        self.users: list[dict[str, Any]] = []
        self.products: dict[int, dict[str, Any]] = {}
        self.calls: list[tuple[str, Any]] = []
        self.parent_lookups = 0
        self.update_result = True
        self.replace_result = True
        self.fail_on: set[str] = set()

    def add_deal(self, deal_id: int, assigned_id: int | None = None, title: str = "Deal", **fields: Any) -> None:
        self.deals[deal_id] = {
            "ID": deal_id,
            "TITLE": title,
            "DATE_CREATE": "2024-10-15T10:00:00+03:00",
            ASSIGNEE_FIELD: assigned_id,
            **fields,
        }

    def _check(self, method: str) -> None:
        if method in self.fail_on:
            raise RemoteServiceError(method, "simulated outage")

    async def list_deals_by_filter(self, filters: Mapping[str, Any] | None = None) -> list[RemoteDeal]:
        self._check("list_deals_by_filter")
        return [RemoteDeal.model_validate(d) for d in self.deals.values()]

    async def list_product_rows(self, deal_id: int) -> list[RemoteProductRow]:
        self._check("list_product_rows")
        return [RemoteProductRow.model_validate(r) for r in self.rows.get(deal_id, [])]

    async def get_deal(self, deal_id: int) -> RemoteDeal:
        self._check("get_deal")
        if deal_id not in self.deals:
            raise RemoteServiceError("crm.deal.get", "Not found", deal_id=deal_id)
        return RemoteDeal.model_validate(self.deals[deal_id])

    async def update_deal_fields(self, deal_id: int, fields: Mapping[str, Any]) -> bool:
        self._check("update_deal_fields")
        self.calls.append(("update_deal_fields", (deal_id, dict(fields))))
        if self.update_result:
            self.deals.setdefault(deal_id, {"ID": deal_id}).update(fields)
        return self.update_result

    async def replace_product_rows(self, deal_id: int, rows: Sequence[ReportedRow]) -> bool:
        self._check("replace_product_rows")
        self.calls.append(("replace_product_rows", (deal_id, list(rows))))
        if self.replace_result:
            self.rows[deal_id] = [
                {"PRODUCT_ID": r.product_id, "QUANTITY": r.quantity} for r in rows
            ]
        return self.replace_result

    async def list_users_by_filter(self, filters: Mapping[str, Any] | None = None) -> list[RemoteUser]:
        self._check("list_users_by_filter")
        wanted = {k: v for k, v in (filters or {}).items() if k in ("NAME", "LAST_NAME")}
        return [
            RemoteUser.model_validate(u)
            for u in self.users
            if all(u.get(k) == v for k, v in wanted.items())
        ]

    async def get_canonical_parent(self, product_id: int) -> int | None:
        self._check("get_canonical_parent")
        self.parent_lookups += 1
        return self.parents.get(product_id)

    async def get_product(self, product_id: int) -> RemoteProduct:
        self._check("get_product")
        return RemoteProduct.model_validate(self.products[product_id])

    async def list_products(self, filters: Mapping[str, Any] | None = None) -> list[RemoteProduct]:
        self._check("list_products")
        return [RemoteProduct.model_validate(p) for p in self.products.values()]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite://",
        CRM_WEBHOOK_URL="https://portal.example.com/rest/1/token/",
        DEAL_ASSIGNEE_FIELD=ASSIGNEE_FIELD,
        DEAL_APPROVAL_FIELD=APPROVAL_FIELD,
        INSTALLATION_DEPARTMENT_ID=27,
        WAREHOUSE_DEPARTMENT_ID=45,
    )


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh cache database for every test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine) -> DealStore:
    return DealStore(session_factory_for(engine))


@pytest.fixture
def gateway() -> FakeCRMGateway:
    return FakeCRMGateway()


@pytest.fixture
def installer() -> UserRead:
    return UserRead(id=7, name="Ivan", last_name="Petrov", department_ids=[27])


@pytest.fixture
def manager() -> UserRead:
    return UserRead(id=3, name="Olga", last_name="Sidorova", department_ids=[45, 1])


@pytest.fixture
def outsider() -> UserRead:
    return UserRead(id=99, name="Anna", last_name="Ivanova", department_ids=[1])
