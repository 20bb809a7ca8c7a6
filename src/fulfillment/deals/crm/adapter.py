"""CRM gateway abstract base class -- the remote boundary of the deal cache.

Every CRM backend implements this ABC. The sync orchestrator, variant
resolver and approval propagator depend only on this interface, so tests
and alternative backends can stand in for Bitrix24.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any

from src.fulfillment.deals.schemas import (
    RemoteDeal,
    RemoteProduct,
    RemoteProductRow,
    RemoteUser,
    ReportedRow,
)


class CRMGateway(ABC):
    """Abstract interface for remote CRM operations.

    List methods return the complete accumulated result or raise
    RemoteServiceError; they never return a partial listing.

    Methods:
        list_deals_by_filter: All deals matching a CRM filter.
        list_product_rows: All product rows of one deal.
        get_deal: One deal header by id.
        update_deal_fields: Write header/user fields of a deal.
        replace_product_rows: Overwrite the complete product row set of a deal.
        list_users_by_filter: All users matching a CRM filter.
        get_canonical_parent: Parent product id of a variant, or None.
        get_product: One catalog entry by id.
        list_products: All catalog entries matching a CRM filter.
    """

    @abstractmethod
    async def list_deals_by_filter(
        self, filters: Mapping[str, Any] | None = None
    ) -> list[RemoteDeal]:
        """List every deal matching the filter."""
        ...

    @abstractmethod
    async def list_product_rows(self, deal_id: int) -> list[RemoteProductRow]:
        """List every product row of a deal."""
        ...

    @abstractmethod
    async def get_deal(self, deal_id: int) -> RemoteDeal:
        """Fetch one deal header."""
        ...

    @abstractmethod
    async def update_deal_fields(self, deal_id: int, fields: Mapping[str, Any]) -> bool:
        """Update deal fields, return True on success."""
        ...

    @abstractmethod
    async def replace_product_rows(
        self, deal_id: int, rows: Sequence[ReportedRow]
    ) -> bool:
        """Replace all product rows of a deal (omitted products are dropped)."""
        ...

    @abstractmethod
    async def list_users_by_filter(
        self, filters: Mapping[str, Any] | None = None
    ) -> list[RemoteUser]:
        """List every user matching the filter."""
        ...

    @abstractmethod
    async def get_canonical_parent(self, product_id: int) -> int | None:
        """Return the parent product id if ``product_id`` is a variant."""
        ...

    @abstractmethod
    async def get_product(self, product_id: int) -> RemoteProduct:
        """Fetch one catalog entry."""
        ...

    @abstractmethod
    async def list_products(
        self, filters: Mapping[str, Any] | None = None
    ) -> list[RemoteProduct]:
        """List every catalog entry matching the filter."""
        ...
