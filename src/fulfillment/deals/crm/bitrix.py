"""Bitrix24 CRM gateway over the REST inbound-webhook API.

Implements CRMGateway with one pooled httpx.AsyncClient per gateway.
Every call is a JSON POST to ``<webhook>/<method>.json``.

Key implementation details:
- List methods page with a fixed page size, advancing ``start`` until a
  page comes back shorter than the page size. Remote ``total`` values are
  ignored because they can be stale while the CRM is being written to.
- A failed page aborts the whole listing; nothing is retried and no
  partial listing is returned.
- Error envelopes, non-2xx responses, transport errors and records that
  fail schema validation all raise RemoteServiceError.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, TypeVar

import httpx
import structlog
from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from src.fulfillment.config import Settings
from src.fulfillment.deals.crm.adapter import CRMGateway
from src.fulfillment.deals.crm.field_mapping import (
    DEAL_SELECT_FIELDS,
    PRODUCT_SELECT_FIELDS,
    parent_id_from_catalog,
    to_remote_product_rows,
)
from src.fulfillment.deals.schemas import (
    RemoteDeal,
    RemoteProduct,
    RemoteProductRow,
    RemoteUser,
    ReportedRow,
)
from src.fulfillment.errors import RemoteServiceError

logger = structlog.get_logger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

DEFAULT_PAGE_SIZE = 50


class BitrixGateway(CRMGateway):
    """CRM gateway for a Bitrix24 portal.

    Use as an async context manager (or call ``aclose``) so the pooled
    HTTP client is released.

    Args:
        webhook_url: Inbound webhook base URL, e.g.
            ``https://portal.bitrix24.ru/rest/1/<token>/``.
        page_size: Rows per page the portal returns for list methods.
        timeout: Per-request timeout in seconds (None disables it).
        deal_select: Deal field codes requested by list_deals_by_filter.
        transport: Optional httpx transport (tests pass a MockTransport).
    """

    def __init__(
        self,
        webhook_url: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        timeout: float | None = 60.0,
        deal_select: Sequence[str] = DEAL_SELECT_FIELDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not webhook_url:
            raise ValueError("A Bitrix24 webhook URL is required")
        self._page_size = page_size
        self._deal_select = list(deal_select)
        self._client = httpx.AsyncClient(
            base_url=webhook_url.rstrip("/") + "/",
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> BitrixGateway:
        """Build a gateway from application settings."""
        return cls(
            settings.CRM_WEBHOOK_URL,
            page_size=settings.CRM_PAGE_SIZE,
            timeout=settings.CRM_TIMEOUT,
            deal_select=[
                *DEAL_SELECT_FIELDS,
                settings.DEAL_ASSIGNEE_FIELD,
                settings.DEAL_APPROVAL_FIELD,
            ],
            transport=transport,
        )

    async def __aenter__(self) -> BitrixGateway:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the pooled HTTP client."""
        await self._client.aclose()

    # ── Deals ───────────────────────────────────────────────────────────────

    async def list_deals_by_filter(
        self, filters: Mapping[str, Any] | None = None
    ) -> list[RemoteDeal]:
        return await self._list_all(
            "crm.deal.list",
            {
                "select": self._deal_select,
                "filter": dict(filters or {}),
                "order": {"ID": "ASC"},
            },
            RemoteDeal,
        )

    async def list_product_rows(self, deal_id: int) -> list[RemoteProductRow]:
        # crm.deal.productrows.get is not a paged method: one call returns all rows
        method = "crm.deal.productrows.get"
        payload = await self._call(method, {"id": deal_id})
        rows = payload.get("result")
        if not isinstance(rows, list):
            raise RemoteServiceError(method, "result is not a list", deal_id=deal_id)
        return self._validate(method, RemoteProductRow, rows)

    async def get_deal(self, deal_id: int) -> RemoteDeal:
        method = "crm.deal.get"
        payload = await self._call(method, {"id": deal_id})
        result = payload.get("result")
        if not isinstance(result, dict):
            raise RemoteServiceError(method, "deal missing from response", deal_id=deal_id)
        return self._validate(method, RemoteDeal, [result])[0]

    async def update_deal_fields(self, deal_id: int, fields: Mapping[str, Any]) -> bool:
        payload = await self._call(
            "crm.deal.update", {"id": deal_id, "fields": dict(fields)}
        )
        updated = bool(payload.get("result"))
        logger.info(
            "bitrix.deal_updated",
            deal_id=deal_id,
            fields=sorted(fields),
            updated=updated,
        )
        return updated

    async def replace_product_rows(
        self, deal_id: int, rows: Sequence[ReportedRow]
    ) -> bool:
        payload = await self._call(
            "crm.deal.productrows.set",
            {"id": deal_id, "rows": to_remote_product_rows(rows)},
        )
        replaced = bool(payload.get("result"))
        logger.info(
            "bitrix.product_rows_replaced",
            deal_id=deal_id,
            rows=len(rows),
            replaced=replaced,
        )
        return replaced

    # ── Users ───────────────────────────────────────────────────────────────

    async def list_users_by_filter(
        self, filters: Mapping[str, Any] | None = None
    ) -> list[RemoteUser]:
        return await self._list_all(
            "user.get",
            {"FILTER": dict(filters or {}), "sort": "ID", "order": "ASC"},
            RemoteUser,
        )

    # ── Catalog ─────────────────────────────────────────────────────────────

    async def get_canonical_parent(self, product_id: int) -> int | None:
        payload = await self._call("catalog.product.get", {"id": product_id})
        return parent_id_from_catalog(payload.get("result"))

    async def get_product(self, product_id: int) -> RemoteProduct:
        method = "crm.product.get"
        payload = await self._call(method, {"id": product_id})
        result = payload.get("result")
        if not isinstance(result, dict):
            raise RemoteServiceError(
                method, "product missing from response", product_id=product_id
            )
        return self._validate(method, RemoteProduct, [result])[0]

    async def list_products(
        self, filters: Mapping[str, Any] | None = None
    ) -> list[RemoteProduct]:
        return await self._list_all(
            "crm.product.list",
            {
                "select": PRODUCT_SELECT_FIELDS,
                "filter": dict(filters or {}),
                "order": {"ID": "ASC"},
            },
            RemoteProduct,
        )

    # ── Transport ───────────────────────────────────────────────────────────

    async def _list_all(
        self,
        method: str,
        params: dict[str, Any],
        record_type: type[RecordT],
    ) -> list[RecordT]:
        """Accumulate every page of a list method.

        Terminates on the first page shorter than the page size. Any failed
        page raises, discarding the pages already fetched.
        """
        records: list[RecordT] = []
        start = 0
        pages = 0

        while True:
            payload = await self._call(method, {**params, "start": start})
            page = payload.get("result")
            if not isinstance(page, list):
                raise RemoteServiceError(method, "result is not a list", start=start)

            records.extend(self._validate(method, record_type, page))
            pages += 1

            if len(page) < self._page_size:
                break
            start += self._page_size

        logger.debug(
            "bitrix.listing_complete",
            method=method,
            pages=pages,
            count=len(records),
        )
        return records

    async def _call(self, method: str, params: Mapping[str, Any]) -> dict[str, Any]:
        """POST one REST method and return its decoded envelope."""
        try:
            response = await self._client.post(f"{method}.json", json=dict(params))
        except httpx.HTTPError as exc:
            logger.error("bitrix.transport_error", method=method, error=str(exc))
            raise RemoteServiceError(method, f"transport error: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error(
                "bitrix.invalid_response",
                method=method,
                status_code=response.status_code,
            )
            raise RemoteServiceError(
                method, f"non-JSON response (HTTP {response.status_code})"
            ) from exc

        if isinstance(payload, dict) and "error" in payload:
            description = payload.get("error_description") or ""
            logger.error(
                "bitrix.error_response",
                method=method,
                status_code=response.status_code,
                error=payload["error"],
                description=description,
            )
            raise RemoteServiceError(method, f"{payload['error']}: {description}".rstrip(": "))

        if response.is_error or not isinstance(payload, dict):
            logger.error(
                "bitrix.unexpected_response",
                method=method,
                status_code=response.status_code,
            )
            raise RemoteServiceError(method, f"unexpected response (HTTP {response.status_code})")

        return payload

    @staticmethod
    def _validate(
        method: str, record_type: type[RecordT], items: list[Any]
    ) -> list[RecordT]:
        """Validate raw records against the boundary schema."""
        try:
            return [record_type.model_validate(item) for item in items]
        except SchemaValidationError as exc:
            logger.error(
                "bitrix.malformed_record",
                method=method,
                record_type=record_type.__name__,
                errors=exc.error_count(),
            )
            raise RemoteServiceError(method, f"malformed {record_type.__name__}") from exc
