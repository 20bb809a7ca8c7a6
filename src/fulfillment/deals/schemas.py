"""Pydantic schemas for the deal cache -- local records, CRM payloads, results.

Defines all structured types flowing through the core:
- Enums: Capability, ApprovalStep
- Local records: UserUpsert/Update/Read, DealUpsert/Update/Read, ProductUpsert/Read,
  DealProductUpsert/Read, DealLineItem, DealWithProducts
- Actor input: FactAmountReport, PlannedProduct
- CRM payloads: RemoteDeal, RemoteProductRow, RemoteUser, RemoteProduct, ReportedRow
- Results: SyncResult, ApprovalResult

CRM payload models validate the raw Bitrix records at the boundary, so a
malformed response is rejected before it reaches the store.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class Capability(str, Enum):
    """Role capabilities granted by department membership."""

    INSTALLATION_CREW = "installation_team"
    WAREHOUSE_MANAGER = "warehouse_manager"


class ApprovalStep(str, Enum):
    """Ordered steps of the approve-and-assign pipeline."""

    LOCAL_ASSIGN = "local_assign"
    REMOTE_ASSIGN = "remote_assign"
    COMPUTE_ROWS = "compute_rows"
    REMOTE_ROWS = "remote_rows"
    LOCAL_ROWS = "local_rows"


# ── Users ───────────────────────────────────────────────────────────────────


class UserUpsert(BaseModel):
    """User record as written by a sync (password only set at registration)."""

    id: int
    name: str | None = None
    last_name: str | None = None
    department_ids: list[int] = Field(default_factory=list)
    password: str | None = None


class UserUpdate(BaseModel):
    """Partial user update (only explicitly set fields are written)."""

    name: str | None = None
    last_name: str | None = None
    department_ids: list[int] | None = None
    password: str | None = None


class UserRead(BaseModel):
    """Cached user. The password itself is never read back out of the store."""

    id: int
    name: str | None = None
    last_name: str | None = None
    department_ids: list[int] = Field(default_factory=list)
    has_password: bool = False

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.name, self.last_name) if part)


# ── Deals ───────────────────────────────────────────────────────────────────


class DealUpsert(BaseModel):
    """Deal header fields owned by the CRM."""

    id: int
    title: str | None = None
    date_create: datetime | None = None
    assigned_id: int | None = None


class DealUpdate(BaseModel):
    """Partial deal update (only explicitly set fields are written)."""

    title: str | None = None
    date_create: datetime | None = None
    assigned_id: int | None = None
    is_approved: bool | None = None
    is_conducted: bool | None = None


class DealRead(BaseModel):
    """Deal header plus local workflow flags."""

    id: int
    title: str | None = None
    date_create: datetime | None = None
    assigned_id: int | None = None
    is_approved: bool = False
    is_conducted: bool = False


# ── Products ────────────────────────────────────────────────────────────────


class ProductUpsert(BaseModel):
    """Canonical catalog entry."""

    id: int
    name: str | None = None


class ProductRead(ProductUpsert):
    """Cached catalog entry."""


# ── Deal Products ───────────────────────────────────────────────────────────


class DealProductUpsert(BaseModel):
    """Line item write.

    Leaving ``fact_amount`` out of the constructor (so it is absent from
    ``model_fields_set``) preserves the stored value on update; passing
    ``fact_amount=None`` explicitly clears it. There is no ``total`` field:
    the database derives it.
    """

    deal_id: int
    product_id: int
    given_amount: float
    fact_amount: float | None = None

    @property
    def supplies_fact_amount(self) -> bool:
        return "fact_amount" in self.model_fields_set


class DealProductRead(BaseModel):
    """Stored line item including the derived total."""

    id: int
    deal_id: int
    product_id: int
    given_amount: float
    fact_amount: float | None = None
    total: float | None = None


class DealLineItem(BaseModel):
    """Line item joined with the catalog, as shown to actors."""

    id: int
    name: str | None = None
    given_amount: float
    fact_amount: float | None = None
    total: float | None = None


class DealWithProducts(DealRead):
    """Deal header with its catalog-joined line items."""

    products: list[DealLineItem] = Field(default_factory=list)


# ── Actor Input ─────────────────────────────────────────────────────────────


class FactAmountReport(BaseModel):
    """Quantity an installer actually delivered for one product of a deal."""

    product_id: int
    fact_amount: float


class PlannedProduct(BaseModel):
    """Planned quantity a warehouse manager sets for one product of a deal."""

    product_id: int
    given_amount: float


# ── CRM Payloads ────────────────────────────────────────────────────────────


class RemoteDeal(BaseModel):
    """Deal record from ``crm.deal.get`` / ``crm.deal.list``.

    User fields (UF_CRM_*) are kept as extras because their codes are
    deployment configuration.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: int = Field(alias="ID")
    title: str | None = Field(default=None, alias="TITLE")
    date_create: datetime | None = Field(default=None, alias="DATE_CREATE")

    def field(self, code: str) -> Any:
        """Return the raw value of a user field, or None when absent."""
        return (self.model_extra or {}).get(code)


class RemoteProductRow(BaseModel):
    """Row from ``crm.deal.productrows.get``."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    product_id: int = Field(alias="PRODUCT_ID")
    quantity: float = Field(alias="QUANTITY")


class RemoteUser(BaseModel):
    """User record from ``user.get``."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: int = Field(alias="ID")
    name: str | None = Field(default=None, alias="NAME")
    last_name: str | None = Field(default=None, alias="LAST_NAME")
    departments: list[int] = Field(default_factory=list, alias="UF_DEPARTMENT")


class RemoteProduct(BaseModel):
    """Catalog record from ``crm.product.get`` / ``crm.product.list``."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: int = Field(alias="ID")
    name: str | None = Field(default=None, alias="NAME")


class ReportedRow(BaseModel):
    """Product row pushed to the CRM with ``crm.deal.productrows.set``."""

    product_id: int
    quantity: float


# ── Results ─────────────────────────────────────────────────────────────────


class SyncResult(BaseModel):
    """Counters from one ingestion run."""

    users: int = 0
    deals: int = 0
    products: int = 0
    deal_products: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)


class ApprovalResult(BaseModel):
    """Outcome of approve-and-assign or a row confirmation."""

    deal_id: int
    completed_steps: list[ApprovalStep] = Field(default_factory=list)
    rows: list[ReportedRow] = Field(default_factory=list)
