"""Bitrix24 field mappings between CRM records and local cache schemas.

Defines:
- DEAL_SELECT_FIELDS: Base field codes requested from crm.deal.list.
- parse_user_field_id(): Normalises a Bitrix user-field value to an int id.
- deal_from_remote() / user_from_remote() / product_from_remote(): CRM
  record -> local upsert schema.
- parent_id_from_catalog(): Extracts a variant's parent id from a
  catalog.product.get result.
- to_remote_product_rows() / approval_fields(): local -> CRM payloads.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from src.fulfillment.deals.schemas import (
    DealUpsert,
    ProductUpsert,
    RemoteDeal,
    RemoteProduct,
    RemoteUser,
    ReportedRow,
    UserUpsert,
)

# ── Select lists ───────────────────────────────────────────────────────────

DEAL_SELECT_FIELDS: list[str] = ["ID", "TITLE", "DATE_CREATE", "CATEGORY_ID"]

PRODUCT_SELECT_FIELDS: list[str] = ["ID", "NAME"]

# Value written to the approval user field of an approved deal
APPROVAL_MARKER = 1


# ── CRM -> local ───────────────────────────────────────────────────────────


def parse_user_field_id(value: Any) -> int | None:
    """Convert a Bitrix user-field value into an id.

    Bitrix returns employee/link user fields as ints, numeric strings,
    empty strings, or (for multiple fields) lists. Empty, zero and
    non-numeric values mean "not set".
    """
    if isinstance(value, list):
        value = value[0] if value else None
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value or None
    text = str(value).strip()
    if not text.isdigit():
        return None
    return int(text) or None


def deal_from_remote(deal: RemoteDeal, assignee_field: str) -> DealUpsert:
    """Map a CRM deal to the header fields the cache stores."""
    return DealUpsert(
        id=deal.id,
        title=deal.title,
        date_create=deal.date_create,
        assigned_id=parse_user_field_id(deal.field(assignee_field)),
    )


def user_from_remote(user: RemoteUser) -> UserUpsert:
    """Map a CRM user; the password is never part of a sync."""
    return UserUpsert(
        id=user.id,
        name=user.name,
        last_name=user.last_name,
        department_ids=list(user.departments),
    )


def product_from_remote(product: RemoteProduct) -> ProductUpsert:
    """Map a CRM catalog entry."""
    return ProductUpsert(id=product.id, name=product.name)


def parent_id_from_catalog(result: Any) -> int | None:
    """Extract ``product.parentId.value`` from a catalog.product.get result.

    Root products carry no parentId (or an empty one); those resolve to None.
    """
    if not isinstance(result, dict):
        return None
    product = result.get("product") or {}
    parent = product.get("parentId") if isinstance(product, dict) else None
    if isinstance(parent, dict):
        return parse_user_field_id(parent.get("value"))
    return parse_user_field_id(parent)


# ── local -> CRM ───────────────────────────────────────────────────────────


def to_remote_product_rows(rows: Sequence[ReportedRow]) -> list[dict[str, Any]]:
    """Convert reported rows into crm.deal.productrows.set row dicts."""
    return [{"PRODUCT_ID": row.product_id, "QUANTITY": row.quantity} for row in rows]


def approval_fields(
    assigned_id: int, assignee_field: str, approval_field: str
) -> dict[str, Any]:
    """Deal fields written when a warehouse manager approves a deal."""
    return {assignee_field: assigned_id, approval_field: APPROVAL_MARKER}
