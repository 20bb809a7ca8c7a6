"""CRM integration layer -- the remote side of the deal cache.

Provides the abstract CRMGateway interface with one concrete implementation:
- BitrixGateway: Bitrix24 REST (inbound webhook) over a pooled httpx client

Field mapping helpers convert Bitrix records to the local cache schemas
and back.
"""

from src.fulfillment.deals.crm.adapter import CRMGateway
from src.fulfillment.deals.crm.bitrix import BitrixGateway
from src.fulfillment.deals.crm.field_mapping import (
    approval_fields,
    deal_from_remote,
    parse_user_field_id,
    product_from_remote,
    to_remote_product_rows,
    user_from_remote,
)

__all__ = [
    "CRMGateway",
    "BitrixGateway",
    "approval_fields",
    "deal_from_remote",
    "parse_user_field_id",
    "product_from_remote",
    "to_remote_product_rows",
    "user_from_remote",
]
