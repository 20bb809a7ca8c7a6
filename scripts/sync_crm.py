#!/usr/bin/env python3
"""CLI for seeding and refreshing the local deal cache from Bitrix24.

Usage:
    python scripts/sync_crm.py init-db
    python scripts/sync_crm.py sync-users
    python scripts/sync_crm.py sync-products
    python scripts/sync_crm.py sync-deals --category 3
    python scripts/sync_crm.py sync-deal-products
    python scripts/sync_crm.py ingest-deal 1234
    python scripts/sync_crm.py remove-deal 1234

Reads DATABASE_URL, CRM_WEBHOOK_URL and the deal field codes from the
environment or the .env file in the project root. Exits non-zero when an
operation fails.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.fulfillment
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

logger = structlog.get_logger(__name__)


async def run(args: argparse.Namespace) -> int:
    """Run one subcommand against the configured cache and CRM."""
    from src.fulfillment.config import get_settings
    from src.fulfillment.core.database import close_db, get_session, init_db
    from src.fulfillment.deals.crm import BitrixGateway
    from src.fulfillment.deals.repository import DealStore
    from src.fulfillment.deals.sync import SyncOrchestrator
    from src.fulfillment.errors import FulfillmentError

    settings = get_settings()

    try:
        await init_db()
        if args.command == "init-db":
            print("Cache tables ready")
            return 0

        store = DealStore(get_session)

        async with BitrixGateway.from_settings(settings) as gateway:
            orchestrator = SyncOrchestrator(gateway, store, settings=settings)

            if args.command == "remove-deal":
                # Cache only, the CRM is not called
                removed = await orchestrator.remove_deal(args.deal_id)
                print(f"Deal {args.deal_id} {'removed' if removed else 'was not cached'}")
                return 0

            if args.command == "ingest-deal":
                result = await orchestrator.ingest_deal(args.deal_id)
            elif args.command == "sync-users":
                result = await orchestrator.sync_users()
            elif args.command == "sync-products":
                result = await orchestrator.sync_products()
            elif args.command == "sync-deals":
                filters = {"CATEGORY_ID": args.category} if args.category is not None else None
                result = await orchestrator.sync_deals(filters)
            else:
                result = await orchestrator.sync_all_deal_products()

        print(result.model_dump_json(indent=2))
        return 0
    except FulfillmentError as exc:
        logger.error("cli.command_failed", command=args.command, code=exc.code, error=str(exc))
        print(f"{args.command} failed: {exc}", file=sys.stderr)
        return 1
    finally:
        await close_db()


def main() -> None:
    from src.fulfillment.core.logging import configure_structlog

    parser = argparse.ArgumentParser(description="Sync the local deal cache with Bitrix24")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the cache tables")
    subparsers.add_parser("sync-users", help="Upsert every CRM user")
    subparsers.add_parser("sync-products", help="Upsert the CRM product catalog")
    deals = subparsers.add_parser("sync-deals", help="Upsert CRM deal headers")
    deals.add_argument("--category", type=int, default=None, help="Only deals of this CATEGORY_ID")
    subparsers.add_parser("sync-deal-products", help="Refresh product rows of every cached deal")

    ingest = subparsers.add_parser("ingest-deal", help="Ingest one deal and its product rows")
    ingest.add_argument("deal_id", type=int)
    remove = subparsers.add_parser("remove-deal", help="Drop a deal from the cache")
    remove.add_argument("deal_id", type=int)

    args = parser.parse_args()

    configure_structlog()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
