#!/usr/bin/env python3
"""
Xero sync driver

Loops chunked sync calls against a running API until every entity type is
fully imported, then optionally walks the enrichment pipeline to the end.

Usage:
    python scripts/run_sync.py --user-id owner@example.com
    python scripts/run_sync.py --token <jwt> --max-pages 5
    python scripts/run_sync.py --user-id owner@example.com --reset --enrich
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path

import httpx
import structlog

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from crmsync.auth.jwt import create_access_token
from crmsync.connectors.sync_driver import HttpChunkRunner, SyncDriver
from crmsync.utils.logging import configure_logging

logger = structlog.get_logger()


async def reset_cursors(api_url: str, token: str) -> None:
    async with httpx.AsyncClient(base_url=api_url, timeout=30.0) as client:
        response = await client.post(
            "/api/v1/sync/reset", headers={"Authorization": f"Bearer {token}"}
        )
        response.raise_for_status()
        logger.info("sync_cursors_reset", cleared=response.json().get("cleared"))


async def run_enrichment(api_url: str, token: str, batch_size: int, strategy: str) -> None:
    cursor = 0
    headers = {"Authorization": f"Bearer {token}"}
    async with httpx.AsyncClient(base_url=api_url, timeout=600.0) as client:
        while True:
            response = await client.post(
                "/api/v1/enrichment/batch",
                json={"cursor": cursor, "batchSize": batch_size, "strategy": strategy},
                headers=headers,
            )
            response.raise_for_status()
            result = response.json()
            print(result["message"])
            if not result["hasMore"]:
                break
            cursor = result["nextCursor"]


async def run(args: argparse.Namespace) -> int:
    token = args.token or create_access_token({"sub": args.user_id})

    if args.reset:
        await reset_cursors(args.api_url, token)

    driver = SyncDriver(
        HttpChunkRunner(args.api_url, token),
        max_customer_pages=args.max_pages,
        max_invoice_pages=args.max_pages,
        max_bank_transaction_pages=args.max_pages,
        max_chunks=args.max_chunks,
        on_progress=print,
    )

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, driver.cancel)
    except NotImplementedError:
        # Windows event loops have no signal handlers
        pass

    summary = await driver.run()

    print(
        f"Chunks: {summary.chunks}, customers: {summary.total_customers}, "
        f"invoices: {summary.total_invoices}, bank transactions: {summary.total_bank_transactions}"
    )
    if summary.error:
        print(f"Sync stopped: {summary.error}", file=sys.stderr)
        return 1
    if summary.cancelled:
        print("Sync cancelled; run again to resume.")
        return 130

    if args.enrich and summary.completed:
        await run_enrichment(args.api_url, token, args.batch_size, args.strategy)

    return 0


def main():
    """Parse arguments and run the sync loop."""
    parser = argparse.ArgumentParser(description="Run a full Xero sync through the API")
    parser.add_argument("--api-url", default="http://localhost:8000", help="API base URL")
    auth = parser.add_mutually_exclusive_group(required=True)
    auth.add_argument("--token", help="Bearer JWT of the user")
    auth.add_argument("--user-id", help="Mint a JWT locally for this user (needs JWT_SECRET)")
    parser.add_argument(
        "--max-pages", type=int, default=None, help="Pages per entity per chunk (server default)"
    )
    parser.add_argument("--max-chunks", type=int, default=None, help="Stop after N chunks")
    parser.add_argument("--reset", action="store_true", help="Start over from page 1")
    parser.add_argument("--enrich", action="store_true", help="Run enrichment after syncing")
    parser.add_argument("--batch-size", type=int, default=200, help="Enrichment batch size")
    parser.add_argument(
        "--strategy", choices=["ai", "heuristic"], default="ai", help="Enrichment strategy"
    )

    args = parser.parse_args()
    configure_logging()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
