#!/usr/bin/env python3
"""CLI script to run a complete RD Station sync.

Usage:
    uv run python scripts/run_rdstation_sync.py --scope full
    uv run python scripts/run_rdstation_sync.py --scope south --dry-run --max-rounds 5
    uv run python scripts/run_rdstation_sync.py --scope full --deals-only --stage-filter proposta

Connects directly to the database using DATABASE_URL from environment or .env file.
The CRM token is read from --token or RDSTATION_ACCESS_TOKEN. Invocations are
chained through the returned cursor until the sync drains or the round budget
is spent; the final report is printed as JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Ensure project root is on sys.path so we can import src.crm_sync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run_sync(args: argparse.Namespace) -> int:
    """Run the sync to completion and print the aggregated report."""
    from src.crm_sync.api.middleware.logging import configure_structlog
    from src.crm_sync.config import get_settings
    from src.crm_sync.core.database import close_db, get_session, init_db
    from src.crm_sync.sync.errors import SyncJobFailed
    from src.crm_sync.sync.orchestrator import SyncOrchestrator
    from src.crm_sync.sync.postgres import PostgresStore
    from src.crm_sync.sync.runner import SyncRunner
    from src.crm_sync.sync.schemas import SyncRequest

    configure_structlog()
    await init_db()

    settings = get_settings()
    request = SyncRequest.model_validate(
        {
            "access_token": args.token or os.environ.get("RDSTATION_ACCESS_TOKEN", ""),
            "api_url": args.api_url,
            "auth_mode": args.auth_mode,
            "sync_scope": args.scope,
            "deals_only": args.deals_only,
            "deal_stage_filter": args.stage_filter,
            "deal_pipeline_filter": args.pipeline_filter,
            "deals_limit": args.deals_limit,
            "allowed_states": args.states,
            "records_per_page": args.records_per_page,
            "page_chunk_size": args.page_chunk_size,
            "dry_run": args.dry_run,
        }
    )
    if not request.access_token:
        print("Missing RD Station token: pass --token or set RDSTATION_ACCESS_TOKEN", file=sys.stderr)
        return 2

    store = PostgresStore(session_factory=get_session)
    runner = SyncRunner(
        SyncOrchestrator(store, settings=settings),
        max_errors=settings.MAX_SAMPLED_ERRORS,
    )

    try:
        report = await runner.run_until_complete(request, max_rounds=args.max_rounds)
    except SyncJobFailed as exc:
        print(f"Sync failed (job {exc.sync_job_id}): {exc}", file=sys.stderr)
        return 1
    finally:
        await close_db()

    print(json.dumps(report.model_dump(mode="json"), indent=2, ensure_ascii=False))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a complete RD Station CRM sync")
    parser.add_argument("--token", default=None, help="RD Station CRM access token")
    parser.add_argument("--api-url", default=None, help="Override the CRM API base URL")
    parser.add_argument("--auth-mode", default=None, help="bearer or query_token (default: auto)")
    parser.add_argument(
        "--scope",
        default="customers_whatsapp_only",
        help="customers_whatsapp_only, full or south_cnpj_only (aliases accepted)",
    )
    parser.add_argument("--deals-only", action="store_true", help="Skip organizations and contacts")
    parser.add_argument("--stage-filter", default=None, help="Only import deals in this stage")
    parser.add_argument("--pipeline-filter", default=None, help="Only import deals in this pipeline")
    parser.add_argument("--deals-limit", type=int, default=0, help="Stop after N deals (0 = all)")
    parser.add_argument("--states", default=None, help="Comma-separated allowed state codes")
    parser.add_argument("--records-per-page", type=int, default=100)
    parser.add_argument("--page-chunk-size", type=int, default=1)
    parser.add_argument("--max-rounds", type=int, default=120)
    parser.add_argument("--dry-run", action="store_true", help="Resolve and count without writing")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_sync(args)))


if __name__ == "__main__":
    main()
