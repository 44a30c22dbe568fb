"""
Recon Core - Reconciliation Job

Runs one reconciliation from the command line or a scheduler and prints
the run result as JSON.

Usage:
    python reconcile_job.py --company-id <id> [--statement-id <id>]
        [--mode receipt|statement] [--dry-run] [--deadline <seconds>]

Exit codes:
    0 - run completed (partial failures are reported in the output)
    2 - invalid scope (missing company, unknown statement, bad mode)
    3 - candidates could not be fetched, nothing written
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from config import get_settings
from database.connection import create_engine_for_url, create_session_factory
from logging_config import setup_logging, get_logger, set_request_context
from reconciliation.errors import FetchError, ValidationError
from reconciliation.repository import SqlCandidateRepository
from reconciliation.services.reconciliation_service import ReconciliationService
from sentry_integration import init_sentry

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_VALIDATION = 2
EXIT_FETCH = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reconcile bank debits against receipts or expenses")
    parser.add_argument("--company-id", required=True, help="Owning company ID")
    parser.add_argument("--statement-id", help="Restrict the run to one bank statement")
    parser.add_argument(
        "--mode",
        choices=["receipt", "statement"],
        help="Counterparts to match (defaults to statement when --statement-id is given)"
    )
    parser.add_argument("--dry-run", action="store_true", help="Print decisions without writing them")
    parser.add_argument("--deadline", type=float, help="Seconds allowed for applying decisions")
    return parser


async def run_job(args: argparse.Namespace, service: Optional[ReconciliationService] = None) -> int:
    """Run one reconciliation and print its result. Returns the exit code."""
    settings = get_settings()
    engine = None

    if service is None:
        if not settings.DATABASE_URL:
            logger.error("DATABASE_URL is not set")
            return EXIT_FETCH
        engine = create_engine_for_url(settings.DATABASE_URL, ssl=settings.DATABASE_SSL)
        service = ReconciliationService(
            SqlCandidateRepository(create_session_factory(engine)),
            **settings.run_defaults()
        )

    mode = args.mode or ("statement" if args.statement_id else "receipt")
    set_request_context(company_id=args.company_id)

    try:
        result = await service.reconcile(
            args.company_id,
            statement_id=args.statement_id,
            mode=mode,
            dry_run=args.dry_run,
            deadline_seconds=args.deadline,
            actor="reconcile_job"
        )
    except ValidationError as e:
        logger.error(f"Invalid reconciliation scope: {e}")
        print(json.dumps({"error": "invalid_parameter", "parameter": e.parameter, "message": e.message}))
        return EXIT_VALIDATION
    except FetchError as e:
        logger.error(f"Reconciliation aborted: {e}")
        print(json.dumps({"error": "fetch_failed", "message": str(e)}))
        return EXIT_FETCH
    finally:
        if engine is not None:
            await engine.dispose()

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.is_production, service_name="recon-job", stream=sys.stderr)
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT, traces_sample_rate=0.0)

    return asyncio.run(run_job(args))


if __name__ == "__main__":
    sys.exit(main())
