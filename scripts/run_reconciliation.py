"""
Run a reconciliation pass from the command line.

Uses the same client, sync service and engine as the API, so runs are
recorded in reconciliation_logs and the audit trail like any other.

Usage:
    python scripts/run_reconciliation.py
    python scripts/run_reconciliation.py --type full
    python scripts/run_reconciliation.py --check-only
"""
import argparse
import asyncio
import logging

from fieldsync.config import get_settings
from fieldsync.database import dispose_engine
from fieldsync.integrations.servicem8 import ServiceM8Client
from fieldsync.models.reconciliation_log import ReconciliationType
from fieldsync.services.reconciliation import ReconciliationEngine
from fieldsync.services.sync import SyncService
from fieldsync.utils.logging import configure_structured_logging
from fieldsync.utils.redis import close_redis

logger = logging.getLogger(__name__)


async def check_only(engine: ReconciliationEngine) -> int:
    report = await engine.perform_consistency_checks()

    print("\n" + "=" * 60)
    print("  FIELDSYNC CONSISTENCY REPORT")
    print("=" * 60)
    for category, count in report.by_category().items():
        print(f"  {category:<20} {count}")
    print()
    for issue in report.issues[:50]:
        print(f"  [{issue.category.value}] {issue.entity_type} {issue.uuid}: {issue.message}")
    if len(report.issues) > 50:
        print(f"  ... and {len(report.issues) - 50} more")
    print("=" * 60)

    return len(report.issues)


async def main(run_type: str, checks: bool) -> int:
    settings = get_settings()
    client = ServiceM8Client.from_settings(settings)
    engine = ReconciliationEngine(
        client,
        SyncService(client),
        run_budget_seconds=settings.reconciliation_run_budget_seconds,
        sample_size=settings.reconciliation_sample_size,
    )

    try:
        if checks:
            return await check_only(engine)

        log = await engine.run(run_type, actor="cli")
        logger.info(
            "Reconciliation %s %s: %d records, %d errors, %sms",
            log.type, log.status, log.records_processed, log.errors, log.duration_ms,
        )
        if log.error_message:
            logger.error("Error: %s", log.error_message)
        return 0 if log.status == "completed" and not log.errors else 1
    finally:
        await client.aclose()
        await close_redis()
        await dispose_engine()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run ServiceM8 reconciliation")
    parser.add_argument(
        "--type", default=ReconciliationType.FULL, choices=ReconciliationType.ALL,
        help="Reconciliation type",
    )
    parser.add_argument(
        "--check-only", action="store_true",
        help="Report consistency issues without repairing them",
    )
    args = parser.parse_args()
    configure_structured_logging(get_settings().log_level, json_output=False)
    exit(asyncio.run(main(args.type, args.check_only)))
