#!/usr/bin/env python3
"""
Periodic maintenance for the context store.

Tasks:
- Purge expired semantic cache entries
- Delete knowledge items older than the retention window
- Delete persisted performance metrics older than the retention window
- Print knowledge, cache and performance statistics

Usage:
    # Run every task with configured retention
    python scripts/maintenance.py

    # Show what the retention sweep would delete
    python scripts/maintenance.py --dry-run

    # Keep only 90 days of knowledge items, only print stats afterwards
    python scripts/maintenance.py --retention-days 90

    # Stats only
    python scripts/maintenance.py --stats-only

Environment variables:
    POSTGRES_HOST, POSTGRES_PORT, POSTGRES_USER, POSTGRES_PASSWORD, POSTGRES_DB,
    KNOWLEDGE_RETENTION_DAYS

Cron example (daily at 3 AM):
    0 3 * * * cd /app && python scripts/maintenance.py >> /var/log/context_rag_maintenance.log 2>&1
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict

sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from context_rag.config import settings
from context_rag.database import Database
from context_rag.repositories import (
    KnowledgeRepository,
    PerformanceMetricRepository,
    SemanticCacheRepository,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

METRICS_RETENTION_DAYS = 30


async def collect_stats(session_factory) -> Dict[str, Any]:
    knowledge = KnowledgeRepository(session_factory)
    cache = SemanticCacheRepository(session_factory)
    metrics = PerformanceMetricRepository(session_factory)
    return {
        "knowledge_items": await knowledge.count_by_type(),
        "semantic_cache": await cache.get_stats(),
        "performance": await metrics.get_database_stats(),
    }


async def run(args: argparse.Namespace) -> None:
    db = Database(pool_size=0)
    session_factory = db.session_factory
    try:
        if not args.stats_only:
            if args.dry_run:
                logger.info("Dry run: expired cache entries and old metrics are left in place")
            else:
                purged = await SemanticCacheRepository(session_factory).delete_expired()
                logger.info(f"Purged {purged} expired semantic cache entries")

                removed = await PerformanceMetricRepository(session_factory).delete_older_than(args.metrics_retention_days)
                logger.info(f"Deleted {removed} metrics older than {args.metrics_retention_days} days")

            count = await KnowledgeRepository(session_factory).delete_older_than(args.retention_days, dry_run=args.dry_run)
            verb = "Would delete" if args.dry_run else "Deleted"
            logger.info(f"{verb} {count} knowledge items older than {args.retention_days} days")

        stats = await collect_stats(session_factory)
        print(json.dumps(stats, indent=2, default=str))
    finally:
        await db.dispose()


def main():
    parser = argparse.ArgumentParser(
        description="Context store maintenance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=settings.knowledge_retention_days,
        help=f"Delete knowledge items older than this (default: {settings.knowledge_retention_days})",
    )
    parser.add_argument(
        "--metrics-retention-days",
        type=int,
        default=METRICS_RETENTION_DAYS,
        help=f"Delete persisted metrics older than this (default: {METRICS_RETENTION_DAYS})",
    )
    parser.add_argument(
        "--stats-only",
        action="store_true",
        help="Only print statistics",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be deleted without deleting",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        asyncio.run(run(args))
    except Exception as e:
        logger.error(f"Error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
