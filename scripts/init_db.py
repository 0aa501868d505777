#!/usr/bin/env python3
"""
Create the pgvector extension and the context store tables.

Tables: knowledge_items, semantic_cache, performance_metrics, user_profiles.
Safe to run repeatedly; existing tables are left untouched.

Usage:
    python scripts/init_db.py

    # Only check connectivity
    python scripts/init_db.py --check

Environment variables:
    POSTGRES_HOST, POSTGRES_PORT, POSTGRES_USER, POSTGRES_PASSWORD, POSTGRES_DB
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from context_rag.config import settings
from context_rag.database import Database

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


async def run(check_only: bool) -> bool:
    db = Database(pool_size=0)
    try:
        if not await db.ping():
            logger.error("PostgreSQL is not reachable")
            return False
        if check_only:
            logger.info("PostgreSQL connection OK")
            return True
        await db.create_schema()
        logger.info("Database schema is ready")
        return True
    finally:
        await db.dispose()


def main():
    parser = argparse.ArgumentParser(description="Initialize the context store schema")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only verify the database connection",
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
        ok = asyncio.run(run(args.check))
    except Exception as e:
        logger.error(f"Error: {e}")
        sys.exit(1)
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
