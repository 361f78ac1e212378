#!/usr/bin/env python3
"""
Integrity check for the TaskTree store.

Reads every task and reports rows whose level, path, sibling order or
child counters disagree with the rest of the hierarchy. Exits non-zero
when anything is found.

Usage:
    python scripts/check_hierarchy.py [--database-url URL]
"""

import argparse
import asyncio
import sys

from tasktree.config import Config
from tasktree.database import DatabaseManager
from tasktree.exceptions import TaskTreeError
from tasktree.logging_config import setup_logging, get_logger
from tasktree.services.hierarchy_service import HierarchyService

setup_logging()
logger = get_logger(__name__)


def print_section_header(title: str):
    """Print a formatted section header."""
    print("\n" + "=" * 60)
    print(f"  {title}")
    print("=" * 60)


async def run_check(database_url: str, config: Config) -> int:
    """Run the check against one database and print the findings.

    Returns:
        Number of problems found
    """
    db_manager = DatabaseManager(database_url)
    await db_manager.initialize()
    try:
        service = HierarchyService(db_manager, config.get_hierarchy_config())
        problems = await service.check_integrity()
    finally:
        await db_manager.close()

    print_section_header(f"Hierarchy check: {database_url}")
    if not problems:
        print("✓ No problems found")
    for problem in problems:
        print(f"✗ {problem}")
    return len(problems)


def main() -> int:
    parser = argparse.ArgumentParser(description="Check TaskTree hierarchy integrity")
    parser.add_argument("--database-url", help="SQLAlchemy URL (defaults to configured store)")
    options = parser.parse_args()

    config = Config()
    url = options.database_url or config.get_database_config()["url"]

    try:
        problems = asyncio.run(run_check(url, config))
    except TaskTreeError as e:
        logger.error(f"Hierarchy check failed: {e}")
        print(f"✗ {e.code}: {e.message}")
        return 2

    return 1 if problems else 0


if __name__ == "__main__":
    sys.exit(main())
