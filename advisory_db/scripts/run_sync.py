#!/usr/bin/env python3
"""
CVE List Sync Entry Point

Runs one sync of the configured corpus subtree into the document store. Everything is read
from Settings (.env / environment): SYNC_MODE picks full or incremental.

Exit status is 0 when the run completed, even with failed records (they are listed in the
summary), and 1 when the store or the corpus source was unavailable or configuration is
invalid.
"""

import asyncio
import logging
import sys

from ..config.settings import settings
from ..orchestration.cvelist_orchestrator import CveListOrchestrator
from ..sources.base.exceptions import ConfigException, SourceUnavailable, StoreUnavailable

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def print_summary(report):
    print("\n" + "=" * 60)
    print("ADVISORY SYNC SUMMARY")
    print("=" * 60)
    print(f"Duration: {report.duration_seconds:.2f}s")
    print(f"Records: {report.total}")
    print(f"Succeeded: {report.succeeded}")
    print(f"Failed: {report.failed}")

    if report.failed_locations:
        print("\nFailures:")
        for location in report.failed_locations[:5]:
            print(f"  - {location}: {report.errors.get(location)}")
        if report.failed > 5:
            print(f"  ... and {report.failed - 5} more failures")


async def run_sync() -> int:
    async with CveListOrchestrator(settings) as orchestrator:
        report = await orchestrator.run()
    print_summary(report)
    return 0


def main():
    configure_logging(settings.LOG_LEVEL)
    try:
        exit_code = asyncio.run(run_sync())
    except (StoreUnavailable, SourceUnavailable) as e:
        logger.error(f"❌ Sync aborted: {e}")
        exit_code = 1
    except ConfigException as e:
        logger.error(f"❌ Configuration error: {e}")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
