"""
Script to run the spreadsheet migration to completion

Local mode (default) processes batches in-process against DATABASE_URL.
Remote mode (--remote URL) drives a running server's /admin/migrate
endpoint, one HTTP call per batch.
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

import httpx
from core.config import settings
from core.database import async_session_maker, create_tables, engine
from core.exceptions import MigrationException
from core.logging import setup_logging
from ingestion.controller import (
    BatchCaller,
    ControllerConfig,
    HttpBatchCaller,
    LocalBatchCaller,
    MigrationController,
)
from ingestion.sources.factory import build_sheet_source
from models.base import MigrationStatus

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Migrate the establishments sheet into the database")
    parser.add_argument("--remote", metavar="URL", help="Base URL of a running server to drive")
    parser.add_argument("--password", help="Operator password (default: MIGRATION_AUTH_KEY)")
    parser.add_argument("--batch-size", type=int, default=None, help="Records per batch (clamped to 5-50)")
    parser.add_argument("--resume", action="store_true", help="Continue an unfinished run instead of starting over")
    parser.add_argument("--reset", action="store_true", help="Delete migrated data and the checkpoint first")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    return parser.parse_args(argv)


async def login(base_url: str, password: str) -> str:
    """Exchange the operator password for today's admin token."""
    async with httpx.AsyncClient(timeout=settings.MIGRATION_CALL_TIMEOUT) as client:
        response = await client.post(f"{base_url.rstrip('/')}/admin/login", json={"password": password})
    if response.status_code != 200:
        raise SystemExit(f"Login failed (HTTP {response.status_code}): {response.text[:200]}")
    return response.json()["token"]


async def build_caller(args: argparse.Namespace) -> BatchCaller:
    if args.remote:
        password = args.password or settings.MIGRATION_AUTH_KEY
        if not password:
            raise SystemExit("--password or MIGRATION_AUTH_KEY is required in remote mode")
        token = await login(args.remote, password)
        return HttpBatchCaller(args.remote, token, timeout=settings.MIGRATION_CALL_TIMEOUT * 2)

    await create_tables()
    return LocalBatchCaller(async_session_maker, build_sheet_source(settings), settings)


async def run_migration(args: argparse.Namespace) -> int:
    """Run one migration and return the process exit code"""
    caller = await build_caller(args)
    controller = MigrationController(caller, ControllerConfig.from_settings(settings))

    try:
        if args.reset:
            await controller.reset()

        if args.resume:
            snapshot = await controller.recover(resume=True)
            if snapshot["status"] == MigrationStatus.IDLE.value:
                logger.info("No unfinished run found, starting a new one")
                await controller.start(args.batch_size)
        else:
            await controller.start(args.batch_size)

        await controller.wait()
    except MigrationException as e:
        logger.error(f"Migration error: {e.message}", extra={"error_context": e.to_dict()})
        return 1
    finally:
        if not args.remote:
            await engine.dispose()

    snapshot = controller.snapshot()
    logger.info(
        f"Migration {snapshot['status']}: {snapshot['totalProcessed']}/{snapshot['totalRecords']} "
        f"records ({snapshot['progressPercent']}%)"
    )
    if snapshot["lastError"]:
        logger.warning(f"Last error: {snapshot['lastError']}")

    return 0 if controller.status == MigrationStatus.COMPLETED else 1


if __name__ == "__main__":
    cli_args = parse_args()
    setup_logging("DEBUG" if cli_args.verbose else None)
    sys.exit(asyncio.run(run_migration(cli_args)))
