"""
Create (or recreate) the database schema.

    python scripts/init_db.py                 # create missing tables
    python scripts/init_db.py --drop          # drop everything first
    python scripts/init_db.py --reset-checkpoint
"""

import argparse
import asyncio
import logging
import os
import sys

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import async_session_maker, create_tables, drop_tables, engine
from core.logging import setup_logging
from ingestion.checkpoint import CheckpointStore

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialise the establishments database")
    parser.add_argument("--drop", action="store_true", help="Drop all tables before creating them")
    parser.add_argument(
        "--reset-checkpoint",
        action="store_true",
        help="Zero the migration checkpoint without touching migrated rows"
    )
    return parser.parse_args(argv)


async def init_database(args: argparse.Namespace) -> None:
    try:
        if args.drop:
            await drop_tables()
        await create_tables()

        if args.reset_checkpoint:
            async with async_session_maker() as session:
                await CheckpointStore(session).reset()
            logger.info("Migration checkpoint reset")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(init_database(parse_args()))
