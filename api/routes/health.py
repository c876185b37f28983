"""
Health check endpoint with database, migration and sheet source status
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from api.dependencies import get_db
from schemas.api import HealthCheckResponse, MigrationStateInfo
from ingestion.checkpoint import CheckpointState
from models.checkpoint import MigrationCheckpoint, CURRENT_CHECKPOINT_ID
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Persisted migration checkpoint (read only, never created here)
    - Server-side migration job status
    - Sheet source status (failover and cache)
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Database connection failed: {str(e)}")

    migration = None
    if db_connected:
        try:
            row = await db.get(MigrationCheckpoint, CURRENT_CHECKPOINT_ID)
            if row is not None:
                migration = MigrationStateInfo(**CheckpointState.from_model(row).to_dict())
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch migration checkpoint: {str(e)}")

    controller = getattr(request.app.state, "controller", None)
    cached_source = getattr(request.app.state, "cached_sheet_source", None)

    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        migration=migration,
        job_status=controller.status.value if controller is not None else None,
        source=cached_source.get_status() if cached_source is not None else {"configured": False},
    )
