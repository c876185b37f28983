"""
Administrative endpoints: authentication, batch migration and data fixes.

Every endpoint except /admin/login and /admin/verify expects today's
admin token in the JSON body as ``authKey``.
"""

from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import (
    get_cached_sheet_source,
    get_controller,
    get_db,
    get_settings,
    get_sheet_source,
)
from core.config import Settings
from core.exceptions import AdminAuthError, InvalidTransitionError
from core.security import (
    check_operator_password,
    generate_admin_token,
    require_admin_token,
    verify_admin_token,
)
from ingestion.controller import MigrationController
from ingestion.loaders.postgres_loader import EstablishmentLoader
from ingestion.runner import MigrationRunner
from ingestion.sources.base import SheetSource
from ingestion.sources.cache import CachedSheetSource
from ingestion.sources.factory import build_spreadsheet_source
from models.base import MigrationStatus, TargetTable
from schemas.api import (
    AuthenticatedRequest,
    LoginRequest,
    LoginResponse,
    MigrateContinueResponse,
    MigrateRequest,
    MigrateResetResponse,
    MigrateSheetRequest,
    MigrateSheetResponse,
    MigrateStartResponse,
    MigrateStateResponse,
    MigrationJobRequest,
    MigrationJobResponse,
    SheetListResponse,
    UpdateCoordinatesRequest,
    UpdateCoordinatesResponse,
    VerifyMigrationResponse,
    VerifyTokenRequest,
    VerifyTokenResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["Admin"])


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "-")


# ============================================================================
# Authentication
# ============================================================================

@router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest):
    """Exchange the operator password for today's admin token."""
    if not check_operator_password(body.password):
        logger.warning("Failed admin login attempt")
        raise AdminAuthError("Contraseña incorrecta")

    return LoginResponse(
        token=generate_admin_token(),
        expires=datetime.now(timezone.utc).date().isoformat(),
    )


@router.post("/verify", response_model=VerifyTokenResponse)
async def verify(body: VerifyTokenRequest):
    return VerifyTokenResponse(valid=verify_admin_token(body.token))


# ============================================================================
# Batch migration
# ============================================================================

@router.post("/migrate")
async def migrate(
    body: MigrateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    source: SheetSource = Depends(get_sheet_source),
    settings: Settings = Depends(get_settings),
):
    """
    Client-driven migration, one action per call.

    Actions:
    - getState: current checkpoint
    - start: fix the total and zero the progress
    - continue: process one batch at startIndex (default: checkpoint offset)
    - reset: delete migrated data and zero the checkpoint
    """
    require_admin_token(body.auth_key)

    controller = getattr(request.app.state, "controller", None)
    if (
        body.action != "getState"
        and controller is not None
        and controller.status == MigrationStatus.RUNNING
    ):
        raise InvalidTransitionError(
            f"A server-side migration job is running; '{body.action}' is not allowed",
            context={"action": body.action}
        )

    runner = MigrationRunner(db, source, settings)
    logger.info(f"[{_request_id(request)}] POST /admin/migrate action={body.action}")

    if body.action == "getState":
        state = await runner.get_state()
        return MigrateStateResponse(state=state.to_dict())

    if body.action == "start":
        total = await runner.start_run()
        return MigrateStartResponse(totalRecords=total)

    if body.action == "reset":
        deleted = await runner.reset()
        return MigrateResetResponse(deleted=deleted)

    batch_size = settings.clamp_batch_size(body.batch_size)
    start_index = body.start_index
    if start_index is None:
        start_index = (await runner.get_state()).last_processed_id

    result = await runner.process_batch(start_index, batch_size)
    return MigrateContinueResponse(
        processedInBatch=result.processed_in_batch,
        totalProcessed=result.total_processed,
        totalRecords=result.total_records,
        progress=result.progress_percent,
        nextBatchStart=result.next_batch_start,
        completed=result.completed,
        results=result.to_dict(),
    )


@router.post("/migrate-sheet", response_model=MigrateSheetResponse)
async def migrate_sheet(
    body: MigrateSheetRequest,
    db: AsyncSession = Depends(get_db),
    source: SheetSource = Depends(get_sheet_source),
    settings: Settings = Depends(get_settings),
):
    """
    Upsert a whole sheet into establishments or contacts.

    A ``sheetId`` other than the configured SPREADSHEET_ID is read
    straight from Google Sheets with the configured API key.
    """
    require_admin_token(body.auth_key)

    if body.sheet_id and body.sheet_id != settings.SPREADSHEET_ID:
        try:
            source = build_spreadsheet_source(settings, body.sheet_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        logger.info(f"Migrating sheet {body.sheet_name} from spreadsheet {body.sheet_id}")

    if body.table:
        table = TargetTable(body.table)
    elif body.sheet_name.strip().upper() == settings.CONTACTS_SHEET.upper():
        table = TargetTable.CONTACTS
    else:
        table = TargetTable.ESTABLISHMENTS

    runner = MigrationRunner(db, source, settings)
    outcome = await runner.migrate_sheet(body.sheet_name, table, body.batch_size)

    return MigrateSheetResponse(
        message=(
            f"Hoja {body.sheet_name} migrada a {table.value}: "
            f"{outcome['inserted']} insertados, {outcome['updated']} actualizados"
        ),
        **outcome
    )


@router.post("/verify-migration", response_model=VerifyMigrationResponse)
async def verify_migration(
    body: AuthenticatedRequest,
    db: AsyncSession = Depends(get_db),
    source: SheetSource = Depends(get_sheet_source),
    settings: Settings = Depends(get_settings),
):
    require_admin_token(body.auth_key)
    runner = MigrationRunner(db, source, settings)
    return VerifyMigrationResponse(**await runner.verify())


@router.post("/sheet-list", response_model=SheetListResponse)
async def sheet_list(
    body: AuthenticatedRequest,
    source: CachedSheetSource = Depends(get_cached_sheet_source),
):
    require_admin_token(body.auth_key)
    sheets = await source.list_sheets()
    return SheetListResponse(sheets=sheets, source=source.get_status())


@router.post("/update-coordinates", response_model=UpdateCoordinatesResponse)
async def update_coordinates(
    body: UpdateCoordinatesRequest,
    db: AsyncSession = Depends(get_db),
):
    """Correct the coordinates of one establishment."""
    require_admin_token(body.auth_key)

    found = await EstablishmentLoader(db).update_coordinates(body.cue, body.lat, body.lon)
    if not found:
        raise HTTPException(status_code=404, detail=f"Establecimiento {body.cue} no encontrado")

    logger.info(f"Coordinates updated for cue={body.cue}: lat={body.lat} lon={body.lon}")
    return UpdateCoordinatesResponse(cue=body.cue, lat=body.lat, lon=body.lon)


# ============================================================================
# Server-side migration job
# ============================================================================

@router.post("/migration-job", response_model=MigrationJobResponse)
async def migration_job(
    body: MigrationJobRequest,
    controller: MigrationController = Depends(get_controller),
):
    """
    Drive the server-side migration job.

    The job keeps running after this request returns; poll with
    action=status.
    """
    require_admin_token(body.auth_key)

    if body.action == "start":
        await controller.start(body.batch_size)
    elif body.action == "pause":
        await controller.pause()
    elif body.action == "resume":
        await controller.resume()
    elif body.action == "reset":
        await controller.reset()

    return MigrationJobResponse(job=controller.snapshot())
