"""
FastAPI dependencies: database sessions and the per-application state
objects (sheet sources, migration controller, suggestion cache).
"""

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, settings
from core.database import get_session
from core.exceptions import SheetExtractionError
from api.search import SuggestionCache
from ingestion.controller import MigrationController
from ingestion.sources.base import SheetSource
from ingestion.sources.cache import CachedSheetSource


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a database session for one request"""
    async for session in get_session():
        yield session


def get_settings() -> Settings:
    return settings


def _not_configured(what: str) -> SheetExtractionError:
    return SheetExtractionError(
        f"{what} is not available: no sheet source configured",
        context={"hint": "set CSV_SHEETS_DIR or SPREADSHEET_ID and GOOGLE_SHEETS_API_KEY"}
    )


def get_sheet_source(request: Request) -> SheetSource:
    source = getattr(request.app.state, "sheet_source", None)
    if source is None:
        raise _not_configured("Sheet source")
    return source


def get_cached_sheet_source(request: Request) -> CachedSheetSource:
    source = getattr(request.app.state, "cached_sheet_source", None)
    if source is None:
        raise _not_configured("Sheet source")
    return source


def get_controller(request: Request) -> MigrationController:
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise _not_configured("Migration job")
    return controller


def get_suggestion_cache(request: Request) -> SuggestionCache:
    return request.app.state.suggestion_cache
