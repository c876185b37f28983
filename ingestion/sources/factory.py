"""
Build the configured sheet source
"""

import logging
from typing import Optional

from core.config import Settings
from ingestion.sources.base import SheetSource
from ingestion.sources.cache import CachedSheetSource
from ingestion.sources.csv_source import CSVSheetSource
from ingestion.sources.failover import FailoverSheetSource
from ingestion.sources.google_sheets import GoogleSheetsSource, RowListSheetSource

logger = logging.getLogger(__name__)


def _retry_options(settings: Settings) -> dict:
    return {
        "timeout": settings.SOURCE_TIMEOUT,
        "max_retries": settings.SOURCE_MAX_RETRIES,
        "retry_delay": settings.SOURCE_RETRY_DELAY,
    }


def build_spreadsheet_source(settings: Settings, spreadsheet_id: str, **kwargs) -> GoogleSheetsSource:
    """
    Google Sheets reader for ``spreadsheet_id`` using the configured API key.

    Extra keyword arguments go to GoogleSheetsSource (e.g. client_factory).

    Raises:
        ValueError: GOOGLE_SHEETS_API_KEY is not set
    """
    if not settings.GOOGLE_SHEETS_API_KEY:
        raise ValueError(f"GOOGLE_SHEETS_API_KEY is required to read spreadsheet {spreadsheet_id}")

    options = {**_retry_options(settings), **kwargs}
    return GoogleSheetsSource(
        spreadsheet_id=spreadsheet_id,
        api_key=settings.GOOGLE_SHEETS_API_KEY,
        api_url=settings.SHEETS_API_URL,
        **options
    )


def build_sheet_source(settings: Settings) -> SheetSource:
    """
    Pick the source the migration reads from.

    - CSV_SHEETS_DIR set -> CSV exports (offline)
    - otherwise Google Sheets, behind a failover to
      SECONDARY_SHEETS_API_URL when one is configured

    Raises:
        ValueError: no source is configured
    """
    if settings.CSV_SHEETS_DIR:
        logger.info(f"Using CSV sheet exports from {settings.CSV_SHEETS_DIR}")
        return CSVSheetSource(settings.CSV_SHEETS_DIR)

    if not settings.SPREADSHEET_ID or not settings.GOOGLE_SHEETS_API_KEY:
        raise ValueError(
            "No sheet source configured: set CSV_SHEETS_DIR or "
            "SPREADSHEET_ID and GOOGLE_SHEETS_API_KEY"
        )

    primary = build_spreadsheet_source(settings, settings.SPREADSHEET_ID)

    if not settings.SECONDARY_SHEETS_API_URL:
        return primary

    secondary = RowListSheetSource(
        base_url=settings.SECONDARY_SHEETS_API_URL,
        sheet_names=[settings.ESTABLISHMENTS_SHEET, settings.CONTACTS_SHEET],
        name="secondary",
        **_retry_options(settings)
    )
    logger.info("Sheet source failover enabled")
    return FailoverSheetSource(
        primary,
        secondary,
        max_fail_count=settings.SOURCE_MAX_FAIL_COUNT,
        retry_cooldown_seconds=settings.SOURCE_RETRY_COOLDOWN_SECONDS,
    )


def build_cached_sheet_source(settings: Settings, source: Optional[SheetSource] = None) -> CachedSheetSource:
    """The configured source (or ``source``) behind a TTL cache, for listing and previews."""
    return CachedSheetSource(
        source if source is not None else build_sheet_source(settings),
        ttl_seconds=settings.SOURCE_CACHE_TTL_SECONDS
    )
