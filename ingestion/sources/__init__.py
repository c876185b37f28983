"""
Spreadsheet row sources: Google Sheets, row-list APIs, CSV exports,
plus failover and caching wrappers.
"""

from ingestion.sources.base import SheetSource
from ingestion.sources.cache import CachedSheetSource
from ingestion.sources.csv_source import CSVSheetSource
from ingestion.sources.factory import build_sheet_source, build_cached_sheet_source
from ingestion.sources.failover import FailoverSheetSource
from ingestion.sources.google_sheets import GoogleSheetsSource, RowListSheetSource

__all__ = [
    "SheetSource",
    "CachedSheetSource",
    "CSVSheetSource",
    "FailoverSheetSource",
    "GoogleSheetsSource",
    "RowListSheetSource",
    "build_sheet_source",
    "build_cached_sheet_source",
]
