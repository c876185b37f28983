"""
CSV sheet exports as a row source
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict, List

import pandas as pd

from core.exceptions import MalformedResponseError, ResourceNotFoundError
from ingestion.sources.base import SheetSource

logger = logging.getLogger(__name__)


class CSVSheetSource(SheetSource):
    """
    Read ``<directory>/<sheet>.csv`` files exported from the spreadsheet.

    Every cell is read as text (no type inference, so CUEs keep their
    formatting and "-34,6037" is not mangled) and NaN becomes "".
    """

    def __init__(self, directory: str, name: str = "csv"):
        self.directory = Path(directory)
        self.name = name

    def _path(self, sheet_name: str) -> Path:
        return self.directory / f"{sheet_name}.csv"

    def _read(self, path: Path) -> List[Dict[str, str]]:
        df = pd.read_csv(path, dtype=str, keep_default_na=False, skip_blank_lines=True)
        df = df.fillna("")
        return df.to_dict(orient="records")

    async def get_sheet_data(self, sheet_name: str) -> List[Dict[str, str]]:
        path = self._path(sheet_name)
        if not path.exists():
            raise ResourceNotFoundError(
                f"CSV export not found for sheet {sheet_name}",
                context={"source_name": self.name, "sheet_name": sheet_name, "file_path": str(path)}
            )

        logger.info(f"Reading CSV from {path}")
        try:
            records = await asyncio.to_thread(self._read, path)
        except (pd.errors.ParserError, UnicodeDecodeError) as e:
            raise MalformedResponseError(
                f"Could not parse CSV export for sheet {sheet_name}",
                raw_body=path.read_text(errors="replace")[:500],
                context={"source_name": self.name, "file_path": str(path)},
                original_exception=e
            )
        except pd.errors.EmptyDataError:
            records = []

        logger.info(f"Read {len(records)} records from CSV")
        return records

    async def list_sheets(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.csv"))
