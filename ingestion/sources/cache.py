"""
Time-bounded cache in front of a sheet source
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.exceptions import ExtractionError
from ingestion.sources.base import SheetSource

logger = logging.getLogger(__name__)


class CachedSheetSource(SheetSource):
    """
    Cache sheet rows per sheet name for ``ttl_seconds``.

    On a failed refresh, rows from an expired entry are returned instead
    of the error; with no cached rows the error propagates.
    """

    def __init__(
        self,
        source: SheetSource,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic
    ):
        self.source = source
        self.name = f"cached:{source.name}"
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._rows: Dict[str, Tuple[float, List[Dict[str, str]]]] = {}
        self._sheets: Optional[Tuple[float, List[str]]] = None

    def _fresh(self, fetched_at: float) -> bool:
        return self._clock() - fetched_at < self.ttl_seconds

    async def get_sheet_data(self, sheet_name: str) -> List[Dict[str, str]]:
        cached = self._rows.get(sheet_name)
        if cached and self._fresh(cached[0]):
            return list(cached[1])

        try:
            rows = await self.source.get_sheet_data(sheet_name)
        except ExtractionError as e:
            if cached:
                logger.warning(
                    f"Returning expired cached rows for {sheet_name} due to fetch error: {e.message}"
                )
                return list(cached[1])
            raise

        self._rows[sheet_name] = (self._clock(), rows)
        return list(rows)

    async def list_sheets(self) -> List[str]:
        if self._sheets and self._fresh(self._sheets[0]):
            return list(self._sheets[1])

        try:
            sheets = await self.source.list_sheets()
        except ExtractionError as e:
            if self._sheets:
                logger.warning(f"Returning expired sheet list due to fetch error: {e.message}")
                return list(self._sheets[1])
            raise

        self._sheets = (self._clock(), sheets)
        return list(sheets)

    def invalidate(self, sheet_name: Optional[str] = None) -> None:
        if sheet_name is None:
            self._rows.clear()
            self._sheets = None
        else:
            self._rows.pop(sheet_name, None)

    def get_status(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            **self.source.get_status(),
            "cache": {
                sheet: {"rows": len(rows), "age_seconds": round(now - fetched_at, 1)}
                for sheet, (fetched_at, rows) in self._rows.items()
            },
        }
