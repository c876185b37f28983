"""
Abstract base class for spreadsheet row sources
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List


class SheetSource(ABC):
    """
    A tabular source addressed by sheet name.

    Responsibilities:
    - Return every row of a sheet, in sheet order, keyed by header
    - List the sheets it can serve
    - Report its own health for the admin surface

    Pagination is never done here: the batch processor slices the full
    row list itself.
    """

    name: str = "source"

    @abstractmethod
    async def get_sheet_data(self, sheet_name: str) -> List[Dict[str, str]]:
        """
        Fetch all rows of a sheet.

        Returns:
            Ordered list of rows keyed by the header row's cells

        Raises:
            SheetExtractionError: the sheet could not be read
        """
        pass

    @abstractmethod
    async def list_sheets(self) -> List[str]:
        """Names of the sheets this source can serve."""
        pass

    def get_status(self) -> Dict[str, Any]:
        return {"source": self.name}


def rows_from_values(values: List[List[Any]]) -> List[Dict[str, str]]:
    """
    Turn a values grid (first row = header) into header-keyed rows.

    Short rows are padded with "" and cells beyond the header are ignored.
    Fully blank rows are skipped.
    """
    if not values:
        return []

    header = ["" if cell is None else str(cell) for cell in values[0]]
    rows = []
    for raw in values[1:]:
        cells = ["" if cell is None else str(cell) for cell in raw]
        if not any(cell.strip() for cell in cells):
            continue
        cells = cells[:len(header)] + [""] * (len(header) - len(cells))
        rows.append(dict(zip(header, cells)))
    return rows
