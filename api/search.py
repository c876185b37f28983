"""
Text helpers for the public search endpoints
"""

from collections import OrderedDict
from typing import Dict, List, Optional

from rapidfuzz import fuzz

from ingestion.transformers.field_mapper import normalize_text

EDUCATION_LEVELS = [
    ("primaria", "Nivel: Primaria"),
    ("secundaria", "Nivel: Secundaria"),
    ("inicial", "Nivel: Inicial"),
    ("tecnica", "Nivel: Técnica"),
    ("especial", "Nivel: Especial"),
    ("adultos", "Nivel: Adultos"),
]


def similarity(a: str, b: str) -> int:
    """Normalized edit-distance ratio (rapidfuzz) rounded to 0-100."""
    if not a or not b:
        return 0
    return round(fuzz.ratio(a, b))


def level_suggestions(normalized_query: str, limit: int = 2) -> List[str]:
    return [label for key, label in EDUCATION_LEVELS if normalized_query in key][:limit]


class SuggestionCache:
    """
    Bounded query -> suggestions cache.

    When it grows past ``max_size`` the oldest half is dropped. One
    instance lives on app.state and is handed to handlers.
    """

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._entries: "OrderedDict[str, List[str]]" = OrderedDict()

    @staticmethod
    def key(query: str) -> str:
        return normalize_text(query)

    def get(self, query: str) -> Optional[List[str]]:
        entry = self._entries.get(self.key(query))
        return list(entry) if entry is not None else None

    def put(self, query: str, suggestions: List[str]) -> None:
        self._entries[self.key(query)] = list(suggestions)
        if len(self._entries) > self.max_size:
            for _ in range(len(self._entries) // 2):
                self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, int]:
        return {"entries": len(self._entries), "max_size": self.max_size}
