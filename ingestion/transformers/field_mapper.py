"""
Field mapping from spreadsheet rows to the relational schema.

Spreadsheet headers are free text ("CUE", "Correo Institucional",
"N° de Predio"...). Every header is normalised to a snake_case key and a
small set of keys get type coercion:

- cue: digits only, parsed as int; unresolvable -> None
- lat / lon: decimal comma accepted, parsed as float and range-checked
- everything else: blank -> None, otherwise text

Columns that are not part of the fixed schema are kept under their
normalised name; the loader stores them in ``extra_attributes``.

All functions here are pure: the same row always maps to the same dict,
which matters because a batch may be re-processed after a retry.
"""

import math
import re
import unicodedata
from typing import Any, Dict, Iterable, Optional, Tuple

from core.exceptions import (
    CoordinateRangeError,
    MissingKeyError,
    TransformationError,
    ValidationError,
)

ESTABLISHMENT = "establishment"
CONTACT = "contact"
TARGETS = (ESTABLISHMENT, CONTACT)

COORDINATE_RANGES = {
    "lat": (-90.0, 90.0),
    "lon": (-180.0, 180.0),
}

_WHITESPACE = re.compile(r"\s+")
_INVALID_CHARS = re.compile(r"[^a-z0-9_]")
_NON_DIGITS = re.compile(r"\D")

# Fields folded into the denormalised search column
SEARCH_FIELDS = (
    "establecimiento",
    "distrito",
    "ciudad",
    "direccion",
    "tipo_establecimiento",
    "ambito",
)


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_text(value: Any) -> str:
    """Lowercase, accent-free, trimmed text used for search comparisons."""
    if value is None:
        return ""
    return strip_accents(str(value).lower()).strip()


def normalize_column_name(name: Any) -> str:
    """
    Normalise a source header to a snake_case column name.

    Examples:
        "CUE" -> "cue"
        "Correo Institucional" -> "correo_institucional"
        "Año Instalación" -> "ano_instalacion"
        "2024 Estado" -> "2024_estado"
        "¿?" -> "col_"
    """
    result = str(name if name is not None else "").strip().lower()
    result = _WHITESPACE.sub("_", result)
    result = strip_accents(result)
    result = _INVALID_CHARS.sub("", result)

    # Headers with nothing usable still need a key
    if result == "":
        result = "col_"

    return result


def parse_cue(value: Any) -> Optional[int]:
    """Strip every non-digit and parse what remains; None when nothing is left."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        if math.isnan(value):
            return None
        value = format(value, ".0f") if value.is_integer() else str(value)

    digits = _NON_DIGITS.sub("", str(value))
    if not digits:
        return None
    cue = int(digits)
    return cue if cue > 0 else None


def parse_coordinate(value: Any, key: str) -> Optional[float]:
    """
    Parse a latitude or longitude.

    Blank values map to None. Unparseable values raise ValidationError and
    values outside the valid range raise CoordinateRangeError; neither is
    ever stored.
    """
    if key not in COORDINATE_RANGES:
        raise ValueError(f"Unknown coordinate key: {key}")

    if value is None:
        return None

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text.replace(",", "."))
        except ValueError as e:
            raise ValidationError(
                f"Invalid {key} value: {text!r}",
                context={
                    "field_name": key,
                    "field_value": text,
                    "validation_rule": "numeric"
                },
                original_exception=e
            )

    if math.isnan(number) or math.isinf(number):
        raise ValidationError(
            f"Invalid {key} value: {value!r}",
            context={
                "field_name": key,
                "field_value": str(value),
                "validation_rule": "finite"
            }
        )

    low, high = COORDINATE_RANGES[key]
    if not low <= number <= high:
        raise CoordinateRangeError(
            f"{key} out of range: {number}",
            context={
                "field_name": key,
                "field_value": number,
                "validation_rule": f"{low} <= {key} <= {high}"
            }
        )

    return number


def coerce_text(value: Any) -> Optional[str]:
    """Blank or absent -> None; anything else as text."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    text = str(value).strip()
    return text or None


def normalize_headers(headers: Iterable[Any]) -> list:
    """
    Normalise a header row, suffixing duplicates with _1, _2...

    Two headers that differ only in accents or punctuation would otherwise
    collide on the same key.
    """
    seen = set()
    result = []
    for header in headers:
        base = normalize_column_name(header)
        name = base
        counter = 1
        while name in seen:
            name = f"{base}_{counter}"
            counter += 1
        seen.add(name)
        result.append(name)
    return result


def map_record(source_record: Dict[str, Any], target: str) -> Dict[str, Any]:
    """
    Map one source row to a target record.

    Args:
        source_record: Row keyed by the original sheet headers
        target: "establishment" or "contact"

    Returns:
        Dict keyed by normalised column name. ``cue`` may be None; the
        caller decides whether to drop the row.

    Raises:
        ValidationError: lat/lon unparseable
        CoordinateRangeError: lat/lon outside the valid range
        TransformationError: unknown target
    """
    if target not in TARGETS:
        raise TransformationError(
            f"Unknown mapping target: {target}",
            context={"target": target, "allowed": list(TARGETS)}
        )

    keys = normalize_headers(source_record.keys())
    mapped: Dict[str, Any] = {}

    for key, value in zip(keys, source_record.values()):
        if key == "cue":
            mapped[key] = parse_cue(value)
        elif key in COORDINATE_RANGES:
            mapped[key] = parse_coordinate(value, key)
        else:
            mapped[key] = coerce_text(value)

    mapped.setdefault("cue", None)
    return mapped


def extract_cue(source_record: Dict[str, Any]) -> Optional[int]:
    """CUE of a raw row without mapping the rest of it."""
    for header, value in source_record.items():
        if normalize_column_name(header) == "cue":
            return parse_cue(value)
    return None


def require_cue(mapped: Dict[str, Any]) -> int:
    """Return the record's CUE or raise MissingKeyError."""
    cue = mapped.get("cue")
    if cue is None:
        raise MissingKeyError(
            "Record has no resolvable CUE",
            context={"fields": sorted(k for k, v in mapped.items() if v is not None)[:10]}
        )
    return cue


def split_known_columns(
    mapped: Dict[str, Any],
    known: Iterable[str],
    reserved: Iterable[str] = ("cue",)
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Split a mapped record into (typed columns, extra_attributes)."""
    known = set(known)
    reserved = set(reserved)
    columns: Dict[str, Any] = {}
    extra: Dict[str, Any] = {}

    for key, value in mapped.items():
        if key in reserved:
            continue
        if key in known:
            columns[key] = value
        else:
            extra[key] = value

    return columns, extra


def contact_key(mapped: Dict[str, Any]) -> str:
    """Stable identity of a contact within its establishment."""
    email = coerce_text(mapped.get("correo_institucional"))
    if email:
        return email.lower()
    nombre = normalize_text(mapped.get("nombre"))
    apellido = normalize_text(mapped.get("apellido"))
    return f"{nombre}|{apellido}"


def build_search_text(mapped: Dict[str, Any]) -> str:
    """Accent-free lowercase text over the searchable fields."""
    parts = [normalize_text(mapped.get(field)) for field in SEARCH_FIELDS]
    return " ".join(part for part in parts if part)
