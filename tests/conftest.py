"""
Pytest configuration and fixtures
"""

import copy
import os
from typing import AsyncGenerator, Dict, List

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.database import build_engine, build_session_maker
from core.exceptions import NetworkError, ResourceNotFoundError
from ingestion.sources.base import SheetSource
from models import Base

# In-memory SQLite by default; point at PostgreSQL to exercise JSONB and row locks
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create test database engine"""
    engine = build_engine(TEST_DATABASE_URL)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_session_maker(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Sheet data
# ============================================================================

class InMemorySheetSource(SheetSource):
    """Sheet source backed by a dict of row lists; can be told to fail."""

    def __init__(self, sheets: Dict[str, List[Dict[str, str]]], name: str = "memory"):
        self.sheets = sheets
        self.name = name
        self.calls: List[str] = []
        self.failures_left = 0

    async def get_sheet_data(self, sheet_name: str) -> List[Dict[str, str]]:
        self.calls.append(sheet_name)
        if self.failures_left > 0:
            self.failures_left -= 1
            raise NetworkError(f"{self.name} unavailable", context={"sheet_name": sheet_name})
        if sheet_name not in self.sheets:
            raise ResourceNotFoundError(f"No sheet {sheet_name}", context={"sheet_name": sheet_name})
        return copy.deepcopy(self.sheets[sheet_name])

    async def list_sheets(self) -> List[str]:
        if self.failures_left > 0:
            self.failures_left -= 1
            raise NetworkError(f"{self.name} unavailable")
        return list(self.sheets)


def make_establishment_row(cue, name, **overrides) -> Dict[str, str]:
    row = {
        "CUE": str(cue),
        "Predio": f"P{cue}",
        "Establecimiento": name,
        "Distrito": "La Plata",
        "Ciudad": "La Plata",
        "Dirección": f"Calle {cue % 1000}",
        "Lat": "-34,9214",
        "Lon": "-57,9545",
        "Fed a Cargo": "Provincial",
        "Ámbito": "Urbano",
        "Tipo Establecimiento": "Escuela Primaria",
        "Proveedor Internet": "Fibra Sur",
    }
    row.update(overrides)
    return row


def make_contact_row(cue, nombre, apellido, email="", **overrides) -> Dict[str, str]:
    row = {
        "CUE": str(cue),
        "Nombre": nombre,
        "Apellido": apellido,
        "Cargo": "Director/a",
        "Teléfono": "221 555-0100",
        "Correo Institucional": email,
    }
    row.update(overrides)
    return row


def make_establishment_rows(count: int, first_cue: int = 60000001) -> List[Dict[str, str]]:
    return [
        make_establishment_row(first_cue + i, f"Escuela N° {i + 1}")
        for i in range(count)
    ]


@pytest.fixture
def establishment_rows() -> List[Dict[str, str]]:
    """23 establishments, the first three with accents in their names"""
    rows = make_establishment_rows(23)
    rows[0]["Establecimiento"] = "Escuela Técnica N° 1 José Hernández"
    rows[0]["Tipo Establecimiento"] = "Escuela Técnica"
    rows[1]["Establecimiento"] = "Jardín de Infantes N° 905"
    rows[1]["Distrito"] = "Berisso"
    rows[2]["Establecimiento"] = "Escuela Secundaria N° 12"
    rows[2]["Distrito"] = "Ensenada"
    return rows


@pytest.fixture
def contact_rows() -> List[Dict[str, str]]:
    return [
        make_contact_row(60000001, "Ana", "Gómez", "ana.gomez@abc.gob.ar"),
        make_contact_row(60000001, "Luis", "Pérez"),
        make_contact_row(60000002, "Marta", "Sosa", "MSOSA@abc.gob.ar"),
        # No establishment with this CUE
        make_contact_row(99999999, "Orfa", "Nada", "orfa@abc.gob.ar"),
    ]


@pytest.fixture
def sheet_source(establishment_rows, contact_rows) -> InMemorySheetSource:
    return InMemorySheetSource({
        settings.ESTABLISHMENTS_SHEET: establishment_rows,
        settings.CONTACTS_SHEET: contact_rows,
    })
