"""
Fixtures for the HTTP surface: an ASGI client wired to the test database
and an in-memory sheet source.
"""

import httpx
import pytest
import pytest_asyncio

from api.dependencies import get_db
from api.main import app
from api.search import SuggestionCache
from core.config import settings
from core.security import generate_admin_token
from ingestion.runner import MigrationRunner
from ingestion.sources.cache import CachedSheetSource
from models.base import TargetTable

SHARED_PREDIO = "606335"


@pytest.fixture
def admin_secrets(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_AUTH_KEY", "api-test-secret")
    monkeypatch.setattr(settings, "MIGRATION_AUTH_KEY", "operator-password")


@pytest.fixture
def admin_token(admin_secrets) -> str:
    return generate_admin_token()


@pytest_asyncio.fixture
async def client(session_factory, sheet_source):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    previous = (
        app.state.sheet_source,
        app.state.cached_sheet_source,
        app.state.controller,
        app.state.suggestion_cache,
    )
    app.state.sheet_source = sheet_source
    app.state.cached_sheet_source = CachedSheetSource(sheet_source)
    app.state.controller = None
    app.state.suggestion_cache = SuggestionCache()

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    (
        app.state.sheet_source,
        app.state.cached_sheet_source,
        app.state.controller,
        app.state.suggestion_cache,
    ) = previous


@pytest_asyncio.fixture
async def seeded(session_factory, sheet_source, establishment_rows):
    """Both sheets loaded; two schools share one predio."""
    establishment_rows[3]["Predio"] = SHARED_PREDIO
    establishment_rows[4]["Predio"] = SHARED_PREDIO

    async with session_factory() as session:
        runner = MigrationRunner(session, sheet_source)
        await runner.migrate_sheet(settings.ESTABLISHMENTS_SHEET, TargetTable.ESTABLISHMENTS)
        await runner.migrate_sheet(settings.CONTACTS_SHEET, TargetTable.CONTACTS)
