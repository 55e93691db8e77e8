"""Test fixtures and configuration."""

import os
import tempfile
from pathlib import Path

# Settings are read at import time; point them at throwaway resources before any import
_BOOTSTRAP_DIR = Path(tempfile.mkdtemp(prefix="docportal-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_BOOTSTRAP_DIR / 'bootstrap.db'}"
os.environ["ENVIRONMENT"] = "testing"
os.environ["OPENROUTER_API_KEY"] = ""
os.environ["GOOGLE_SHEETS_ACCESS_TOKEN"] = ""
os.environ.pop("RECONCILIATION_AMOUNT_WINDOW", None)
os.environ.pop("RECONCILIATION_DATE_WINDOW_DAYS", None)

from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from docportal.database import build_engine, init_db, set_test_session_maker  # noqa: E402
from docportal.deps import get_adapter_factory, get_exporters, get_storage  # noqa: E402
from docportal.models import JobType  # noqa: E402
from docportal.security import create_access_token  # noqa: E402
from docportal.services.extraction import SpreadsheetExtractionAdapter  # noqa: E402
from docportal.services.processing import drain  # noqa: E402
from docportal.services.reconciliation import load_reconciliation_config  # noqa: E402
from tests.factories import INVOICE_PAYLOADS, CannedInvoiceAdapter, FakeStorage  # noqa: E402


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Fresh SQLite database per test.

    A file database (not ``:memory:``) so the request session and the background
    ingestion sessions see the same data through separate connections.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await drain()
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(db_engine):
    """Route every ``get_db`` / background session to the test engine."""
    maker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    previous = set_test_session_maker(maker)
    yield maker
    set_test_session_maker(previous)


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture(autouse=True)
def reset_reconciliation_config():
    load_reconciliation_config(force_reload=True)
    yield
    load_reconciliation_config(force_reload=True)


@pytest.fixture
def exporters():
    """Export targets seen by the API; empty means every spreadsheet export falls back to CSV."""
    return {}


@pytest_asyncio.fixture
async def client(session_maker, user_id, storage, exporters):
    """Authenticated client for ``user_id`` with storage and export targets faked."""
    from docportal.main import app

    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_exporters] = lambda: exporters
    token = create_access_token(user_id)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Authorization": f"Bearer {token}"},
    ) as ac:
        yield ac
    await drain()
    app.dependency_overrides.clear()


@pytest.fixture
def invoice_adapter(client):
    """Serve invoice batches from canned model payloads instead of OpenRouter."""
    from docportal.main import app

    adapter = CannedInvoiceAdapter(INVOICE_PAYLOADS)

    def build(job_type: JobType):
        return adapter if job_type == JobType.INVOICE_BATCH else SpreadsheetExtractionAdapter()

    app.dependency_overrides[get_adapter_factory] = lambda: build
    return adapter
