import datetime as dt
import os

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

# In-memory DB for tests
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["DATABASE_URL"] = ""
os.environ["SEED_DEMO_CASES"] = "false"
os.environ["PUBLIC_HOLIDAYS"] = "2025-12-25"

from otlist.database import close_db, init_db
from otlist.main import app
from otlist.models.case import CaseCreate
from otlist.services.audit import ActivityLog
from otlist.services.case_store import CaseStore
from otlist.services.event_bus import RecordEventBus
from otlist.services.record_store import RecordStore
from otlist.services.sessions import sessions


@pytest_asyncio.fixture
async def db():
    """Provide a fresh in-memory database for each test."""
    import otlist.database as db_mod

    if db_mod._db is not None:
        try:
            await db_mod._db.close()
        except Exception:
            pass
    db_mod._db = None

    db_mod.DATABASE_PATH = ":memory:"
    db_mod.DATABASE_URL = ""
    db_mod.SEED_DEMO_CASES = False

    await init_db()
    database = await db_mod.get_db()
    yield database
    await sessions.shutdown()
    await close_db()


@pytest.fixture
def bus():
    """A private event bus so store tests don't see each other's events."""
    return RecordEventBus()


@pytest.fixture
def records(db, bus):
    return RecordStore(db, bus)


@pytest_asyncio.fixture
async def store(db, records):
    activity_log = ActivityLog(db, owner="Tester")
    case_store = CaseStore(records, activity_log, current_user="Tester")
    await case_store.load()
    yield case_store
    await case_store.stop_sync()


@pytest.fixture
def case_data():
    """Factory for valid new-case payloads."""

    def _make(**overrides) -> CaseCreate:
        data = {
            "patient_name": "Grace Mensah",
            "age": 46,
            "sex": "female",
            "diagnoses": ["Symptomatic cholelithiasis"],
            "procedures": ["Laparoscopic cholecystectomy"],
            "doctor": "Dr. Owusu",
            "specialty": "general-surgery",
            "date": dt.date(2025, 6, 1),
        }
        data.update(overrides)
        return CaseCreate(**data)

    return _make


@pytest.fixture
def client(db):
    """Provide a synchronous TestClient for websocket tests."""
    return TestClient(app)


@pytest_asyncio.fixture
async def async_client(db):
    """Provide an async httpx client for HTTP tests."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
