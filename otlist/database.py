from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Iterable, Sequence
from urllib.parse import urlparse

import aiosqlite

from otlist.config import DATABASE_MAX_CONNECTIONS, DATABASE_PATH, DATABASE_URL, SEED_DEMO_CASES

try:  # Optional: only required when DATABASE_URL points at Postgres
    import asyncpg  # type: ignore
except ImportError:  # pragma: no cover - optional dependency
    asyncpg = None

logger = logging.getLogger(__name__)


class DatabaseAdapter:
    engine: str

    async def execute(self, query: str, params: Sequence | None = None) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_one(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_all(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def commit(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def rollback(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class SQLiteAdapter(DatabaseAdapter):
    conn: aiosqlite.Connection
    engine: str = "sqlite"

    async def execute(self, query: str, params: Sequence | None = None) -> None:
        await self.conn.execute(query, params or ())

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        await self.conn.executemany(query, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchone()

    async def fetch_all(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchall()

    async def commit(self) -> None:
        await self.conn.commit()

    async def rollback(self) -> None:
        await self.conn.rollback()

    async def close(self) -> None:
        await self.conn.close()


@dataclass
class PostgresAdapter(DatabaseAdapter):
    pool: "asyncpg.Pool"  # type: ignore[name-defined]
    engine: str = "postgres"

    @staticmethod
    def _translate_query(query: str) -> str:
        # ? placeholders -> $1, $2, ...
        if "$1" in query:
            return query
        idx = 1
        out = []
        for ch in query:
            if ch == "?":
                out.append(f"${idx}")
                idx += 1
            else:
                out.append(ch)
        return "".join(out)

    async def execute(self, query: str, params: Sequence | None = None) -> None:
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            await conn.execute(q, *(params or ()))

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            await conn.executemany(q, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(q, *(params or ()))

    async def fetch_all(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            return await conn.fetch(q, *(params or ()))

    async def commit(self) -> None:
        # asyncpg autocommits per statement
        return

    async def rollback(self) -> None:
        return

    async def close(self) -> None:
        await self.pool.close()


_db: DatabaseAdapter | None = None


async def get_db() -> DatabaseAdapter:
    global _db
    if _db is None:
        if DATABASE_URL and not DATABASE_URL.startswith("sqlite"):
            if asyncpg is None:
                raise RuntimeError(
                    "DATABASE_URL is set but asyncpg is not installed. "
                    "Install asyncpg or unset DATABASE_URL."
                )
            pool = await asyncpg.create_pool(
                dsn=DATABASE_URL,
                min_size=1,
                max_size=DATABASE_MAX_CONNECTIONS,
            )
            _db = PostgresAdapter(pool)
            logger.info("Connected to Postgres database")
        else:
            sqlite_path = _sqlite_path_from_url(DATABASE_URL) if DATABASE_URL else ""
            sqlite_path = sqlite_path or DATABASE_PATH
            conn = await aiosqlite.connect(sqlite_path)
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            _db = SQLiteAdapter(conn)
            logger.info("Connected to SQLite database at %s", sqlite_path)
    return _db


def _sqlite_path_from_url(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path or ""
    if not path or path == "/":
        return ""
    # sqlite:////absolute/path.db keeps the absolute path
    if url.startswith("sqlite:////"):
        return "/" + path.lstrip("/")
    if path.startswith("/"):
        return path[1:]
    return path


# Booleans are stored as INTEGER and dates as ISO TEXT on both engines so the
# row mapping in otlist.models.case stays engine-agnostic.
_CASES_COLUMNS = """
        id TEXT PRIMARY KEY,
        patient_name TEXT NOT NULL,
        age INTEGER NOT NULL,
        sex TEXT NOT NULL,
        origin TEXT,
        place_of_residence TEXT,
        diagnosis TEXT NOT NULL,
        procedure TEXT NOT NULL,
        doctor TEXT NOT NULL,
        specialty TEXT NOT NULL,
        date TEXT NOT NULL,
        time TEXT,
        fasting_time TEXT,
        contact_details TEXT DEFAULT '',
        is_referral INTEGER DEFAULT 0,
        referral_details TEXT,
        patient_type TEXT DEFAULT 'admission',
        ward_number TEXT,
        admission_source TEXT,
        priority INTEGER DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'scheduled',
        confirmed_on_ot_list INTEGER DEFAULT 0,
        case_type TEXT NOT NULL DEFAULT 'elective',
        cancellation_reason TEXT,
        cancellation_history TEXT DEFAULT '[]',
        deferral_reason TEXT,
        original_date TEXT,
        rebook_count INTEGER NOT NULL DEFAULT 0,
        notes TEXT DEFAULT '',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
"""

SQLITE_SCHEMA = [
    f"CREATE TABLE IF NOT EXISTS cases ({_CASES_COLUMNS})",
    """
    CREATE TABLE IF NOT EXISTS deferral_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        case_id TEXT NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
        reason TEXT NOT NULL,
        original_date TEXT NOT NULL,
        deferred_at TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_log (
        id TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        action TEXT NOT NULL,
        patient_name TEXT NOT NULL,
        changes TEXT,
        timestamp TEXT NOT NULL,
        user TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_deferral_history_case ON deferral_history (case_id, deferred_at)",
    "CREATE INDEX IF NOT EXISTS idx_activity_log_owner ON activity_log (owner, timestamp)",
]

POSTGRES_SCHEMA = [
    f"CREATE TABLE IF NOT EXISTS cases ({_CASES_COLUMNS})",
    """
    CREATE TABLE IF NOT EXISTS deferral_history (
        id BIGSERIAL PRIMARY KEY,
        case_id TEXT NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
        reason TEXT NOT NULL,
        original_date TEXT NOT NULL,
        deferred_at TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (now()::text)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_log (
        id TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        action TEXT NOT NULL,
        patient_name TEXT NOT NULL,
        changes TEXT,
        timestamp TEXT NOT NULL,
        "user" TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_deferral_history_case ON deferral_history (case_id, deferred_at)",
    "CREATE INDEX IF NOT EXISTS idx_activity_log_owner ON activity_log (owner, timestamp)",
]


async def init_db() -> None:
    db = await get_db()

    schema = SQLITE_SCHEMA if db.engine == "sqlite" else POSTGRES_SCHEMA
    for stmt in schema:
        await db.execute(stmt)
    await db.commit()

    if SEED_DEMO_CASES:
        await _seed_demo_cases(db)


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def _seed_demo_cases(db: DatabaseAdapter) -> None:
    """Seed a few demo cases for UI previews."""
    from otlist.models.case import CaseStatus, SurgicalCase, case_to_row

    now = datetime.now(UTC)
    today = date.today()

    demo_cases = [
        SurgicalCase(
            id="demo-lap-chole",
            patient_name="Grace Mensah",
            age=46,
            sex="female",
            diagnoses=["Symptomatic cholelithiasis"],
            procedures=["Laparoscopic cholecystectomy"],
            doctor="Dr. Owusu",
            specialty="general-surgery",
            date=today + timedelta(days=2),
            time="08:30",
            patient_type="admission",
            admission_source="sopc",
            created_at=now.isoformat(),
            updated_at=now.isoformat(),
        ),
        SurgicalCase(
            id="demo-tkr",
            patient_name="Kwame Asante",
            age=71,
            sex="male",
            diagnoses=["Osteoarthritis of the right knee"],
            procedures=["Total knee replacement"],
            doctor="Dr. Boateng",
            specialty="orthopaedics",
            date=today + timedelta(days=5),
            priority=True,
            rebook_count=1,
            created_at=(now - timedelta(days=3)).isoformat(),
            updated_at=(now - timedelta(days=1)).isoformat(),
        ),
        SurgicalCase(
            id="demo-appendix",
            patient_name="Ama Darko",
            age=12,
            sex="female",
            diagnoses=["Acute appendicitis"],
            procedures=["Appendicectomy"],
            doctor="Dr. Owusu",
            specialty="paediatric-surgery",
            date=today,
            case_type="emergency",
            status=CaseStatus.COMPLETED,
            patient_type="ward",
            ward_number="4B",
            created_at=(now - timedelta(hours=6)).isoformat(),
            updated_at=(now - timedelta(hours=1)).isoformat(),
        ),
    ]

    existing_rows = await db.fetch_all(
        "SELECT id FROM cases WHERE id IN ('demo-lap-chole', 'demo-tkr', 'demo-appendix')"
    )
    existing = {row["id"] for row in existing_rows}
    rows = [case_to_row(case) for case in demo_cases if case.id not in existing]
    if not rows:
        return

    columns = list(rows[0].keys())
    await db.executemany(
        f"INSERT INTO cases ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
        [tuple(row[c] for c in columns) for row in rows],
    )
    await db.commit()
    logger.info("Seeded %d demo cases", len(rows))
