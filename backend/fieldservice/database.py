import sqlite3
from pathlib import Path
from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from fieldservice.config import settings


class Base(DeclarativeBase):
    pass


def _set_sqlite_pragmas(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine(db_path: Path | None = None):
    path = db_path or settings.db_path
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


engine = get_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


SCHEMA_SQL = """\
-- ============================================================
-- JOB SERIES (recurring or one-off templates)
-- ============================================================
CREATE TABLE IF NOT EXISTS job_series (
    id                   TEXT PRIMARY KEY,
    tenant_id            TEXT NOT NULL,
    title                TEXT NOT NULL,
    description          TEXT,
    customer_id          TEXT,
    customer_name        TEXT,
    priority             TEXT NOT NULL DEFAULT 'medium'
                         CHECK(priority IN ('low','medium','high','urgent')),
    estimated_cost       REAL,
    assigned_to          TEXT,
    service_type         TEXT,
    is_recurring         INTEGER NOT NULL DEFAULT 0,
    rrule                TEXT NOT NULL,
    start_date           TEXT NOT NULL,
    local_start_time     TEXT NOT NULL,
    duration_minutes     INTEGER NOT NULL CHECK(duration_minutes > 0),
    timezone             TEXT NOT NULL,
    until_date           TEXT,
    last_generated_until TEXT,
    active               INTEGER NOT NULL DEFAULT 1,
    version              INTEGER NOT NULL DEFAULT 1,
    created_at           TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now')),
    updated_at           TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now'))
);

CREATE INDEX IF NOT EXISTS idx_series_tenant ON job_series(tenant_id);
CREATE INDEX IF NOT EXISTS idx_series_tenant_active ON job_series(tenant_id, active);

-- ============================================================
-- JOB OCCURRENCES (materialized calendar rows)
-- ============================================================
CREATE TABLE IF NOT EXISTS job_occurrences (
    id                      TEXT PRIMARY KEY,
    series_id               TEXT NOT NULL REFERENCES job_series(id) ON DELETE CASCADE,
    tenant_id               TEXT NOT NULL,
    start_at                TEXT NOT NULL,
    end_at                  TEXT NOT NULL,
    status                  TEXT NOT NULL DEFAULT 'scheduled'
                            CHECK(status IN ('scheduled','in_progress','completed','cancelled')),
    priority                TEXT NOT NULL DEFAULT 'medium'
                            CHECK(priority IN ('low','medium','high','urgent')),
    assigned_to             TEXT,
    actual_cost             REAL,
    completion_notes        TEXT,
    override_title          TEXT,
    override_description    TEXT,
    override_estimated_cost REAL,
    created_at              TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now')),
    updated_at              TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now'))
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_occurrences_series_start ON job_occurrences(series_id, start_at);
CREATE INDEX IF NOT EXISTS idx_occurrences_tenant_start ON job_occurrences(tenant_id, start_at);
CREATE INDEX IF NOT EXISTS idx_occurrences_status ON job_occurrences(status);
"""


def init_db(db_path: Path | None = None):
    path = db_path or settings.db_path
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.executescript(SCHEMA_SQL)
    conn.close()
