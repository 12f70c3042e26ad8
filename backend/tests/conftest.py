from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from fieldservice.config import settings
from fieldservice.database import get_db
from fieldservice.main import app
from fieldservice.models.series import JobSeries

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


def _set_sqlite_pragmas(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def tmp_data(tmp_path):
    data_dir = tmp_path / "FieldService"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def test_db(tmp_data):
    db_path = tmp_data / "db.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    TestSession = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    from fieldservice.database import init_db
    init_db(db_path)

    def override_get_db():
        db = TestSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestSession
    app.dependency_overrides.clear()
    engine.dispose()


@pytest.fixture
def db(test_db):
    session = test_db()
    yield session
    session.close()


@pytest.fixture
def client(tmp_data, test_db):
    original_data_dir = settings.data_dir
    settings.data_dir = tmp_data
    c = TestClient(app)
    yield c
    settings.data_dir = original_data_dir


@pytest.fixture
def make_series(db):
    """Insert a bare series row with nothing materialized yet."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = dict(
            id=f"series-{counter['n']}",
            tenant_id=TENANT,
            title="Pool cleaning",
            customer_name="Acme Pools",
            priority="medium",
            is_recurring=True,
            rrule="FREQ=DAILY",
            start_date="2025-01-06",
            local_start_time="09:00:00",
            duration_minutes=60,
            timezone="America/New_York",
            until_date=None,
            last_generated_until=None,
            active=True,
            created_at="2024-12-01T00:00:00Z",
            updated_at="2024-12-01T00:00:00Z",
        )
        fields.update(overrides)
        series = JobSeries(**fields)
        db.add(series)
        db.commit()
        return series

    return _make
