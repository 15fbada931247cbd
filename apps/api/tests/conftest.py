"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database. Tables are created fresh
for every test and dropped afterwards, so nothing leaks between tests.
"""
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Must be set before core.database builds its engine.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_FORMAT", "text")

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.database import Base, SessionLocal, engine  # noqa: E402
from models import CoachMessageRow, MetricRecordRow  # noqa: E402
from services.coach_modules.relay import session_registry  # noqa: E402


@pytest.fixture(scope="function")
def db_session():
    """Session on a freshly created schema; everything is dropped afterwards."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def now():
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def add_record(db_session):
    """Insert one metric record row."""
    def _add(user_id, domain, recorded_at, fields, unit=None, primary_field=None):
        row = MetricRecordRow(
            user_id=user_id,
            domain=domain,
            recorded_at=recorded_at,
            fields=fields,
            unit=unit,
            primary_field=primary_field,
        )
        db_session.add(row)
        db_session.commit()
        return row
    return _add


@pytest.fixture
def add_message(db_session, now):
    """Insert one coach conversation message; `age_s` seconds before now."""
    def _add(history_token, user_id, role, content, age_s=0):
        row = CoachMessageRow(
            history_token=history_token,
            user_id=user_id,
            role=role,
            content=content,
            created_at=now - timedelta(seconds=age_s),
        )
        db_session.add(row)
        db_session.commit()
        return row
    return _add


@pytest.fixture(autouse=True)
def _no_leaked_sessions():
    """Every test must leave the process-wide stream registry empty."""
    yield
    assert len(session_registry) == 0, "coach stream session leaked"
