from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from marketbill.core.database import (
    as_utc,
    check_connection,
    get_db_session,
    init_engine,
    plans,
    reset_database,
)


def test_reset_database_empties_tables(make_plan):
    make_plan()

    reset_database()

    with get_db_session() as session:
        assert session.execute(select(func.count()).select_from(plans)).scalar_one() == 0


def test_check_connection():
    assert check_connection() is True


def test_missing_url_is_rejected(monkeypatch):
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    monkeypatch.setattr("marketbill.core.database.settings.DATABASE_URL", None)

    with pytest.raises(ValueError):
        init_engine()


def test_as_utc():
    naive = datetime(2025, 1, 1, 12, 0)
    shifted = datetime(2025, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))

    assert as_utc(None) is None
    assert as_utc(naive) == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert as_utc(shifted).hour == 12
