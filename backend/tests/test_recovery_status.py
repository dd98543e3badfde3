from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base  # noqa: E402
from db.models import User, UserSettings  # noqa: E402
import services.recovery_status_service as status_service  # noqa: E402
from services.obligation_service import (  # noqa: E402
    apply_obligation_progress,
    create_exercise_obligation,
    update_obligation_target,
)
from services.recovery_ledger_service import apply_recovery_from_exercise  # noqa: E402
from services.recovery_maintenance import run_recovery_maintenance  # noqa: E402

NOW = datetime(2026, 3, 4, 9, 0, tzinfo=timezone.utc)


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _new_user(db, username: str = "status_tester") -> User:
    user = User(
        username=username,
        username_normalized=username.lower(),
        password_hash="hash",
        display_name="Status Tester",
    )
    user.settings = UserSettings(timezone="UTC")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture(autouse=True)
def _clear_status_cache():
    status_service.status_cache().clear()
    yield
    status_service.status_cache().clear()


def test_weekly_status_counts_closed_entries_as_resolved():
    db = _new_db()
    user = _new_user(db)
    monday = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    a = create_exercise_obligation(db, user, "meal-1", "squat", 20, now=monday)
    apply_obligation_progress(db, user, a.id, 5, now=monday)
    create_exercise_obligation(db, user, "meal-2", "squat", 4, now=monday + timedelta(days=1))
    run_recovery_maintenance(db, user, NOW)

    apply_recovery_from_exercise(db, user, 17, now=NOW)
    status = status_service.get_weekly_recovery_status(db, user, now=NOW)

    assert status["week_start_local"] == "2026-03-02"
    assert status["generated_count"] == 19
    assert status["resolved_count"] == 17
    assert status["remaining_count"] == 2
    assert status["stale"] is False


def test_weekly_status_ignores_previous_weeks():
    db = _new_db()
    user = _new_user(db)
    last_week = datetime(2026, 2, 25, 9, 0, tzinfo=timezone.utc)
    create_exercise_obligation(db, user, "meal-1", "squat", 20, now=last_week)

    status = status_service.get_weekly_recovery_status(db, user, now=NOW)

    assert status["generated_count"] == 0
    assert status["remaining_count"] == 0


def test_today_status_and_pick_list():
    db = _new_db()
    user = _new_user(db)
    first = create_exercise_obligation(db, user, "meal-1", "squat", 20, now=NOW)
    second = create_exercise_obligation(db, user, "meal-2", "situp", 30, now=NOW + timedelta(hours=1))
    apply_obligation_progress(db, user, second.id, 10, now=NOW + timedelta(hours=1))
    # Lowering the target to what is already done leaves an open row owing nothing.
    third = create_exercise_obligation(db, user, "meal-3", "pushup", 15, now=NOW + timedelta(hours=2))
    apply_obligation_progress(db, user, third.id, 6, now=NOW + timedelta(hours=2))
    update_obligation_target(db, user, third.id, "pushup", 6, now=NOW + timedelta(hours=2))

    later = NOW + timedelta(hours=3)
    status = status_service.get_today_obligation_status(db, user, now=later)
    pick_list = status_service.get_today_open_obligations(db, user, now=later)

    assert status["date_key"] == "2026-03-04"
    assert status["open_obligation_count"] == 3
    assert status["remaining_count"] == 40
    assert [row["id"] for row in pick_list] == [first.id, second.id]
    assert [row["remaining_count"] for row in pick_list] == [20, 20]


def test_read_failure_serves_last_snapshot_marked_stale(monkeypatch):
    db = _new_db()
    user = _new_user(db)
    create_exercise_obligation(db, user, "meal-1", "squat", 20, now=NOW)
    fresh = status_service.get_today_obligation_status(db, user, now=NOW)

    def _broken(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(status_service, "list_open_due_today", _broken)
    cached = status_service.get_today_obligation_status(db, user, now=NOW)

    assert fresh["stale"] is False
    assert cached["stale"] is True
    assert cached["open_obligation_count"] == fresh["open_obligation_count"]
    assert cached["remaining_count"] == 20


def test_read_failure_without_snapshot_propagates(monkeypatch):
    db = _new_db()
    user = _new_user(db)

    def _broken(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(status_service, "run_recovery_maintenance", _broken)
    with pytest.raises(OperationalError):
        status_service.get_weekly_recovery_status(db, user, now=NOW)
