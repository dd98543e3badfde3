"""Meal choice -> obligation -> session completion -> ledger spill-over."""
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
from db.models import (  # noqa: E402
    ExerciseObligation,
    ExerciseRecord,
    ExerciseSessionEvent,
    ExerciseType,
    LedgerStatus,
    MealChoice,
    MealRecord,
    ObligationStatus,
    RecoveryLedgerEntry,
    SessionEventType,
    User,
    UserSettings,
)
import services.exercise_session_service as session_service  # noqa: E402
import services.meal_service as meal_service  # noqa: E402
from services.exercise_session_service import (  # noqa: E402
    RecognizerEvent,
    clamp_reported_count,
    complete_exercise_session,
    count_from_recognizer_event,
)
from services.meal_service import (  # noqa: E402
    delete_meal_record,
    get_savings_summary,
    list_meal_records,
    prune_old_records,
    record_meal_choice,
    save_exercise_record,
)
from services.session_event_service import get_session_restore_state  # noqa: E402
from services.user_reset_service import reset_user_data_for_user  # noqa: E402

NOW = datetime(2026, 3, 4, 9, 0, tzinfo=timezone.utc)


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _new_user(db, username: str = "meal_tester") -> User:
    user = User(
        username=username,
        username_normalized=username.lower(),
        password_hash="hash",
        display_name="Meal Tester",
    )
    user.settings = UserSettings(timezone="UTC")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


# ─── Meal choices ───


def test_eating_creates_exactly_one_obligation_sized_from_calories():
    db = _new_db()
    user = _new_user(db)

    meal, obligation = record_meal_choice(
        db, user, food_name="Ramen", estimated_calories=400, choice="ate", confidence=80, now=NOW,
    )

    assert meal.choice == MealChoice.ATE
    assert obligation is not None
    assert obligation.meal_record_id == meal.id
    assert obligation.exercise_type == ExerciseType.SQUAT
    assert obligation.target_count == 100
    assert db.query(ExerciseObligation).count() == 1


def test_failed_obligation_write_leaves_no_orphan_meal(monkeypatch):
    db = _new_db()
    user = _new_user(db)

    def _broken(*args, **kwargs):
        raise OperationalError("INSERT INTO exercise_obligations", {}, Exception("disk I/O error"))

    monkeypatch.setattr(meal_service, "build_exercise_obligation", _broken)
    with pytest.raises(OperationalError):
        record_meal_choice(db, user, food_name="Ramen", estimated_calories=400, choice="ate", now=NOW)
    monkeypatch.undo()

    assert db.query(MealRecord).count() == 0
    _, obligation = record_meal_choice(db, user, food_name="Ramen", estimated_calories=400, choice="ate", now=NOW)
    assert db.query(MealRecord).count() == 1
    assert db.query(ExerciseObligation).one().id == obligation.id


def test_skipping_creates_no_obligation():
    db = _new_db()
    user = _new_user(db)

    meal, obligation = record_meal_choice(
        db, user, food_name="Donut", estimated_calories=300, choice=MealChoice.SKIPPED, now=NOW,
    )

    assert meal.choice == MealChoice.SKIPPED
    assert obligation is None
    assert db.query(ExerciseObligation).count() == 0


def test_user_default_exercise_is_used_for_new_obligations():
    db = _new_db()
    user = _new_user(db)
    user.settings.default_exercise_type = ExerciseType.PUSHUP
    db.commit()

    _, obligation = record_meal_choice(db, user, food_name="Toast", estimated_calories=100, choice="ate", now=NOW)

    assert obligation.exercise_type == ExerciseType.PUSHUP
    assert obligation.target_count == 63


def test_savings_summary_splits_today_week_and_month():
    db = _new_db()
    user = _new_user(db)
    record_meal_choice(db, user, food_name="Cake", estimated_calories=300, choice="skipped", now=NOW)
    record_meal_choice(db, user, food_name="Chips", estimated_calories=200, choice="skipped", now=datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))
    record_meal_choice(db, user, food_name="Pie", estimated_calories=150, choice="skipped", now=datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    record_meal_choice(db, user, food_name="Soda", estimated_calories=120, choice="skipped", now=datetime(2026, 2, 27, 12, 0, tzinfo=timezone.utc))
    record_meal_choice(db, user, food_name="Salad", estimated_calories=250, choice="ate", now=NOW)

    summary = get_savings_summary(db, user, now=NOW + timedelta(hours=1))

    assert summary["today"] == 300
    assert summary["this_week"] == 500
    assert summary["this_month"] == 650
    assert summary["skipped_count"] == 3
    assert summary["ate_count"] == 1


def test_deleting_a_meal_removes_its_exercise_records_but_keeps_the_obligation():
    db = _new_db()
    user = _new_user(db)
    meal, obligation = record_meal_choice(db, user, food_name="Burger", estimated_calories=40, choice="ate", now=NOW)
    save_exercise_record(
        db, user, exercise_type="squat", count=20, target_count=20, calories_burned=10,
        meal_record_id=meal.id, now=NOW,
    )

    meal_id = meal.id
    obligation_id = obligation.id

    assert delete_meal_record(db, user, meal_id) is True
    assert delete_meal_record(db, user, meal_id) is False

    assert db.query(MealRecord).count() == 0
    assert db.query(ExerciseRecord).count() == 0
    assert db.query(ExerciseObligation).filter(ExerciseObligation.id == obligation_id).count() == 1


def test_prune_keeps_newest_records():
    db = _new_db()
    user = _new_user(db)
    for offset in range(4):
        record_meal_choice(
            db, user, food_name=f"Snack {offset}", estimated_calories=50, choice="skipped",
            now=NOW + timedelta(minutes=offset),
        )

    removed = prune_old_records(db, user, limit=2)

    assert removed["meal_records"] == 2
    assert [m.food_name for m in list_meal_records(db, user)] == ["Snack 3", "Snack 2"]


# ─── Session completion ───


def test_recognizer_counts_are_clamped_to_remaining_target():
    assert clamp_reported_count(25, 20) == 20
    assert clamp_reported_count(-3, 20) == 0
    assert clamp_reported_count(None, 20) == 0
    assert count_from_recognizer_event(RecognizerEvent(type="ready"), None) is None
    assert count_from_recognizer_event(RecognizerEvent(type="error", message="camera lost"), None) is None


def test_completing_a_session_pays_obligation_then_spills_into_ledger():
    db = _new_db()
    user = _new_user(db)
    # Yesterday's shortfall of 4 reps is this week's open debt.
    yesterday = NOW - timedelta(days=1)
    record_meal_choice(db, user, food_name="Fries", estimated_calories=10, choice="ate", now=yesterday)
    old = db.query(ExerciseObligation).one()
    old.target_count = 4
    db.commit()

    _, obligation = record_meal_choice(db, user, food_name="Burger", estimated_calories=40, choice="ate", now=NOW)
    assert obligation.target_count == 20

    result = complete_exercise_session(db, user, obligation.id, 25, now=NOW + timedelta(minutes=10))

    assert result.reported_count == 25
    assert result.leftover == 5
    assert result.recovered == 4
    assert result.obligation.status == ObligationStatus.COMPLETED
    assert result.obligation.completed_count == 20
    assert result.exercise_record.count == 25
    assert result.exercise_record.calories_burned == 13

    entry = db.query(RecoveryLedgerEntry).one()
    assert entry.status == LedgerStatus.CLOSED
    assert entry.recovered_count == 4

    state = get_session_restore_state(db, user, obligation.id, now=NOW + timedelta(minutes=11))
    assert state.last_event_type == SessionEventType.END
    assert state.count_snapshot == 25


def test_completing_with_zero_reps_records_only_the_end_event():
    db = _new_db()
    user = _new_user(db)
    _, obligation = record_meal_choice(db, user, food_name="Burger", estimated_calories=40, choice="ate", now=NOW)

    result = complete_exercise_session(db, user, obligation.id, -2, now=NOW)

    assert result.reported_count == 0
    assert result.leftover == 0
    assert result.exercise_record is None
    assert db.query(ExerciseSessionEvent).count() == 1


# ─── Bulk clear ───


def test_reset_clears_every_recovery_collection_for_the_user():
    db = _new_db()
    user = _new_user(db)
    other = _new_user(db, "other_user")
    _, obligation = record_meal_choice(db, user, food_name="Pizza", estimated_calories=80, choice="ate", now=NOW)
    complete_exercise_session(db, user, obligation.id, 5, now=NOW)
    record_meal_choice(db, other, food_name="Pizza", estimated_calories=80, choice="ate", now=NOW)

    removed = reset_user_data_for_user(db, user)

    assert removed["meal_records"] == 1
    assert removed["obligations"] == 1
    assert removed["session_events"] == 1
    assert db.query(ExerciseObligation).filter(ExerciseObligation.user_id == user.id).count() == 0
    assert db.query(ExerciseObligation).filter(ExerciseObligation.user_id == other.id).count() == 1


def test_failed_ledger_write_rolls_back_obligation_credit_so_retry_is_exact(monkeypatch):
    db = _new_db()
    user = _new_user(db)
    record_meal_choice(db, user, food_name="Fries", estimated_calories=10, choice="ate", now=NOW - timedelta(days=1))
    old = db.query(ExerciseObligation).one()
    old.target_count = 4
    db.commit()
    _, obligation = record_meal_choice(db, user, food_name="Burger", estimated_calories=40, choice="ate", now=NOW)
    obligation_id = obligation.id

    def _broken(*args, **kwargs):
        raise OperationalError("UPDATE recovery_ledger", {}, Exception("database is locked"))

    monkeypatch.setattr(session_service, "allocate_recovery", _broken)
    with pytest.raises(OperationalError):
        complete_exercise_session(db, user, obligation_id, 25, now=NOW + timedelta(minutes=10))
    monkeypatch.undo()

    reloaded = db.query(ExerciseObligation).filter(ExerciseObligation.id == obligation_id).one()
    assert reloaded.status == ObligationStatus.OPEN
    assert reloaded.completed_count == 0
    assert db.query(ExerciseRecord).count() == 0

    result = complete_exercise_session(db, user, obligation_id, 25, now=NOW + timedelta(minutes=11))

    assert result.leftover == 5
    assert result.recovered == 4
    entry = db.query(RecoveryLedgerEntry).one()
    assert entry.recovered_count == 4
    assert entry.initial_unmet_count == 4
    assert db.query(ExerciseRecord).count() == 1
