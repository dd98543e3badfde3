from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from config import settings
from db.models import (
    ExerciseObligation,
    ExerciseRecord,
    ExerciseType,
    MealChoice,
    MealRecord,
    User,
)
from services.obligation_service import build_exercise_obligation
from services.recovery_maintenance import run_recovery_maintenance, user_timezone
from utils.datetime_utils import (
    as_utc,
    local_date,
    start_of_day,
    start_of_month,
    start_of_week,
    to_storage,
    utcnow,
)
from utils.exercise_calc import calculate_recommended_reps, get_exercise

logger = logging.getLogger(__name__)


def _default_exercise_type(user: User) -> ExerciseType:
    configured = getattr(getattr(user, "settings", None), "default_exercise_type", None)
    if configured:
        return ExerciseType(configured)
    try:
        return ExerciseType(settings.DEFAULT_EXERCISE_TYPE)
    except ValueError:
        return ExerciseType.SQUAT


def _trim_to_limit(db: Session, model, user_id: int, limit: int) -> int:
    stale_ids = [
        row.id
        for row in db.query(model.id)
        .filter(model.user_id == user_id)
        .order_by(model.timestamp.desc(), model.id.desc())
        .offset(limit)
        .all()
    ]
    if not stale_ids:
        return 0
    db.query(model).filter(model.id.in_(stale_ids)).delete(synchronize_session=False)
    return len(stale_ids)


def prune_old_records(db: Session, user: User, limit: int | None = None) -> dict[str, int]:
    """Keep only the newest ``MAX_RECORDS`` meal and exercise records."""
    limit = max(1, int(limit or settings.MAX_RECORDS))
    removed = {
        "meal_records": _trim_to_limit(db, MealRecord, user.id, limit),
        "exercise_records": _trim_to_limit(db, ExerciseRecord, user.id, limit),
    }
    if any(removed.values()):
        db.commit()
        logger.info(f"Pruned records for user {user.id}: {removed}")
    return removed


def record_meal_choice(
    db: Session,
    user: User,
    *,
    food_name: str,
    estimated_calories: float,
    choice: MealChoice | str,
    confidence: int = 0,
    photo_uri: str | None = None,
    now: datetime | None = None,
) -> tuple[MealRecord, ExerciseObligation | None]:
    """
    Store a meal decision. Eating it creates exactly one obligation sized from
    the meal's calories; skipping it creates none and counts as savings.

    The meal and its obligation commit together, so a failed write never
    leaves an eaten meal without its obligation.
    """
    now = now or utcnow()
    run_recovery_maintenance(db, user, now)

    meal = MealRecord(
        user_id=user.id,
        timestamp=to_storage(now),
        food_name=(food_name or "").strip() or "Meal",
        estimated_calories=max(0.0, float(estimated_calories or 0.0)),
        confidence=max(0, min(100, int(confidence or 0))),
        photo_uri=photo_uri or None,
        choice=MealChoice(choice),
    )
    obligation = None
    try:
        db.add(meal)
        db.flush()
        if meal.choice == MealChoice.ATE:
            exercise = get_exercise(_default_exercise_type(user))
            obligation = build_exercise_obligation(
                user,
                meal_record_id=meal.id,
                exercise_type=exercise.exercise_type,
                target_count=calculate_recommended_reps(meal.estimated_calories, exercise),
                now=now,
            )
            db.add(obligation)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(meal)
    if obligation is not None:
        db.refresh(obligation)
    prune_old_records(db, user)
    return meal, obligation


def list_meal_records(db: Session, user: User, limit: int | None = None) -> list[MealRecord]:
    query = (
        db.query(MealRecord)
        .filter(MealRecord.user_id == user.id)
        .order_by(MealRecord.timestamp.desc(), MealRecord.id.desc())
    )
    if limit:
        query = query.limit(max(1, int(limit)))
    return query.all()


def delete_meal_record(db: Session, user: User, meal_record_id: str) -> bool:
    """Remove a meal and its exercise records. Obligations only back-reference
    the meal, so they stay untouched."""
    deleted = (
        db.query(MealRecord)
        .filter(MealRecord.id == meal_record_id, MealRecord.user_id == user.id)
        .delete(synchronize_session=False)
    )
    if not deleted:
        return False
    db.query(ExerciseRecord).filter(
        ExerciseRecord.user_id == user.id,
        ExerciseRecord.meal_record_id == meal_record_id,
    ).delete(synchronize_session=False)
    db.commit()
    return True


def build_exercise_record(
    user: User,
    *,
    exercise_type: ExerciseType | str,
    count: int,
    target_count: int,
    calories_burned: float,
    meal_record_id: str | None,
    now: datetime,
) -> ExerciseRecord:
    return ExerciseRecord(
        user_id=user.id,
        meal_record_id=meal_record_id,
        timestamp=to_storage(now),
        exercise_type=ExerciseType(exercise_type),
        count=max(0, int(count or 0)),
        target_count=max(0, int(target_count or 0)),
        calories_burned=max(0.0, float(calories_burned or 0.0)),
    )


def save_exercise_record(
    db: Session,
    user: User,
    *,
    exercise_type: ExerciseType | str,
    count: int,
    target_count: int,
    calories_burned: float,
    meal_record_id: str | None = None,
    now: datetime | None = None,
) -> ExerciseRecord:
    record = build_exercise_record(
        user,
        exercise_type=exercise_type,
        count=count,
        target_count=target_count,
        calories_burned=calories_burned,
        meal_record_id=meal_record_id,
        now=now or utcnow(),
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    prune_old_records(db, user)
    return record


def get_savings_summary(db: Session, user: User, now: datetime | None = None) -> dict:
    """Calories not eaten (skipped meals) today, this week and this month."""
    now = now or utcnow()
    tz_name = user_timezone(user)
    today = local_date(now, tz_name)
    month_start = start_of_month(today)
    week_start = start_of_week(today)
    window_start = min(month_start, week_start)

    lower = start_of_day(window_start, tz_name)
    meals = (
        db.query(MealRecord)
        .filter(MealRecord.user_id == user.id, MealRecord.timestamp >= to_storage(lower))
        .all()
    )

    summary = {"today": 0.0, "this_week": 0.0, "this_month": 0.0, "ate_count": 0, "skipped_count": 0}
    for meal in meals:
        day = local_date(as_utc(meal.timestamp), tz_name)
        if day > today:
            continue
        if meal.choice == MealChoice.ATE:
            if day >= month_start:
                summary["ate_count"] += 1
            continue
        calories = float(meal.estimated_calories or 0.0)
        if day >= month_start:
            summary["skipped_count"] += 1
            summary["this_month"] += calories
        if day >= week_start:
            summary["this_week"] += calories
        if day == today:
            summary["today"] += calories
    return summary
