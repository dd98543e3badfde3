from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from db.models import ExerciseObligation, ExerciseType, ObligationStatus, User
from services.recovery_maintenance import run_recovery_maintenance, user_timezone
from utils.datetime_utils import (
    end_of_local_day,
    local_date_key,
    to_storage,
    utcnow,
    week_start_key,
)
from utils.exercise_calc import calculate_sets, is_too_many_reps

logger = logging.getLogger(__name__)


def normalize_target_count(target_count: int | None) -> int:
    try:
        value = int(target_count or 0)
    except (TypeError, ValueError):
        value = 0
    return max(1, value)


def normalize_count(count: int | None) -> int:
    try:
        value = int(count or 0)
    except (TypeError, ValueError):
        value = 0
    return max(0, value)


def obligation_payload(obligation: ExerciseObligation) -> dict:
    """Serialized obligation plus the workout hints shown before a session."""
    return {
        **obligation.to_dict(),
        "sets": calculate_sets(obligation.target_count),
        "too_many_reps": is_too_many_reps(obligation.target_count),
    }


def _get_owned(db: Session, user: User, obligation_id: str) -> ExerciseObligation | None:
    return (
        db.query(ExerciseObligation)
        .filter(ExerciseObligation.id == obligation_id, ExerciseObligation.user_id == user.id)
        .first()
    )


def _commit(db: Session) -> None:
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise


def build_exercise_obligation(
    user: User,
    meal_record_id: str,
    exercise_type: ExerciseType | str,
    target_count: int,
    now: datetime,
) -> ExerciseObligation:
    """New open obligation due at the end of ``now``'s local day. Not added to a session.

    The timezone is captured on the row so a later timezone change does not
    move the due date after the fact.
    """
    tz_name = user_timezone(user)
    return ExerciseObligation(
        user_id=user.id,
        meal_record_id=meal_record_id,
        created_at=to_storage(now),
        due_at=to_storage(end_of_local_day(now, tz_name)),
        due_local_date=local_date_key(now, tz_name),
        week_start_local=week_start_key(now, tz_name),
        timezone=tz_name,
        exercise_type=ExerciseType(exercise_type),
        target_count=normalize_target_count(target_count),
        completed_count=0,
        status=ObligationStatus.OPEN,
    )


def create_exercise_obligation(
    db: Session,
    user: User,
    meal_record_id: str,
    exercise_type: ExerciseType | str,
    target_count: int,
    now: datetime | None = None,
) -> ExerciseObligation:
    """Commit the user to ``target_count`` reps by the end of today, local time."""
    now = now or utcnow()
    run_recovery_maintenance(db, user, now)

    obligation = build_exercise_obligation(user, meal_record_id, exercise_type, target_count, now)
    db.add(obligation)
    _commit(db)
    db.refresh(obligation)
    return obligation


def get_obligation(
    db: Session,
    user: User,
    obligation_id: str,
    now: datetime | None = None,
) -> ExerciseObligation | None:
    run_recovery_maintenance(db, user, now or utcnow())
    return _get_owned(db, user, obligation_id)


def list_open_due_today(db: Session, user: User, now: datetime | None = None) -> list[ExerciseObligation]:
    now = now or utcnow()
    run_recovery_maintenance(db, user, now)
    today_key = local_date_key(now, user_timezone(user))
    return (
        db.query(ExerciseObligation)
        .filter(
            ExerciseObligation.user_id == user.id,
            ExerciseObligation.status == ObligationStatus.OPEN,
            ExerciseObligation.due_local_date == today_key,
        )
        .order_by(ExerciseObligation.created_at.asc(), ExerciseObligation.id.asc())
        .all()
    )


def update_obligation_target(
    db: Session,
    user: User,
    obligation_id: str,
    exercise_type: ExerciseType | str,
    target_count: int,
    now: datetime | None = None,
) -> bool:
    """Swap the exercise or rep target of an open obligation.

    Returns False without raising when the obligation is unknown or already
    finalized; a concurrent sweep may have closed it a moment ago.
    """
    run_recovery_maintenance(db, user, now or utcnow())
    obligation = _get_owned(db, user, obligation_id)
    if obligation is None or obligation.status != ObligationStatus.OPEN:
        return False
    obligation.exercise_type = ExerciseType(exercise_type)
    obligation.target_count = normalize_target_count(target_count)
    _commit(db)
    return True


def consume_obligation_progress(
    db: Session,
    user: User,
    obligation_id: str,
    count: int,
    now: datetime,
) -> int:
    """Allocate ``count`` to the obligation in the session without sweeping or committing.

    Returns the leftover the obligation could not absorb.
    """
    count = normalize_count(count)
    obligation = _get_owned(db, user, obligation_id)
    if obligation is None or obligation.status != ObligationStatus.OPEN or count <= 0:
        return count

    consumed = min(count, obligation.remaining_count)
    obligation.completed_count = int(obligation.completed_count or 0) + consumed
    if obligation.completed_count >= obligation.target_count:
        obligation.status = ObligationStatus.COMPLETED
        obligation.finalized_at = to_storage(now)
        logger.info(f"Obligation {obligation.id} completed ({obligation.completed_count} reps)")
    return count - consumed


def apply_obligation_progress(
    db: Session,
    user: User,
    obligation_id: str,
    count: int,
    now: datetime | None = None,
) -> int:
    """
    Credit ``count`` reps to the obligation that launched the session.

    Returns the leftover that the obligation could not absorb. Nothing is
    consumed when the obligation is missing, no longer open, or count <= 0.
    Reaching the target completes the obligation immediately instead of
    waiting for the next sweep.
    """
    now = now or utcnow()
    run_recovery_maintenance(db, user, now)
    leftover = consume_obligation_progress(db, user, obligation_id, count, now)
    _commit(db)
    return leftover
