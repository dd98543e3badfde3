"""Glue between the movement recognizer and the obligation/ledger stores.

A session credits its reps once, when it completes. Recognizer counts seen
before that are only previewed against the obligation.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from db.models import ExerciseObligation, ExerciseRecord, SessionEventType, User
from services.meal_service import build_exercise_record, prune_old_records
from services.obligation_service import consume_obligation_progress, get_obligation, normalize_count
from services.recovery_ledger_service import allocate_recovery
from services.recovery_maintenance import run_recovery_maintenance
from services.session_event_service import record_session_event
from utils.datetime_utils import utcnow
from utils.exercise_calc import calculate_burned_calories, get_exercise

logger = logging.getLogger(__name__)


class RecognizerEvent(BaseModel):
    """One message from the pose recognizer; counts are cumulative per session."""
    type: Literal["ready", "count", "error"]
    count: Optional[int] = None
    message: Optional[str] = None


def clamp_reported_count(count: int | None, remaining: int) -> int:
    return max(0, min(normalize_count(count), max(0, int(remaining or 0))))


def count_from_recognizer_event(event: RecognizerEvent, obligation: ExerciseObligation | None) -> int | None:
    """Reps of the session so far that the obligation would absorb, or None for non-count events.

    Nothing is written. The clamp is against the obligation's remaining count,
    which stays fixed while the session runs because credit is applied once
    on completion.
    """
    if event.type == "error":
        logger.warning(f"Movement recognizer error: {event.message}")
        return None
    if event.type != "count":
        return None
    remaining = obligation.remaining_count if obligation is not None else 0
    return clamp_reported_count(event.count, remaining)


def credit_progress(
    db: Session,
    user: User,
    obligation_id: str,
    count: int,
    apply_leftover_to_recovery: bool = True,
    now: datetime | None = None,
) -> tuple[int, int]:
    """
    Pay the obligation, then optionally spill the leftover into this week's
    ledger, in a single commit. Returns ``(leftover, recovered)``.

    A failed write rolls both back, so retrying with the same count cannot
    credit the ledger twice.
    """
    now = now or utcnow()
    run_recovery_maintenance(db, user, now)
    try:
        leftover = consume_obligation_progress(db, user, obligation_id, count, now)
        recovered = allocate_recovery(db, user, leftover, now) if apply_leftover_to_recovery else 0
        db.commit()
    except Exception:
        db.rollback()
        raise
    return leftover, recovered


@dataclass
class SessionCompletion:
    reported_count: int
    leftover: int
    recovered: int
    obligation: ExerciseObligation | None
    exercise_record: ExerciseRecord | None

    def to_dict(self) -> dict:
        return {
            "reported_count": self.reported_count,
            "leftover": self.leftover,
            "recovered": self.recovered,
            "obligation": self.obligation.to_dict() if self.obligation is not None else None,
            "exercise_record": self.exercise_record.to_dict() if self.exercise_record is not None else None,
        }


def complete_exercise_session(
    db: Session,
    user: User,
    obligation_id: str,
    final_count: int,
    now: datetime | None = None,
) -> SessionCompletion:
    """
    Close out a session: checkpoint the end event, pay the launching obligation,
    spill the rest into this week's ledger and keep an exercise record.

    The obligation, ledger and exercise record writes commit together and
    propagate on failure so the caller can retry; only the checkpoint write
    is best-effort.
    """
    now = now or utcnow()
    reported = normalize_count(final_count)
    obligation = get_obligation(db, user, obligation_id, now)

    record_session_event(db, user, obligation_id, SessionEventType.END, reported, now)

    record = None
    try:
        leftover = consume_obligation_progress(db, user, obligation_id, reported, now)
        recovered = allocate_recovery(db, user, leftover, now)
        if obligation is not None and reported > 0:
            record = build_exercise_record(
                user,
                exercise_type=obligation.exercise_type,
                count=reported,
                target_count=obligation.target_count,
                calories_burned=calculate_burned_calories(reported, get_exercise(obligation.exercise_type)),
                meal_record_id=obligation.meal_record_id,
                now=now,
            )
            db.add(record)
        db.commit()
    except Exception:
        db.rollback()
        raise

    if obligation is not None:
        db.refresh(obligation)
    if record is not None:
        db.refresh(record)
        prune_old_records(db, user)
    return SessionCompletion(
        reported_count=reported,
        leftover=leftover,
        recovered=recovered,
        obligation=obligation,
        exercise_record=record,
    )
