"""Append-only session lifecycle log used to resume an interrupted exercise session."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.models import ExerciseSessionEvent, SessionEventType, User
from services.obligation_service import normalize_count
from services.recovery_maintenance import run_recovery_maintenance
from utils.datetime_utils import to_storage, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionRestoreState:
    has_events: bool
    is_paused: bool
    count_snapshot: int
    last_event_type: SessionEventType | None = None

    def to_dict(self) -> dict:
        return {
            "has_events": self.has_events,
            "is_paused": self.is_paused,
            "count_snapshot": self.count_snapshot,
            "last_event_type": self.last_event_type.value if self.last_event_type else None,
        }


def record_session_event(
    db: Session,
    user: User,
    obligation_id: str,
    event_type: SessionEventType | str,
    count_snapshot: int,
    now: datetime | None = None,
) -> ExerciseSessionEvent | None:
    """Append one event. Never raises on storage errors.

    Losing a checkpoint only costs the resume position; the obligation row
    still holds the authoritative count, so the session carries on.
    """
    now = now or utcnow()
    try:
        run_recovery_maintenance(db, user, now)
        last_sequence = (
            db.query(func.max(ExerciseSessionEvent.sequence))
            .filter(
                ExerciseSessionEvent.user_id == user.id,
                ExerciseSessionEvent.obligation_id == obligation_id,
            )
            .scalar()
        )
        event = ExerciseSessionEvent(
            user_id=user.id,
            obligation_id=obligation_id,
            timestamp=to_storage(now),
            event_type=SessionEventType(event_type),
            count_snapshot=normalize_count(count_snapshot),
            sequence=int(last_sequence or 0) + 1,
        )
        db.add(event)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Failed to record session event for obligation {obligation_id}: {e}")
        return None
    db.refresh(event)
    return event


def get_session_restore_state(
    db: Session,
    user: User,
    obligation_id: str,
    now: datetime | None = None,
) -> SessionRestoreState:
    run_recovery_maintenance(db, user, now or utcnow())
    latest = (
        db.query(ExerciseSessionEvent)
        .filter(
            ExerciseSessionEvent.user_id == user.id,
            ExerciseSessionEvent.obligation_id == obligation_id,
        )
        .order_by(ExerciseSessionEvent.timestamp.desc(), ExerciseSessionEvent.sequence.desc())
        .first()
    )
    if latest is None:
        return SessionRestoreState(has_events=False, is_paused=False, count_snapshot=0)
    return SessionRestoreState(
        has_events=True,
        is_paused=latest.event_type == SessionEventType.PAUSE,
        count_snapshot=max(0, int(latest.count_snapshot or 0)),
        last_event_type=latest.event_type,
    )
