import logging

from sqlalchemy.orm import Session

from config import settings as app_settings
from db.models import (
    ExerciseObligation,
    ExerciseRecord,
    ExerciseSessionEvent,
    MealRecord,
    RecoveryLedgerEntry,
    User,
    UserSettings,
)
from services.recovery_status_service import status_cache

logger = logging.getLogger(__name__)


def reset_user_data_for_user(db: Session, user: User, keep_settings: bool = True) -> dict[str, int]:
    """Bulk data clear. The only path that ever deletes obligations."""
    removed = {
        "meal_records": db.query(MealRecord).filter(MealRecord.user_id == user.id).delete(synchronize_session=False),
        "exercise_records": db.query(ExerciseRecord)
        .filter(ExerciseRecord.user_id == user.id)
        .delete(synchronize_session=False),
        "obligations": db.query(ExerciseObligation)
        .filter(ExerciseObligation.user_id == user.id)
        .delete(synchronize_session=False),
        "session_events": db.query(ExerciseSessionEvent)
        .filter(ExerciseSessionEvent.user_id == user.id)
        .delete(synchronize_session=False),
        "ledger_entries": db.query(RecoveryLedgerEntry)
        .filter(RecoveryLedgerEntry.user_id == user.id)
        .delete(synchronize_session=False),
    }

    if not keep_settings:
        s = user.settings
        if not s:
            s = UserSettings(user_id=user.id)
            db.add(s)
        s.timezone = app_settings.DEFAULT_TIMEZONE
        s.default_exercise_type = None

    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.expire_all()
    status_cache().clear(user.id)
    logger.info(f"Cleared recovery data for user {user.id}: {removed}")
    return removed
