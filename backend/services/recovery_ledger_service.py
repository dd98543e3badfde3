from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from db.models import ExerciseObligation, LedgerStatus, RecoveryLedgerEntry, User
from services.obligation_service import normalize_count
from services.recovery_maintenance import run_recovery_maintenance, user_timezone
from utils.datetime_utils import utcnow, week_start_key

logger = logging.getLogger(__name__)


def list_ledger_entries(
    db: Session,
    user: User,
    now: datetime | None = None,
    current_week_only: bool = True,
) -> list[RecoveryLedgerEntry]:
    """Ledger entries newest first, optionally limited to the week containing ``now``."""
    now = now or utcnow()
    run_recovery_maintenance(db, user, now)
    query = (
        db.query(RecoveryLedgerEntry)
        .outerjoin(ExerciseObligation, ExerciseObligation.id == RecoveryLedgerEntry.obligation_id)
        .filter(RecoveryLedgerEntry.user_id == user.id)
    )
    if current_week_only:
        query = query.filter(RecoveryLedgerEntry.week_start_local == week_start_key(now, user_timezone(user)))
    return query.order_by(
        RecoveryLedgerEntry.generated_at.desc(),
        ExerciseObligation.created_at.desc(),
        RecoveryLedgerEntry.id.desc(),
    ).all()


def allocate_recovery(db: Session, user: User, leftover: int, now: datetime) -> int:
    """Pay this week's open entries oldest-generated first, without sweeping or committing.

    An entry closes when its remaining count reaches zero. Returns the reps
    that were actually applied; any excess is dropped.
    """
    remaining = normalize_count(leftover)
    if remaining <= 0:
        return 0

    entries = (
        db.query(RecoveryLedgerEntry)
        .outerjoin(ExerciseObligation, ExerciseObligation.id == RecoveryLedgerEntry.obligation_id)
        .filter(
            RecoveryLedgerEntry.user_id == user.id,
            RecoveryLedgerEntry.status == LedgerStatus.OPEN,
            RecoveryLedgerEntry.week_start_local == week_start_key(now, user_timezone(user)),
        )
        .order_by(
            RecoveryLedgerEntry.generated_at.asc(),
            ExerciseObligation.created_at.asc(),
            RecoveryLedgerEntry.id.asc(),
        )
        .all()
    )

    applied = 0
    for entry in entries:
        if remaining <= 0:
            break
        consumed = min(remaining, int(entry.remaining_count or 0))
        if consumed <= 0:
            continue
        remaining -= consumed
        applied += consumed
        entry.recovered_count = int(entry.recovered_count or 0) + consumed
        entry.remaining_count = int(entry.remaining_count) - consumed
        if entry.remaining_count <= 0:
            entry.remaining_count = 0
            entry.status = LedgerStatus.CLOSED
            logger.info(f"Recovery ledger entry {entry.id} fully recovered")
    return applied


def apply_recovery_from_exercise(
    db: Session,
    user: User,
    leftover: int,
    now: datetime | None = None,
) -> int:
    """
    Spill reps a session had left over into this week's open debt.

    Entries are paid oldest-generated first so an old shortfall is never
    starved by newer ones.
    """
    now = now or utcnow()
    run_recovery_maintenance(db, user, now)
    applied = allocate_recovery(db, user, leftover, now)
    if applied:
        try:
            db.commit()
        except Exception:
            db.rollback()
            raise
    return applied
