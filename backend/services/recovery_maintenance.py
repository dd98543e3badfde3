"""
Reconciliation sweep for exercise obligations and the weekly recovery ledger.

There is no scheduler: every read or write in the obligation/ledger services
runs the sweep first, so state is always reconciled as of ``now``. The sweep is
idempotent and every transition it makes is monotonic, which is what makes
concurrent sweeps from two requests safe to interleave.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from db.models import (
    ExerciseObligation,
    LedgerStatus,
    ObligationStatus,
    RecoveryLedgerEntry,
    User,
)
from utils.datetime_utils import to_storage, utcnow, week_start_key

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    completed: int = 0
    unmet: int = 0
    ledger_created: int = 0
    ledger_reset: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.completed or self.unmet or self.ledger_created or self.ledger_reset)

    def to_dict(self) -> dict[str, int]:
        return {
            "completed": self.completed,
            "unmet": self.unmet,
            "ledger_created": self.ledger_created,
            "ledger_reset": self.ledger_reset,
        }


def user_timezone(user: User) -> str:
    return getattr(getattr(user, "settings", None), "timezone", None) or settings.DEFAULT_TIMEZONE


def _has_live_ledger_entry(db: Session, user_id: int, obligation_id: str) -> bool:
    return (
        db.query(RecoveryLedgerEntry.id)
        .filter(
            RecoveryLedgerEntry.user_id == user_id,
            RecoveryLedgerEntry.obligation_id == obligation_id,
            RecoveryLedgerEntry.status != LedgerStatus.RESET,
        )
        .first()
        is not None
    )


def _finalize_overdue_obligations(db: Session, user: User, now: datetime, result: SweepResult) -> None:
    stamp = to_storage(now)
    overdue = (
        db.query(ExerciseObligation)
        .filter(
            ExerciseObligation.user_id == user.id,
            ExerciseObligation.status == ObligationStatus.OPEN,
            ExerciseObligation.due_at <= stamp,
        )
        .order_by(ExerciseObligation.created_at.asc(), ExerciseObligation.id.asc())
        .all()
    )
    for obligation in overdue:
        obligation.finalized_at = stamp
        if obligation.completed_count >= obligation.target_count:
            obligation.status = ObligationStatus.COMPLETED
            result.completed += 1
            continue

        obligation.status = ObligationStatus.UNMET
        result.unmet += 1
        remaining = obligation.remaining_count
        if remaining <= 0 or _has_live_ledger_entry(db, user.id, obligation.id):
            continue

        entry = RecoveryLedgerEntry(
            user_id=user.id,
            obligation_id=obligation.id,
            week_start_local=obligation.week_start_local,
            generated_at=stamp,
            initial_unmet_count=remaining,
            recovered_count=0,
            remaining_count=remaining,
            status=LedgerStatus.OPEN,
        )
        try:
            with db.begin_nested():
                db.add(entry)
                db.flush()
        except IntegrityError:
            # A concurrent sweep carried this obligation first.
            logger.info(f"Ledger entry for obligation {obligation.id} already exists; skipping")
            continue
        result.ledger_created += 1
        logger.info(
            f"Obligation {obligation.id} unmet with {remaining} reps outstanding; "
            f"carried into week {obligation.week_start_local}"
        )


def _reset_stale_ledger_entries(db: Session, user: User, now: datetime, result: SweepResult) -> None:
    current_week = week_start_key(now, user_timezone(user))
    stale = (
        db.query(RecoveryLedgerEntry)
        .filter(
            RecoveryLedgerEntry.user_id == user.id,
            RecoveryLedgerEntry.status == LedgerStatus.OPEN,
            RecoveryLedgerEntry.week_start_local < current_week,
        )
        .all()
    )
    for entry in stale:
        entry.status = LedgerStatus.RESET
        entry.reset_at = to_storage(now)
        entry.remaining_count = 0
        result.ledger_reset += 1


def run_recovery_maintenance(db: Session, user: User, now: datetime | None = None) -> SweepResult:
    """
    Promote overdue obligations to a terminal state and retire last week's debt.

    1. Open obligations with ``due_at <= now`` become ``completed`` (target met)
       or ``unmet``. An unmet obligation with reps outstanding gets exactly one
       live ledger entry, created in obligation creation order.
    2. Open ledger entries whose week is before the current week are reset and
       their remaining debt is forfeited.

    Only touched rows are written, and nothing is committed when nothing
    changed. Storage errors propagate after rollback.
    """
    now = now or utcnow()
    result = SweepResult()
    try:
        _finalize_overdue_obligations(db, user, now, result)
        _reset_stale_ledger_entries(db, user, now, result)
        if result.changed:
            db.commit()
    except Exception:
        db.rollback()
        raise

    if result.changed:
        logger.info(f"Recovery sweep for user {user.id}: {result.to_dict()}")
    return result
