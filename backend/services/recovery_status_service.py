"""
Read-side aggregates for the home/stats screens.

These are motivational numbers, not critical-path ones: when the store is
unreadable the last snapshot served to the same user is returned instead,
flagged ``stale``.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.models import RecoveryLedgerEntry, User
from services.obligation_service import list_open_due_today, obligation_payload
from services.recovery_maintenance import run_recovery_maintenance, user_timezone
from utils.datetime_utils import local_date_key, utcnow, week_start_key

logger = logging.getLogger(__name__)


class StatusSnapshotCache:
    def __init__(self) -> None:
        self._snapshots: dict[tuple[int, str], Any] = {}
        self._lock = threading.Lock()

    def put(self, user_id: int, kind: str, value: Any) -> None:
        with self._lock:
            self._snapshots[(user_id, kind)] = value

    def get(self, user_id: int, kind: str) -> Any | None:
        with self._lock:
            return self._snapshots.get((user_id, kind))

    def clear(self, user_id: int | None = None) -> None:
        with self._lock:
            if user_id is None:
                self._snapshots.clear()
                return
            for key in [k for k in self._snapshots if k[0] == user_id]:
                del self._snapshots[key]


_STATUS_CACHE = StatusSnapshotCache()


def status_cache() -> StatusSnapshotCache:
    return _STATUS_CACHE


def _with_cached_fallback(db: Session, user: User, kind: str, compute: Callable[[], Any]) -> Any:
    try:
        value = compute()
    except SQLAlchemyError as e:
        db.rollback()
        cached = _STATUS_CACHE.get(user.id, kind)
        if cached is None:
            raise
        logger.warning(f"Serving cached {kind} for user {user.id} after read failure: {e}")
        if isinstance(cached, dict):
            return {**cached, "stale": True}
        return [{**row, "stale": True} for row in cached]
    _STATUS_CACHE.put(user.id, kind, value)
    return value


def get_weekly_recovery_status(db: Session, user: User, now: datetime | None = None) -> dict:
    """Totals over every ledger entry of the current week, regardless of status."""
    now = now or utcnow()

    def _compute() -> dict:
        run_recovery_maintenance(db, user, now)
        week_key = week_start_key(now, user_timezone(user))
        entries = (
            db.query(RecoveryLedgerEntry)
            .filter(
                RecoveryLedgerEntry.user_id == user.id,
                RecoveryLedgerEntry.week_start_local == week_key,
            )
            .all()
        )
        return {
            "week_start_local": week_key,
            "remaining_count": sum(int(e.remaining_count or 0) for e in entries),
            "generated_count": sum(int(e.initial_unmet_count or 0) for e in entries),
            "resolved_count": sum(int(e.recovered_count or 0) for e in entries),
            "stale": False,
        }

    return _with_cached_fallback(db, user, "weekly_recovery", _compute)


def get_today_obligation_status(db: Session, user: User, now: datetime | None = None) -> dict:
    now = now or utcnow()

    def _compute() -> dict:
        open_today = list_open_due_today(db, user, now)
        return {
            "date_key": local_date_key(now, user_timezone(user)),
            "open_obligation_count": len(open_today),
            "remaining_count": sum(o.remaining_count for o in open_today),
            "stale": False,
        }

    return _with_cached_fallback(db, user, "today_status", _compute)


def get_today_open_obligations(db: Session, user: User, now: datetime | None = None) -> list[dict]:
    """Pick-list of what is still owed today, oldest created first."""
    now = now or utcnow()

    def _compute() -> list[dict]:
        return [
            {**obligation_payload(o), "stale": False}
            for o in list_open_due_today(db, user, now)
            if o.remaining_count > 0
        ]

    return _with_cached_fallback(db, user, "today_open", _compute)
