from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import User
from services.recovery_ledger_service import apply_recovery_from_exercise, list_ledger_entries
from services.recovery_maintenance import run_recovery_maintenance
from services.recovery_status_service import get_weekly_recovery_status

router = APIRouter(prefix="/recovery", tags=["recovery"])


class RecoveryApply(BaseModel):
    leftover: int


@router.get("/weekly")
def weekly_status(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return get_weekly_recovery_status(db, user)


@router.get("/ledger")
def ledger(
    scope: str = "week",
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    entries = list_ledger_entries(db, user, current_week_only=(scope != "all"))
    return [e.to_dict() for e in entries]


@router.post("/apply")
def apply_leftover(
    req: RecoveryApply,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    recovered = apply_recovery_from_exercise(db, user, req.leftover)
    return {"recovered": recovered, "weekly": get_weekly_recovery_status(db, user)}


@router.post("/sweep")
def sweep(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return run_recovery_maintenance(db, user).to_dict()
