from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import ExerciseType, User
from services.exercise_session_service import credit_progress
from services.obligation_service import (
    create_exercise_obligation,
    get_obligation,
    obligation_payload,
    update_obligation_target,
)
from services.recovery_status_service import get_today_obligation_status, get_today_open_obligations

router = APIRouter(prefix="/obligations", tags=["obligations"])


class ObligationCreate(BaseModel):
    meal_record_id: str = Field(min_length=1)
    exercise_type: ExerciseType
    target_count: int


class ObligationTargetUpdate(BaseModel):
    exercise_type: ExerciseType
    target_count: int


class ProgressReport(BaseModel):
    count: int
    apply_leftover_to_recovery: bool = False


@router.post("", status_code=201)
def create_obligation(
    req: ObligationCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    obligation = create_exercise_obligation(db, user, req.meal_record_id, req.exercise_type, req.target_count)
    return obligation_payload(obligation)


@router.get("/today")
def today_open(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return get_today_open_obligations(db, user)


@router.get("/today/status")
def today_status(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return get_today_obligation_status(db, user)


@router.get("/{obligation_id}")
def read_obligation(
    obligation_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    obligation = get_obligation(db, user, obligation_id)
    if obligation is None:
        raise HTTPException(status_code=404, detail="Obligation not found")
    return obligation_payload(obligation)


@router.put("/{obligation_id}/target")
def update_target(
    obligation_id: str,
    req: ObligationTargetUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    updated = update_obligation_target(db, user, obligation_id, req.exercise_type, req.target_count)
    return {"id": obligation_id, "updated": updated}


@router.post("/{obligation_id}/progress")
def report_progress(
    obligation_id: str,
    req: ProgressReport,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    leftover, recovered = credit_progress(
        db, user, obligation_id, req.count, apply_leftover_to_recovery=req.apply_leftover_to_recovery
    )
    obligation = get_obligation(db, user, obligation_id)
    return {
        "leftover": leftover,
        "recovered": recovered,
        "obligation": obligation_payload(obligation) if obligation is not None else None,
    }
