from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import SessionEventType, User
from services.exercise_session_service import (
    RecognizerEvent,
    complete_exercise_session,
    count_from_recognizer_event,
)
from services.obligation_service import get_obligation, normalize_count
from services.session_event_service import get_session_restore_state, record_session_event

router = APIRouter(prefix="/sessions", tags=["sessions"])


class SessionEventCreate(BaseModel):
    event_type: SessionEventType
    count_snapshot: int = 0


class SessionComplete(BaseModel):
    count: int = Field(default=0)


@router.post("/{obligation_id}/events", status_code=202)
def post_event(
    obligation_id: str,
    req: SessionEventCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = record_session_event(db, user, obligation_id, req.event_type, req.count_snapshot)
    # 202 either way: a lost checkpoint must not interrupt the session.
    return {"recorded": event is not None, "event": event.to_dict() if event is not None else None}


@router.get("/{obligation_id}/restore")
def restore(
    obligation_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return get_session_restore_state(db, user, obligation_id).to_dict()


@router.post("/{obligation_id}/recognizer/preview")
def preview_recognizer_event(
    obligation_id: str,
    req: RecognizerEvent,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """What a recognizer event would credit if the session ended now. Writes nothing."""
    obligation = get_obligation(db, user, obligation_id)
    creditable = count_from_recognizer_event(req, obligation)
    leftover = None if creditable is None else normalize_count(req.count) - creditable
    return {"type": req.type, "creditable_count": creditable, "leftover_count": leftover}


@router.post("/{obligation_id}/complete")
def complete(
    obligation_id: str,
    req: SessionComplete,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return complete_exercise_session(db, user, obligation_id, req.count).to_dict()
