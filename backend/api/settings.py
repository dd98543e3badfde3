from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from config import settings as app_settings
from db.database import get_db
from db.models import ExerciseType, User, UserSettings
from services.recovery_status_service import status_cache
from services.user_reset_service import reset_user_data_for_user
from utils.datetime_utils import is_known_timezone

router = APIRouter(prefix="/settings", tags=["settings"])


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    timezone: Optional[str] = None
    default_exercise_type: Optional[ExerciseType] = None


def _profile_to_dict(user: User) -> dict:
    s = user.settings
    return {
        "username": user.username,
        "display_name": user.display_name,
        "timezone": (s.timezone if s else None) or app_settings.DEFAULT_TIMEZONE,
        "default_exercise_type": s.default_exercise_type.value if s and s.default_exercise_type else None,
    }


@router.get("/profile")
def get_profile(user: User = Depends(get_current_user)):
    return _profile_to_dict(user)


@router.put("/profile")
def update_profile(
    req: ProfileUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    s = user.settings
    if not s:
        s = UserSettings(user_id=user.id, timezone=app_settings.DEFAULT_TIMEZONE)
        db.add(s)
        user.settings = s

    if req.display_name is not None:
        user.display_name = req.display_name.strip()
    if req.timezone is not None:
        if not is_known_timezone(req.timezone.strip()):
            raise HTTPException(status_code=422, detail="Unknown timezone")
        # Existing obligations keep the zone they were created in.
        s.timezone = req.timezone.strip()
        status_cache().clear(user.id)
    if req.default_exercise_type is not None:
        s.default_exercise_type = req.default_exercise_type

    db.commit()
    db.refresh(user)
    return _profile_to_dict(user)


@router.delete("/data")
def clear_data(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    removed = reset_user_data_for_user(db, user)
    return {"status": "ok", "removed": removed}
