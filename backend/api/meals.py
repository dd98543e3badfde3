from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import MealChoice, User
from services.meal_service import (
    delete_meal_record,
    get_savings_summary,
    list_meal_records,
    record_meal_choice,
)
from services.obligation_service import obligation_payload

router = APIRouter(prefix="/meals", tags=["meals"])


class MealChoiceCreate(BaseModel):
    food_name: str = Field(min_length=1, max_length=200)
    estimated_calories: float = Field(ge=0)
    choice: MealChoice
    confidence: int = Field(default=0, ge=0, le=100)
    photo_uri: Optional[str] = None


@router.post("", status_code=201)
def create_meal(
    req: MealChoiceCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    meal, obligation = record_meal_choice(
        db,
        user,
        food_name=req.food_name,
        estimated_calories=req.estimated_calories,
        choice=req.choice,
        confidence=req.confidence,
        photo_uri=req.photo_uri,
    )
    return {
        "meal": meal.to_dict(),
        "obligation": obligation_payload(obligation) if obligation is not None else None,
    }


@router.get("")
def list_meals(
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return [m.to_dict() for m in list_meal_records(db, user, limit=limit)]


@router.get("/savings")
def savings(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return get_savings_summary(db, user)


@router.delete("/{meal_id}")
def delete_meal(
    meal_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not delete_meal_record(db, user, meal_id):
        raise HTTPException(status_code=404, detail="Meal not found")
    return {"status": "deleted", "id": meal_id}
