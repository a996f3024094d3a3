from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import CalorieEntry, User
from services.calorie_service import CalorieLog, summarize_entries
from utils.datetime_utils import as_utc, today_for_tz

router = APIRouter(prefix="/calories", tags=["calories"])


class CalorieEntryCreate(BaseModel):
    amount: int
    description: Optional[str] = None
    protein_g: Optional[float] = None
    carbs_g: Optional[float] = None
    fat_g: Optional[float] = None


def serialize_entry(entry: CalorieEntry) -> dict:
    return {
        "id": entry.id,
        "date": as_utc(entry.date).isoformat() if entry.date else None,
        "amount": entry.amount,
        "description": entry.description,
        "protein_g": entry.protein_g,
        "carbs_g": entry.carbs_g,
        "fat_g": entry.fat_g,
    }


@router.post("", status_code=201)
def add_entry(
    req: CalorieEntryCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        entry = CalorieLog(db).add_entry(
            user.id,
            req.amount,
            description=req.description,
            protein_g=req.protein_g,
            carbs_g=req.carbs_g,
            fat_g=req.fat_g,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return serialize_entry(entry)


@router.get("/today")
def todays_entries(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    entries = CalorieLog(db).todays_entries(user.id, user.timezone)
    return {
        "date": today_for_tz(user.timezone).isoformat(),
        "summary": summarize_entries(entries),
        "entries": [serialize_entry(e) for e in entries],
    }


@router.delete("/{entry_id}", status_code=204)
def delete_entry(
    entry_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    CalorieLog(db).delete_entry(user.id, entry_id)
