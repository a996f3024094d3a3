from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import User, Workout
from services.workout_service import MUSCLE_GROUPS, WorkoutLog, load_stats
from utils.datetime_utils import as_utc, today_for_tz

router = APIRouter(prefix="/workouts", tags=["workouts"])


class WorkoutCreate(BaseModel):
    muscle_group: str
    completed: bool = True
    stats: Optional[dict[str, Any]] = None


class TodayWorkout(BaseModel):
    muscle_group: str


class StatValue(BaseModel):
    value: Any


def serialize_workout(workout: Workout) -> dict:
    return {
        "id": workout.id,
        "owner_id": workout.owner_id,
        "date": as_utc(workout.date).isoformat() if workout.date else None,
        "muscle_group": workout.muscle_group,
        "completed": bool(workout.completed),
        "stats": load_stats(workout),
    }


@router.get("/muscle-groups")
def muscle_groups():
    return list(MUSCLE_GROUPS)


@router.post("", status_code=201)
def create_workout(
    req: WorkoutCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        workout = WorkoutLog(db).log_workout(user.id, req.muscle_group, completed=req.completed, stats=req.stats)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return serialize_workout(workout)


@router.get("")
def list_workouts(
    completed_only: bool = False,
    limit: int = Query(50, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    workouts = WorkoutLog(db).list_workouts(user.id, completed_only=completed_only, limit=limit)
    return [serialize_workout(w) for w in workouts]


@router.get("/today")
def todays_workout(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    workout = WorkoutLog(db).get_todays_workout(user.id, user.timezone)
    return {
        "date": today_for_tz(user.timezone).isoformat(),
        "workout": serialize_workout(workout) if workout else None,
    }


@router.put("/today")
def log_today(
    req: TodayWorkout,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        workout = WorkoutLog(db).log_today(user.id, req.muscle_group, user.timezone)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return serialize_workout(workout)


@router.put("/today/stats/{stat_id}")
def save_stat(
    stat_id: str,
    req: StatValue,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        workout = WorkoutLog(db).save_stat(user.id, stat_id, req.value, user.timezone)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return serialize_workout(workout)


@router.get("/calendar")
def calendar(
    year: int = Query(..., ge=1970, le=9999),
    month: int = Query(..., ge=1, le=12),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return WorkoutLog(db).monthly_calendar(user, year, month)


@router.post("/{workout_id}/complete")
def complete_workout(
    workout_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return serialize_workout(WorkoutLog(db).mark_completed(user.id, workout_id))


@router.delete("/{workout_id}", status_code=204)
def delete_workout(
    workout_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    WorkoutLog(db).delete_workout(user.id, workout_id)
