from __future__ import annotations

import json
import logging
import math
from datetime import date, datetime, timedelta
from typing import Any, Callable

from sqlalchemy.orm import Session

from db.models import User, Workout
from services.errors import NotFound, store_call
from services.profile_service import STAT_LABELS
from utils.datetime_utils import (
    days_in_month,
    local_date,
    local_day_bounds,
    start_of_day,
    to_db_utc,
    today_for_tz,
    utcnow,
)

logger = logging.getLogger(__name__)

MUSCLE_GROUPS = ("Chest", "Back", "Legs", "Arms", "Shoulders", "Cardio")
STATS_ONLY_GROUP = "Stats Only"


def load_stats(workout: Workout) -> dict[str, float]:
    if not workout.stats_json:
        return {}
    try:
        payload = json.loads(workout.stats_json)
    except json.JSONDecodeError:
        return {}
    if not isinstance(payload, dict):
        return {}
    out: dict[str, float] = {}
    for key, value in payload.items():
        try:
            out[str(key)] = float(value)
        except (TypeError, ValueError):
            continue
    return out


def _clean_stats(stats: dict[str, Any] | None) -> dict[str, float]:
    cleaned: dict[str, float] = {}
    for key, value in (stats or {}).items():
        stat_id = str(key).strip().lower()
        if stat_id not in STAT_LABELS:
            raise ValueError(f"Unknown stat: {key}")
        cleaned[stat_id] = _stat_value(stat_id, value)
    return cleaned


def _stat_value(stat_id: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{STAT_LABELS[stat_id]} must be a number")
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{STAT_LABELS[stat_id]} must be a number")
    if math.isnan(number) or math.isinf(number) or number < 0:
        raise ValueError(f"{STAT_LABELS[stat_id]} must be a non-negative number")
    return number


def _clean_muscle_group(muscle_group: str | None) -> str:
    value = " ".join((muscle_group or "").strip().split())
    if not value:
        raise ValueError("Please select a muscle group")
    return value


class WorkoutLog:
    """Workout records for one store session.

    The app keeps one workout per local day in practice: logging again the same
    day updates that record, and saving a stat before any workout creates an
    incomplete "Stats Only" record to hang the value on.
    """

    def __init__(self, db: Session, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self._clock = clock

    def _owned(self, owner_id: str, workout_id: str) -> Workout:
        workout = (
            self.db.query(Workout)
            .filter(Workout.id == workout_id, Workout.owner_id == owner_id)
            .first()
        )
        if workout is None:
            raise NotFound(f"Workout {workout_id} not found")
        return workout

    def log_workout(
        self,
        owner_id: str,
        muscle_group: str,
        *,
        completed: bool = True,
        when: datetime | None = None,
        stats: dict[str, Any] | None = None,
    ) -> Workout:
        now = to_db_utc(self._clock())
        workout = Workout(
            owner_id=owner_id,
            date=to_db_utc(when) if when is not None else now,
            muscle_group=_clean_muscle_group(muscle_group),
            completed=bool(completed),
            stats_json=json.dumps(_clean_stats(stats)) if stats else None,
            created_at=now,
        )
        with store_call(self.db, "log_workout"):
            if self.db.query(User.id).filter(User.id == owner_id).first() is None:
                raise NotFound(f"User {owner_id} not found")
            self.db.add(workout)
            self.db.commit()
            self.db.refresh(workout)
        logger.info("Workout %s logged for %s (%s)", workout.id, owner_id, workout.muscle_group)
        return workout

    def get_todays_workout(self, owner_id: str, tz_name: str | None = None) -> Workout | None:
        start, end = local_day_bounds(self._clock(), tz_name)
        with store_call(self.db, "get_todays_workout"):
            return (
                self.db.query(Workout)
                .filter(
                    Workout.owner_id == owner_id,
                    Workout.date >= to_db_utc(start),
                    Workout.date <= to_db_utc(end),
                )
                .order_by(Workout.date.desc(), Workout.id.desc())
                .first()
            )

    def log_today(self, owner_id: str, muscle_group: str, tz_name: str | None = None) -> Workout:
        """Create today's workout, or update and complete the one already logged today."""
        existing = self.get_todays_workout(owner_id, tz_name)
        if existing is None:
            return self.log_workout(owner_id, muscle_group, completed=True)
        existing.muscle_group = _clean_muscle_group(muscle_group)
        existing.completed = True
        with store_call(self.db, "log_today"):
            self.db.commit()
            self.db.refresh(existing)
        logger.info("Workout %s updated for %s", existing.id, owner_id)
        return existing

    def save_stat(self, owner_id: str, stat_id: str, value: Any, tz_name: str | None = None) -> Workout:
        stat_key = str(stat_id or "").strip().lower()
        if stat_key not in STAT_LABELS:
            raise ValueError(f"Unknown stat: {stat_id}")
        number = _stat_value(stat_key, value)

        workout = self.get_todays_workout(owner_id, tz_name)
        if workout is None:
            workout = self.log_workout(owner_id, STATS_ONLY_GROUP, completed=False)
        stats = load_stats(workout)
        stats[stat_key] = number
        workout.stats_json = json.dumps(stats)
        with store_call(self.db, "save_stat"):
            self.db.commit()
            self.db.refresh(workout)
        return workout

    def mark_completed(self, owner_id: str, workout_id: str) -> Workout:
        with store_call(self.db, "mark_completed"):
            workout = self._owned(owner_id, workout_id)
            workout.completed = True
            self.db.commit()
            self.db.refresh(workout)
        return workout

    def delete_workout(self, owner_id: str, workout_id: str) -> None:
        with store_call(self.db, "delete_workout"):
            workout = self._owned(owner_id, workout_id)
            self.db.delete(workout)
            self.db.commit()
        logger.info("Workout %s deleted by %s", workout_id, owner_id)

    def list_workouts(
        self,
        owner_id: str,
        *,
        completed_only: bool = False,
        limit: int | None = None,
    ) -> list[Workout]:
        query = self.db.query(Workout).filter(Workout.owner_id == owner_id)
        if completed_only:
            query = query.filter(Workout.completed.is_(True))
        query = query.order_by(Workout.date.desc(), Workout.id.desc())
        if limit:
            query = query.limit(int(limit))
        with store_call(self.db, "list_workouts"):
            return query.all()

    def monthly_calendar(
        self,
        owner: User,
        year: int,
        month: int,
        tz_name: str | None = None,
    ) -> dict[str, Any]:
        """Per-day workout status for one month in the owner's local time.

        ``worked_out`` days have any workout; past days since signup without one
        are ``missed``; today, future days and days before signup are ``none``.
        """
        if not 1 <= int(month) <= 12:
            raise ValueError("month must be between 1 and 12")
        tz = tz_name or owner.timezone
        first = date(int(year), int(month), 1)
        total_days = days_in_month(first.year, first.month)
        range_start = start_of_day(first, tz)
        range_end = start_of_day(first + timedelta(days=total_days), tz)

        with store_call(self.db, "monthly_calendar"):
            rows = (
                self.db.query(Workout.date)
                .filter(
                    Workout.owner_id == owner.id,
                    Workout.date >= to_db_utc(range_start),
                    Workout.date < to_db_utc(range_end),
                )
                .all()
            )
        worked = {local_date(row.date, tz) for row in rows if row.date is not None}
        today = today_for_tz(tz, now=self._clock())
        signup_day = local_date(owner.created_at, tz) if owner.created_at else None

        days = []
        for offset in range(total_days):
            day = first + timedelta(days=offset)
            if day in worked:
                status = "worked_out"
            elif day < today and (signup_day is None or day >= signup_day):
                status = "missed"
            else:
                status = "none"
            days.append({"date": day.isoformat(), "day": day.day, "status": status, "is_today": day == today})

        return {
            "year": first.year,
            "month": first.month,
            # Sunday-first grid offset.
            "leading_blank_days": (first.weekday() + 1) % 7,
            "days": days,
        }
