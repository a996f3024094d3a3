from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base  # noqa: E402
from db.models import CalorieEntry, User, Workout  # noqa: E402
from services.calorie_service import CalorieLog, summarize_entries  # noqa: E402
from services.errors import NotFound  # noqa: E402
from services.workout_service import STATS_ONLY_GROUP, WorkoutLog, load_stats  # noqa: E402

NOW = datetime(2024, 5, 15, 18, 30, tzinfo=timezone.utc)


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _new_user(db, user_id="lifter", tz="UTC", created_at=datetime(2024, 5, 3, 10, 0), friend_code="1234") -> User:
    user = User(
        id=user_id,
        display_name="Lifter",
        friend_code=friend_code,
        timezone=tz,
        is_active=True,
        created_at=created_at,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


# ─── Workouts ───


def test_log_today_creates_then_updates_single_record():
    db = _new_db()
    user = _new_user(db)
    log = WorkoutLog(db, clock=lambda: NOW)

    first = log.log_today(user.id, "Chest", user.timezone)
    second = log.log_today(user.id, "Back", user.timezone)

    assert first.id == second.id
    assert second.muscle_group == "Back"
    assert second.completed is True
    assert db.query(Workout).count() == 1


def test_save_stat_without_workout_creates_stats_only_record():
    db = _new_db()
    user = _new_user(db)
    log = WorkoutLog(db, clock=lambda: NOW)

    workout = log.save_stat(user.id, "cardio", "25", user.timezone)

    assert workout.muscle_group == STATS_ONLY_GROUP
    assert workout.completed is False
    assert load_stats(workout) == {"cardio": 25.0}

    log.save_stat(user.id, "weight", 185.5, user.timezone)
    today = log.get_todays_workout(user.id, user.timezone)
    assert load_stats(today) == {"cardio": 25.0, "weight": 185.5}


@pytest.mark.parametrize("stat_id,value", [("unknown", 1), ("reps", -3), ("reps", "lots"), ("reps", True)])
def test_save_stat_rejects_bad_input(stat_id, value):
    db = _new_db()
    user = _new_user(db)
    with pytest.raises(ValueError):
        WorkoutLog(db, clock=lambda: NOW).save_stat(user.id, stat_id, value)


def test_log_workout_requires_existing_user_and_muscle_group():
    db = _new_db()
    log = WorkoutLog(db, clock=lambda: NOW)
    with pytest.raises(NotFound):
        log.log_workout("ghost", "Chest")

    user = _new_user(db)
    with pytest.raises(ValueError):
        log.log_workout(user.id, "   ")


def test_mark_completed_and_delete_are_owner_scoped():
    db = _new_db()
    owner = _new_user(db, "owner")
    other = _new_user(db, "other", friend_code="5678")
    log = WorkoutLog(db, clock=lambda: NOW)
    workout = log.log_workout(owner.id, "Legs", completed=False, stats={"reps": 40})

    assert json.loads(workout.stats_json) == {"reps": 40.0}
    with pytest.raises(NotFound):
        log.mark_completed(other.id, workout.id)
    assert log.mark_completed(owner.id, workout.id).completed is True

    with pytest.raises(NotFound):
        log.delete_workout(other.id, workout.id)
    log.delete_workout(owner.id, workout.id)
    assert log.list_workouts(owner.id) == []


def test_list_workouts_newest_first_with_filter():
    db = _new_db()
    user = _new_user(db)
    log = WorkoutLog(db, clock=lambda: NOW)
    log.log_workout(user.id, "Chest", when=datetime(2024, 5, 10, 9, tzinfo=timezone.utc))
    log.log_workout(user.id, "Back", completed=False, when=datetime(2024, 5, 11, 9, tzinfo=timezone.utc))
    log.log_workout(user.id, "Legs", when=datetime(2024, 5, 12, 9, tzinfo=timezone.utc))

    assert [w.muscle_group for w in log.list_workouts(user.id)] == ["Legs", "Back", "Chest"]
    assert [w.muscle_group for w in log.list_workouts(user.id, completed_only=True, limit=1)] == ["Legs"]


def test_monthly_calendar_marks_worked_missed_and_none():
    db = _new_db()
    user = _new_user(db, created_at=datetime(2024, 5, 3, 10, 0))
    log = WorkoutLog(db, clock=lambda: NOW)
    log.log_workout(user.id, "Chest", when=datetime(2024, 5, 6, 12, tzinfo=timezone.utc))
    log.log_workout(user.id, "Legs", when=datetime(2024, 5, 15, 7, tzinfo=timezone.utc))

    calendar = log.monthly_calendar(user, 2024, 5)
    by_day = {d["day"]: d for d in calendar["days"]}

    assert calendar["leading_blank_days"] == 3  # May 1st 2024 is a Wednesday
    assert len(calendar["days"]) == 31
    assert by_day[2]["status"] == "none"  # before signup
    assert by_day[3]["status"] == "missed"
    assert by_day[6]["status"] == "worked_out"
    assert by_day[15]["status"] == "worked_out" and by_day[15]["is_today"] is True
    assert by_day[20]["status"] == "none"


def test_monthly_calendar_buckets_by_owner_timezone():
    db = _new_db()
    user = _new_user(db, tz="America/Edmonton", created_at=datetime(2024, 4, 1))
    log = WorkoutLog(db, clock=lambda: NOW)
    # 02:00 UTC on June 1st is May 31st evening in Edmonton.
    log.log_workout(user.id, "Back", when=datetime(2024, 6, 1, 2, tzinfo=timezone.utc))

    may = log.monthly_calendar(user, 2024, 5)
    june = log.monthly_calendar(user, 2024, 6)

    assert may["days"][30]["status"] == "worked_out"
    assert june["days"][0]["status"] == "none"


def test_monthly_calendar_rejects_bad_month():
    db = _new_db()
    user = _new_user(db)
    with pytest.raises(ValueError):
        WorkoutLog(db).monthly_calendar(user, 2024, 13)


# ─── Calories ───


def test_day_summary_totals_todays_entries_only():
    db = _new_db()
    user = _new_user(db)
    log = CalorieLog(db, clock=lambda: NOW)
    log.add_entry(user.id, 450, description="Breakfast", protein_g=30, carbs_g=40.5, fat_g=12)
    log.add_entry(user.id, 700, protein_g=45.25)
    log.add_entry(user.id, 900, when=datetime(2024, 5, 14, 20, tzinfo=timezone.utc))

    summary = log.day_summary(user.id, user.timezone)

    assert summary["total_calories"] == 1150
    assert summary["entry_count"] == 2
    assert summary["protein_g"] == 75.2
    assert summary["carbs_g"] == 40.5
    assert summary["fat_g"] == 12.0


@pytest.mark.parametrize("amount", [0, -50, 12.5, "300", True])
def test_add_entry_rejects_invalid_amounts(amount):
    db = _new_db()
    user = _new_user(db)
    with pytest.raises(ValueError):
        CalorieLog(db, clock=lambda: NOW).add_entry(user.id, amount)


def test_add_entry_rejects_negative_macros():
    db = _new_db()
    user = _new_user(db)
    with pytest.raises(ValueError):
        CalorieLog(db, clock=lambda: NOW).add_entry(user.id, 200, fat_g=-1)


def test_delete_entry_is_owner_scoped():
    db = _new_db()
    owner = _new_user(db, "owner")
    other = _new_user(db, "other", friend_code="5678")
    log = CalorieLog(db, clock=lambda: NOW)
    entry = log.add_entry(owner.id, 320)

    with pytest.raises(NotFound):
        log.delete_entry(other.id, entry.id)
    log.delete_entry(owner.id, entry.id)
    assert log.todays_entries(owner.id) == []


def test_summarize_entries_handles_missing_macros_and_empty_input():
    entries = [
        CalorieEntry(amount=300, protein_g=10.04),
        CalorieEntry(amount=250, carbs_g=33.33, fat_g=None),
    ]

    assert summarize_entries(entries) == {
        "total_calories": 550,
        "entry_count": 2,
        "protein_g": 10.0,
        "carbs_g": 33.3,
        "fat_g": 0.0,
    }
    assert summarize_entries([]) == {
        "total_calories": 0,
        "entry_count": 0,
        "protein_g": 0,
        "carbs_g": 0,
        "fat_g": 0,
    }
