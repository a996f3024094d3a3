from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Callable, Iterable

from sqlalchemy.orm import Session

from db.models import CalorieEntry, User
from services.errors import NotFound, store_call
from utils.datetime_utils import local_day_bounds, to_db_utc, utcnow

logger = logging.getLogger(__name__)

MACRO_FIELDS = ("protein_g", "carbs_g", "fat_g")


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError("Please enter a valid positive number")
    if amount <= 0:
        raise ValueError("Please enter a valid positive number")
    return amount


def _validate_macro(name: str, value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number")
    if math.isnan(number) or math.isinf(number) or number < 0:
        raise ValueError(f"{name} must be zero or more")
    return number


def summarize_entries(entries: Iterable[CalorieEntry]) -> dict[str, Any]:
    """Total calories, entry count and rounded macro totals for a set of entries."""
    entries = list(entries)
    summary: dict[str, Any] = {
        "total_calories": sum(int(e.amount or 0) for e in entries),
        "entry_count": len(entries),
    }
    for field in MACRO_FIELDS:
        summary[field] = round(sum(float(getattr(e, field) or 0) for e in entries), 1)
    return summary


class CalorieLog:
    def __init__(
        self,
        db: Session,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self._clock = clock

    def add_entry(
        self,
        owner_id: str,
        amount: int,
        *,
        description: str | None = None,
        protein_g: float | None = None,
        carbs_g: float | None = None,
        fat_g: float | None = None,
        when: datetime | None = None,
    ) -> CalorieEntry:
        macros = {
            "protein_g": _validate_macro("protein_g", protein_g),
            "carbs_g": _validate_macro("carbs_g", carbs_g),
            "fat_g": _validate_macro("fat_g", fat_g),
        }
        now = to_db_utc(self._clock())
        entry = CalorieEntry(
            owner_id=owner_id,
            date=to_db_utc(when) if when is not None else now,
            amount=_validate_amount(amount),
            description=(description or "").strip() or None,
            created_at=now,
            **macros,
        )
        with store_call(self.db, "add_calorie_entry"):
            if self.db.query(User.id).filter(User.id == owner_id).first() is None:
                raise NotFound(f"User {owner_id} not found")
            self.db.add(entry)
            self.db.commit()
            self.db.refresh(entry)
        logger.info("Calorie entry %s (%d kcal) added for %s", entry.id, entry.amount, owner_id)
        return entry

    def todays_entries(self, owner_id: str, tz_name: str | None = None) -> list[CalorieEntry]:
        start, end = local_day_bounds(self._clock(), tz_name)
        with store_call(self.db, "todays_calorie_entries"):
            return (
                self.db.query(CalorieEntry)
                .filter(
                    CalorieEntry.owner_id == owner_id,
                    CalorieEntry.date >= to_db_utc(start),
                    CalorieEntry.date <= to_db_utc(end),
                )
                .order_by(CalorieEntry.date.asc(), CalorieEntry.id.asc())
                .all()
            )

    def day_summary(self, owner_id: str, tz_name: str | None = None) -> dict[str, Any]:
        return summarize_entries(self.todays_entries(owner_id, tz_name))

    def delete_entry(self, owner_id: str, entry_id: str) -> None:
        with store_call(self.db, "delete_calorie_entry"):
            entry = (
                self.db.query(CalorieEntry)
                .filter(CalorieEntry.id == entry_id, CalorieEntry.owner_id == owner_id)
                .first()
            )
            if entry is None:
                raise NotFound(f"Calorie entry {entry_id} not found")
            self.db.delete(entry)
            self.db.commit()

