from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from db.models import CalorieEntry, FriendRequest, User, UserFriend, Workout
from utils.datetime_utils import to_db_utc


# Collection name -> mapped model. Names match the table names so change
# notifications collected from flushed rows line up with subscriptions.
COLLECTIONS = {
    "users": User,
    "user_friends": UserFriend,
    "friend_requests": FriendRequest,
    "workouts": Workout,
    "calorie_entries": CalorieEntry,
}


@dataclass(frozen=True)
class RecordQuery:
    """A store query: membership on one field, optional equality and range filters.

    ``values`` is the bounded id list of a membership filter; callers split
    larger id sets into batches before building queries.
    """

    collection: str
    field: str
    values: tuple[str, ...]
    equals: tuple[tuple[str, Any], ...] = ()
    range_field: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    order_by: str | None = None
    descending: bool = False

    def __post_init__(self) -> None:
        if self.collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {self.collection}")


def _column(model, name: str):
    column = getattr(model, name, None)
    if column is None:
        raise ValueError(f"{model.__tablename__} has no field {name}")
    return column


def run_record_query(db: Session, query: RecordQuery) -> list:
    model = COLLECTIONS[query.collection]
    if not query.values:
        return []
    stmt = db.query(model).filter(_column(model, query.field).in_(list(query.values)))
    for name, value in query.equals:
        stmt = stmt.filter(_column(model, name) == value)
    if query.range_field:
        column = _column(model, query.range_field)
        if query.start is not None:
            stmt = stmt.filter(column >= to_db_utc(query.start))
        if query.end is not None:
            stmt = stmt.filter(column <= to_db_utc(query.end))
    order_column = _column(model, query.order_by or query.range_field or "id")
    stmt = stmt.order_by(order_column.desc() if query.descending else order_column.asc(), model.id.asc())
    return stmt.all()
