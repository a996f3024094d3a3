from __future__ import annotations

import logging
import threading
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Iterable

from sqlalchemy.orm import Session

from config import settings
from db.queries import RecordQuery, run_record_query
from services.change_feed import ErrorCallback, SnapshotSource, Subscription
from services.errors import store_call
from utils.batching import chunked, unique_in_order
from utils.datetime_utils import as_utc, local_day_bounds, utcnow

logger = logging.getLogger(__name__)

FEED_COLLECTIONS = ("users", "workouts", "calorie_entries")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class FeedEntry:
    friend_id: str
    display_name: str
    friend_code: str
    profile_image_url: str | None
    worked_out_today: bool
    total_calories: int
    muscle_groups: list[str] = field(default_factory=list)
    last_workout_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "friend_id": self.friend_id,
            "display_name": self.display_name,
            "friend_code": self.friend_code,
            "profile_image_url": self.profile_image_url,
            "worked_out_today": self.worked_out_today,
            "total_calories": self.total_calories,
            "muscle_groups": list(self.muscle_groups),
            "last_workout_at": self.last_workout_at.isoformat() if self.last_workout_at else None,
        }


def display_name_sort_key(name: str | None, user_id: str) -> tuple[str, str, str]:
    """Collation for inactive friends.

    Compatibility-decomposed, casefolded name first. Names differing only in
    case or accents are then ordered by code point with case swapped, so
    lowercase sorts first ("bob" before "Bob"). The user id makes the order
    total.
    """
    raw = name or ""
    return unicodedata.normalize("NFKD", raw).casefold(), raw.swapcase(), user_id


def _chronological_key(workout):
    if workout.date is None:
        return (1, _EPOCH, str(workout.id or ""))
    return (0, as_utc(workout.date), str(workout.id or ""))


def _feed_sort_key(entry: FeedEntry):
    name_key = display_name_sort_key(entry.display_name, entry.friend_id)
    if entry.worked_out_today:
        if entry.last_workout_at is None:
            return (0, 1, 0.0, name_key)
        return (0, 0, -entry.last_workout_at.timestamp(), name_key)
    return (1, 0, 0.0, name_key)


def aggregate_feed(users: Iterable, workouts: Iterable, calorie_entries: Iterable) -> list[FeedEntry]:
    """Turn one day's raw records into the ranked feed.

    ``users`` are the friends to report on; workout and calorie records are
    assumed to be already limited to the day. Records owned by anyone not in
    ``users`` are ignored. Any workout record for the day counts as activity,
    whether or not it is marked completed.
    """
    friends: dict[str, Any] = {}
    for user in users:
        friends.setdefault(str(user.id), user)

    by_owner: dict[str, list] = {friend_id: [] for friend_id in friends}
    for workout in workouts:
        owner_id = str(workout.owner_id)
        if owner_id in by_owner:
            by_owner[owner_id].append(workout)

    calories: dict[str, int] = {friend_id: 0 for friend_id in friends}
    for entry in calorie_entries:
        owner_id = str(entry.owner_id)
        if owner_id in calories:
            calories[owner_id] += int(entry.amount or 0)

    entries: list[FeedEntry] = []
    for friend_id, user in friends.items():
        records = sorted(by_owner[friend_id], key=_chronological_key)
        muscle_groups = unique_in_order(
            str(w.muscle_group).strip()
            for w in records
            if w.muscle_group and str(w.muscle_group).strip()
        )
        timestamps = [as_utc(w.date) for w in records if w.date is not None]
        entries.append(
            FeedEntry(
                friend_id=friend_id,
                display_name=user.display_name,
                friend_code=user.friend_code,
                profile_image_url=user.profile_image_url,
                worked_out_today=bool(records),
                total_calories=calories[friend_id],
                muscle_groups=muscle_groups,
                last_workout_at=max(timestamps) if timestamps else None,
            )
        )

    entries.sort(key=_feed_sort_key)
    return entries


def feed_queries(batch: list[str], start: datetime, end: datetime) -> dict[str, RecordQuery]:
    ids = tuple(batch)
    return {
        "users": RecordQuery(collection="users", field="id", values=ids),
        "workouts": RecordQuery(
            collection="workouts",
            field="owner_id",
            values=ids,
            range_field="date",
            start=start,
            end=end,
        ),
        "calorie_entries": RecordQuery(
            collection="calorie_entries",
            field="owner_id",
            values=ids,
            range_field="date",
            start=start,
            end=end,
        ),
    }


class DailyActivityAggregator:
    def __init__(
        self,
        db: Session,
        *,
        batch_size: int | None = None,
        tz_name: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.batch_size = int(batch_size or settings.FRIEND_QUERY_BATCH_SIZE)
        self.tz_name = tz_name or settings.DEFAULT_TIMEZONE
        self._clock = clock

    def day_bounds(self, as_of: datetime | None = None, tz_name: str | None = None) -> tuple[datetime, datetime]:
        return local_day_bounds(as_of or self._clock(), tz_name or self.tz_name)

    def build_feed(
        self,
        friend_ids: Iterable[str],
        as_of: datetime | None = None,
        tz_name: str | None = None,
    ) -> list[FeedEntry]:
        ids = unique_in_order(str(friend_id) for friend_id in friend_ids)
        if not ids:
            return []
        start, end = self.day_bounds(as_of, tz_name)

        fetched: dict[str, list] = {collection: [] for collection in FEED_COLLECTIONS}
        batches = chunked(ids, self.batch_size)
        with store_call(self.db, "build_feed"):
            for batch in batches:
                for collection, query in feed_queries(batch, start, end).items():
                    fetched[collection].extend(run_record_query(self.db, query))

        missing = len(ids) - len(fetched["users"])
        if missing:
            logger.debug("Feed skipped %d friend ids with no user record", missing)
        logger.debug("Built feed for %d friends in %d batches", len(ids), len(batches))
        return aggregate_feed(fetched["users"], fetched["workouts"], fetched["calorie_entries"])


class FeedSubscription:
    """Live feed over one subscription per (batch, collection).

    Snapshots are stored by batch index, so a slow batch never overwrites a
    fast one and the merged result does not depend on arrival order. The first
    feed is emitted once every batch has reported all three collections.

    Snapshots may arrive on several threads. Merging and emitting happen under
    one lock, so feeds reach ``on_feed`` in the order their snapshots were
    stored and the last feed delivered always reflects the newest snapshots.
    """

    def __init__(
        self,
        source: SnapshotSource,
        friend_ids: Iterable[str],
        on_feed: Callable[[list[FeedEntry]], None],
        *,
        start: datetime,
        end: datetime,
        batch_size: int | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self._on_feed = on_feed
        # Re-entrant: on_feed may trigger a write that reports back on this thread.
        self._lock = threading.RLock()
        self._cancelled = False
        ids = unique_in_order(str(friend_id) for friend_id in friend_ids)
        self._batches = chunked(ids, int(batch_size or settings.FRIEND_QUERY_BATCH_SIZE)) if ids else []
        self._snapshots: dict[str, dict[int, list]] = {collection: {} for collection in FEED_COLLECTIONS}
        self._subscriptions: list[Subscription] = []

        if not self._batches:
            on_feed([])
            return

        for index, batch in enumerate(self._batches):
            for collection, query in feed_queries(batch, start, end).items():
                self._subscriptions.append(
                    source.subscribe(query, partial(self._on_snapshot, collection, index), on_error)
                )

    @property
    def batch_count(self) -> int:
        return len(self._batches)

    def _ready(self) -> bool:
        expected = len(self._batches)
        return all(len(self._snapshots[collection]) == expected for collection in FEED_COLLECTIONS)

    def _merged(self, collection: str) -> list:
        per_batch = self._snapshots[collection]
        return [row for index in sorted(per_batch) for row in per_batch[index]]

    def _on_snapshot(self, collection: str, index: int, rows: list) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._snapshots[collection][index] = list(rows)
            if not self._ready():
                return
            feed = aggregate_feed(
                self._merged("users"),
                self._merged("workouts"),
                self._merged("calorie_entries"),
            )
            self._on_feed(feed)

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.cancel()


def subscribe_daily_feed(
    source: SnapshotSource,
    friend_ids: Iterable[str],
    on_feed: Callable[[list[FeedEntry]], None],
    *,
    as_of: datetime | None = None,
    tz_name: str | None = None,
    batch_size: int | None = None,
    on_error: ErrorCallback | None = None,
) -> FeedSubscription:
    """Subscribe to the feed for the local day containing ``as_of``.

    The day window is fixed when subscribing; re-subscribe after midnight.
    """
    start, end = local_day_bounds(as_of or utcnow(), tz_name or settings.DEFAULT_TIMEZONE)
    return FeedSubscription(
        source,
        friend_ids,
        on_feed,
        start=start,
        end=end,
        batch_size=batch_size,
        on_error=on_error,
    )
