"""
Store-independent change subscriptions.

``subscribe(query, on_snapshot, on_error)`` delivers the full matching set
soon after subscribing and again after every committed write that touches the
query's collection. Deliveries may be asynchronous and coalesced. Each
delivery is a complete snapshot; consumers keep the latest one.

The SQL implementation learns about writes from SQLAlchemy session events
(``install_change_tracking``), so any code path that commits through the
tracked ``sessionmaker`` notifies subscribers.
"""
from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable, Iterable, Protocol

from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker

from db.queries import RecordQuery, run_record_query
from services.errors import TransientError, store_call

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[list], None]
ErrorCallback = Callable[[Exception], None]

_CHANGED_KEY = "gymbros_changed_collections"


class Subscription:
    """Handle returned by ``subscribe``; ``cancel()`` is idempotent."""

    def __init__(self, cancel: Callable[[], None] | None = None) -> None:
        self._cancel = cancel
        self._lock = threading.Lock()
        self.active = True

    def cancel(self) -> None:
        with self._lock:
            if not self.active:
                return
            self.active = False
            cancel, self._cancel = self._cancel, None
        if cancel is not None:
            cancel()


class SnapshotSource(Protocol):
    def subscribe(
        self,
        query: RecordQuery,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        ...


class ChangeHub:
    """In-process fan-out of committed collection changes."""

    def __init__(self) -> None:
        self._listeners: dict[str, dict[int, Callable[[str], None]]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def listen(self, collection: str, callback: Callable[[str], None]) -> Callable[[], None]:
        token = next(self._ids)
        with self._lock:
            self._listeners.setdefault(collection, {})[token] = callback

        def unlisten() -> None:
            with self._lock:
                self._listeners.get(collection, {}).pop(token, None)

        return unlisten

    def listener_count(self, collection: str | None = None) -> int:
        with self._lock:
            if collection is not None:
                return len(self._listeners.get(collection, {}))
            return sum(len(group) for group in self._listeners.values())

    def publish(self, collections: Iterable[str]) -> None:
        for collection in sorted(set(collections)):
            with self._lock:
                callbacks = list(self._listeners.get(collection, {}).values())
            for callback in callbacks:
                try:
                    callback(collection)
                except Exception:
                    # One broken subscriber must not starve the others.
                    logger.exception("Change listener for %s failed", collection)


def install_change_tracking(session_factory: sessionmaker, hub: ChangeHub) -> None:
    """Publish the collections touched by each committed session to ``hub``."""

    def _changed(session: Session) -> set[str]:
        return session.info.setdefault(_CHANGED_KEY, set())

    @event.listens_for(session_factory, "after_flush")
    def _collect_flushed(session, flush_context):
        changed = _changed(session)
        for obj in itertools.chain(session.new, session.dirty, session.deleted):
            table = getattr(obj, "__tablename__", None)
            if table:
                changed.add(table)

    @event.listens_for(session_factory, "do_orm_execute")
    def _collect_bulk(orm_execute_state):
        if not (orm_execute_state.is_update or orm_execute_state.is_delete):
            return
        table = getattr(orm_execute_state.statement, "table", None)
        if table is not None:
            _changed(orm_execute_state.session).add(table.name)

    @event.listens_for(session_factory, "after_commit")
    def _publish(session):
        changed = session.info.pop(_CHANGED_KEY, None)
        if changed:
            hub.publish(changed)

    @event.listens_for(session_factory, "after_rollback")
    def _discard(session):
        session.info.pop(_CHANGED_KEY, None)


class _Refresher:
    """Coalescing, serial re-query for one subscription.

    ``request()`` only marks the subscription dirty and schedules a drain on
    the executor, so committing threads never run subscriber queries. At most
    one drain runs per subscription; notifications arriving during a fetch
    cause exactly one more fetch, which starts after them. Snapshots are
    therefore delivered in fetch order and the last one reflects the last
    commit.
    """

    def __init__(
        self,
        source: SqlSnapshotSource,
        query: RecordQuery,
        subscription: Subscription,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None,
    ) -> None:
        self._source = source
        self._query = query
        self._subscription = subscription
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._lock = threading.Lock()
        self._dirty = False
        self._running = False

    def request(self, _collection: str | None = None) -> None:
        with self._lock:
            if not self._subscription.active:
                return
            self._dirty = True
            if self._running:
                return
            self._running = True
        self._source._executor.submit(self._drain)

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._dirty or not self._subscription.active:
                    self._running = False
                    return
                self._dirty = False
            try:
                self._refresh()
            except Exception:
                # Keep draining; a broken callback must not wedge the subscription.
                logger.exception("Snapshot delivery for %s failed", self._query.collection)

    def _refresh(self) -> None:
        try:
            rows = self._source.fetch(self._query)
        except TransientError as exc:
            if self._on_error is not None:
                self._on_error(exc)
            else:
                logger.warning("Snapshot for %s failed: %s", self._query.collection, exc)
            return
        if self._subscription.active:
            self._on_snapshot(rows)


class SqlSnapshotSource:
    """``SnapshotSource`` over a SQLAlchemy ``sessionmaker`` and a ``ChangeHub``.

    Snapshots are fetched and delivered on ``executor`` (a private thread pool
    by default), never on the thread that committed the change.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        hub: ChangeHub,
        *,
        executor: Executor | None = None,
        max_workers: int = 4,
    ) -> None:
        self._session_factory = session_factory
        self._hub = hub
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="snapshot"
        )

    def fetch(self, query: RecordQuery) -> list:
        db = self._session_factory()
        try:
            with store_call(db, f"snapshot:{query.collection}"):
                rows = run_record_query(db, query)
            db.expunge_all()
            return rows
        finally:
            db.close()

    def subscribe(
        self,
        query: RecordQuery,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        subscription = Subscription()
        refresher = _Refresher(self, query, subscription, on_snapshot, on_error)
        subscription._cancel = self._hub.listen(query.collection, refresher.request)
        refresher.request()
        return subscription

    def close(self, wait: bool = True) -> None:
        """Stop the private executor; pending snapshots finish when ``wait``."""
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
