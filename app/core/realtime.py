"""In-process change feed for database tables.

Publishers announce mutations of a table after commit; subscribers get a
``ChangeEvent``. Publishing may happen from threadpool threads (sync route
handlers, scheduler jobs) so coroutine callbacks are handed back to the
event loop they subscribed from.
"""

import asyncio
import inspect
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, NamedTuple, Optional

logger = logging.getLogger(__name__)

MAINTENANCE_TABLE = "maintenance_settings"


class ChangeEvent(NamedTuple):
    table: str
    event_type: str  #INSERT, UPDATE or DELETE
    record: Dict[str, Any]
    commit_timestamp: datetime


class Subscription:
    """Handle returned by ``ChangeFeed.subscribe``; release it on teardown"""

    def __init__(self, feed: Optional["ChangeFeed"], table: str, callback: Callable, loop=None):
        self._feed = feed
        self.table = table
        self.callback = callback
        self.loop = loop

    @property
    def active(self) -> bool:
        return self._feed is not None

    def unsubscribe(self) -> None:
        feed, self._feed = self._feed, None
        if feed is not None:
            feed._remove(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.unsubscribe()
        return False


class ChangeFeed:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, table: str, callback: Callable) -> Subscription:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if inspect.iscoroutinefunction(callback) and loop is None:
            raise RuntimeError(f"Async subscriber to '{table}' needs a running event loop")

        subscription = Subscription(self, table, callback, loop)
        with self._lock:
            self._subscriptions.setdefault(table, []).append(subscription)
        logger.debug(f"Subscribed to changes on {table}")
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.table, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
        logger.debug(f"Unsubscribed from changes on {subscription.table}")

    def subscriber_count(self, table: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(table, []))

    def _prepare(self, table: str, event_type: str, record: Optional[Dict[str, Any]]):
        event = ChangeEvent(
            table=table,
            event_type=event_type,
            record=dict(record or {}),
            commit_timestamp=datetime.now(timezone.utc),
        )
        with self._lock:
            subscribers = list(self._subscriptions.get(table, []))

        logger.info(f"Change on {table}: {event_type} ({len(subscribers)} subscribers)")
        return event, subscribers

    def publish(self, table: str, event_type: str, record: Optional[Dict[str, Any]] = None) -> ChangeEvent:
        event, subscribers = self._prepare(table, event_type, record)
        for subscription in subscribers:
            self._deliver(subscription, event)
        return event

    async def apublish(self, table: str, event_type: str, record: Optional[Dict[str, Any]] = None) -> ChangeEvent:
        """Like publish, but waits for subscribers living on the current loop"""
        event, subscribers = self._prepare(table, event_type, record)
        loop = asyncio.get_running_loop()

        for subscription in subscribers:
            if subscription.loop is loop and inspect.iscoroutinefunction(subscription.callback):
                try:
                    await subscription.callback(event)
                except Exception as e:
                    logger.error(f"Subscriber to {table} failed: {e}")
            else:
                self._deliver(subscription, event)
        return event

    def _deliver(self, subscription: Subscription, event: ChangeEvent) -> None:
        callback = subscription.callback
        try:
            if inspect.iscoroutinefunction(callback):
                if subscription.loop.is_closed():
                    logger.warning(f"Dropping {event.table} change for subscriber on a closed loop")
                    return
                future = asyncio.run_coroutine_threadsafe(callback(event), subscription.loop)
                future.add_done_callback(lambda f: _log_failure(f, event.table))
            else:
                callback(event)
        except Exception as e:
            logger.error(f"Subscriber to {event.table} failed: {e}")

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()


def _log_failure(future, table: str) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error(f"Subscriber to {table} failed: {exc}")


#global instance
change_feed = ChangeFeed()


def serialize_record(record: Any) -> Dict[str, Any]:
    """Column values of an ORM row, as carried in a ChangeEvent"""
    return {column.name: getattr(record, column.name) for column in record.__table__.columns}
