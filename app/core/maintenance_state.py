"""Maintenance settings store.

Process-wide cache of the singleton maintenance settings record. Concurrent
``load()`` calls share one in-flight fetch, failures fall back to
"maintenance disabled", and change notifications invalidate and reload the
cache before subscribers are told about the new configuration.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, List, Optional

from starlette.concurrency import run_in_threadpool

from app.core.config import settings
from app.core.maintenance_policy import FALLBACK_CONFIG, MaintenanceConfig
from app.core.realtime import MAINTENANCE_TABLE, ChangeEvent, ChangeFeed, Subscription, change_feed

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Optional[MaintenanceConfig]]]


async def fetch_from_database() -> Optional[MaintenanceConfig]:
    """Read the singleton record; ``None`` when it does not exist"""
    from app import crud, database

    def _read():
        db = database.SessionLocal()
        try:
            record = crud.get_maintenance_settings(db)
            return MaintenanceConfig.from_record(record) if record else None
        finally:
            db.close()

    return await run_in_threadpool(_read)


class MaintenanceSettingsStore:
    """Cached, coalescing access to the maintenance configuration"""

    def __init__(self, fetcher: Optional[Fetcher] = None, feed: Optional[ChangeFeed] = None, timeout: Optional[float] = None):
        self._fetcher = fetcher or fetch_from_database
        self._feed = feed or change_feed
        self._timeout = timeout
        self._cached: Optional[MaintenanceConfig] = None
        self._inflight: Optional[asyncio.Future] = None
        #bumped by invalidate() so a fetch started before it cannot repopulate the cache
        self._generation = 0
        self._reload_lock: Optional[asyncio.Lock] = None
        self._subscriptions: List[Subscription] = []

    def init(self, fetcher: Optional[Fetcher] = None, feed: Optional[ChangeFeed] = None, timeout: Optional[float] = None):
        self.dispose()
        self._fetcher = fetcher or fetch_from_database
        self._feed = feed or change_feed
        self._timeout = timeout if timeout is not None else settings.MAINTENANCE_FETCH_TIMEOUT
        return self

    @property
    def cached(self) -> Optional[MaintenanceConfig]:
        return self._cached

    async def load(self) -> MaintenanceConfig:
        if self._cached is not None:
            return self._cached

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._fetch(self._generation))

        #shield: a cancelled caller must not cancel the fetch other callers share
        return await asyncio.shield(self._inflight)

    async def _fetch(self, generation: int) -> MaintenanceConfig:
        try:
            logger.info("Loading maintenance settings...")
            config = await asyncio.wait_for(self._fetcher(), timeout=self._timeout)
            if config is None:
                logger.warning("No maintenance settings found, using fallback (disabled)")
                config = FALLBACK_CONFIG
            else:
                logger.info(f"Maintenance settings loaded: enabled={config.enabled} start={config.window_start} end={config.window_end}")
        except asyncio.TimeoutError:
            logger.warning(f"Loading maintenance settings timed out after {self._timeout}s, using fallback (disabled)")
            config = FALLBACK_CONFIG
        except Exception as e:
            logger.warning(f"Failed to load maintenance settings, using fallback (disabled): {e}")
            config = FALLBACK_CONFIG

        if generation == self._generation:
            self._cached = config
            self._inflight = None
        return config

    def invalidate(self) -> None:
        self._generation += 1
        self._cached = None
        self._inflight = None

    def subscribe(self, on_change: Callable[[MaintenanceConfig], object]) -> Subscription:
        """Reload on every change of the settings table, then call ``on_change``"""

        async def handle_change(event: ChangeEvent):
            if self._reload_lock is None:
                self._reload_lock = asyncio.Lock()

            async with self._reload_lock:
                logger.info(f"Maintenance settings changed ({event.event_type}), reloading")
                self.invalidate()
                config = await self.load()
                result = on_change(config)
                if inspect.isawaitable(result):
                    await result

        try:
            subscription = self._feed.subscribe(MAINTENANCE_TABLE, handle_change)
        except Exception as e:
            logger.error(f"Could not subscribe to maintenance settings changes, keeping last known settings: {e}")
            return Subscription(None, MAINTENANCE_TABLE, handle_change)

        self._subscriptions.append(subscription)
        return subscription

    def dispose(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        self._reload_lock = None
        self.invalidate()


#global instance
maintenance_store = MaintenanceSettingsStore()
