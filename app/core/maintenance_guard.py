"""Enforcement of the maintenance gate.

``MaintenanceGuard`` is mounted once per process (see the app lifespan) and
answers gate checks synchronously from the cached configuration.
``NavigationSession`` is the per-client view used by navigation WebSockets:
it remembers the current path and verdict and re-decides when the settings
change.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from app.core.maintenance_policy import (
    Actor,
    FALLBACK_CONFIG,
    GateEvaluation,
    GateVerdict,
    MaintenanceConfig,
    evaluate,
    is_active,
    is_blocked,
    utcnow,
)
from app.core.maintenance_state import MaintenanceSettingsStore, maintenance_store
from app.core.realtime import Subscription

logger = logging.getLogger(__name__)


class GuardState(str, Enum):
    LOADING = "loading"
    READY = "ready"


class MaintenanceGuard:
    def __init__(self, store: Optional[MaintenanceSettingsStore] = None, clock: Callable[[], datetime] = utcnow):
        self.store = store or maintenance_store
        self.clock = clock
        self.state = GuardState.LOADING
        self._config: Optional[MaintenanceConfig] = None
        self._subscription: Optional[Subscription] = None
        self._listeners: List[Callable[[MaintenanceConfig], None]] = []
        self._ready = asyncio.Event()

    @property
    def config(self) -> Optional[MaintenanceConfig]:
        return self._config

    async def mount(self) -> None:
        self.state = GuardState.LOADING
        try:
            config = await self.store.load()
        except Exception as e:
            logger.error(f"Maintenance settings unavailable on mount, gate stays open: {e}")
            config = FALLBACK_CONFIG
        self._apply(config)
        self._subscription = self.store.subscribe(self._on_settings_changed)

    async def wait_ready(self) -> None:
        await self._ready.wait()

    def _apply(self, config: MaintenanceConfig) -> None:
        self._config = config
        self.state = GuardState.READY
        self._ready.set()
        logger.info(f"Maintenance gate ready, window active: {is_active(config, self.clock())}")

    def _on_settings_changed(self, config: MaintenanceConfig) -> None:
        self._apply(config)
        for listener in list(self._listeners):
            try:
                listener(config)
            except Exception as e:
                logger.error(f"Maintenance listener failed: {e}")

    def check(self, path: str, actor: Actor, now: Optional[datetime] = None) -> Optional[GateEvaluation]:
        """Gate decision for ``path``; ``None`` while the settings are still loading"""
        if self._config is None:
            return None
        return evaluate(self._config, path, actor, now or self.clock())

    def add_listener(self, listener: Callable[[MaintenanceConfig], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def dispose(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        self._listeners = []
        self._config = None
        self.state = GuardState.LOADING
        self._ready.clear()


class NavigationSession:
    """Gate state of one client: LOADING, then READY with ALLOW or SHOW_NOTICE"""

    def __init__(self, guard: MaintenanceGuard, actor: Actor, on_change: Optional[Callable[["NavigationSession"], None]] = None):
        self.guard = guard
        self.actor = actor
        self.path: Optional[str] = None
        self.evaluation: Optional[GateEvaluation] = None
        self._on_change = on_change
        self._remove_listener = guard.add_listener(self._settings_changed)

    @property
    def state(self) -> GuardState:
        if self.evaluation is None:
            return GuardState.LOADING
        return GuardState.READY

    @property
    def verdict(self) -> Optional[GateVerdict]:
        return self.evaluation.verdict if self.evaluation else None

    def navigate(self, path: str) -> Optional[GateVerdict]:
        self.path = path
        self.evaluation = self.guard.check(path, self.actor)
        if self.evaluation is None and not is_blocked(path):
            #unblocked routes never need the settings to be decided
            self.evaluation = GateEvaluation(path=path, active=False, blocked=False, bypass=False, verdict=GateVerdict.ALLOW)
        return self.verdict

    def refresh(self) -> bool:
        """Re-decide the current path; True when the verdict changed"""
        if self.path is None:
            return False
        previous = self.verdict
        self.navigate(self.path)
        return self.verdict != previous

    def _settings_changed(self, config: MaintenanceConfig) -> None:
        if self.refresh():
            logger.info(f"Verdict for {self.path} changed to {self.verdict.value}")
            if self._on_change is not None:
                self._on_change(self)

    def close(self) -> None:
        self._remove_listener()
        self._on_change = None
