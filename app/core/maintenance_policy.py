"""Maintenance gate policy.

Pure, synchronous decision functions shared by every enforcement point
(HTTP middleware, navigation sessions, diagnostic endpoints). Nothing in
this module performs I/O, so a decision can be taken on every navigation
without waiting on the settings store.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple, Optional
import logging

from pydantic import BaseModel, ConfigDict, field_validator

logger = logging.getLogger(__name__)

# ============= ROUTE TABLES =============

#reachable whatever the maintenance state (exact match)
ALWAYS_ALLOWED_ROUTES = frozenset({
    "/",
    "/auth",
    "/admin",
    "/test-connection",
    "/debug-products",
    "/simple-test",
    "/maintenance-test",
    "/route-test",
    "/maintenance-debug",
    "/database-test",
})

#reachable only outside an active window or with bypass (plain prefix match:
#"/product/" does not cover a bare "/product", which stays unlisted and allowed)
BLOCKED_ROUTE_PREFIXES = (
    "/shop",
    "/product/",
    "/cart",
    "/checkout",
    "/orders",
    "/account",
    "/payment-success",
    "/finish-payment",
    "/payment-error",
)

ADMIN_ROLE = "admin"
TEST_OVERRIDE_PARAM = "test_maintenance"

# ============= TYPES =============

_reported_invalid = set()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce a window boundary to an aware UTC datetime.

    Naive values are taken as UTC. Anything unparseable is treated as
    "no boundary" and reported once per distinct raw value.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            parsed = None
    else:
        parsed = None

    if parsed is None:
        key = repr(value)
        if key not in _reported_invalid:
            _reported_invalid.add(key)
            logger.warning(f"Ignoring malformed maintenance window boundary: {key}")
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class MaintenanceConfig(BaseModel):
    """Snapshot of the singleton maintenance settings record"""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    title: str = ""
    message: str = ""
    countdown_label: str = ""
    version: Optional[int] = None
    updated_at: Optional[datetime] = None

    @field_validator("window_start", "window_end", mode="before")
    @classmethod
    def lenient_boundary(cls, v):
        return parse_timestamp(v)

    @field_validator("title", "message", "countdown_label", mode="before")
    @classmethod
    def empty_text(cls, v):
        return v or ""

    @classmethod
    def from_record(cls, record: Any) -> "MaintenanceConfig":
        """Build a snapshot from an ORM row or a change-feed record dict"""
        if not isinstance(record, dict):
            record = {
                "is_enabled": record.is_enabled,
                "maintenance_start": record.maintenance_start,
                "maintenance_end": record.maintenance_end,
                "title": record.title,
                "message": record.message,
                "countdown_message": record.countdown_message,
                "version": record.version,
                "updated_at": record.updated_at,
            }
        return cls(
            enabled=bool(record.get("is_enabled", False)),
            window_start=record.get("maintenance_start"),
            window_end=record.get("maintenance_end"),
            title=record.get("title"),
            message=record.get("message"),
            countdown_label=record.get("countdown_message"),
            version=record.get("version"),
            updated_at=record.get("updated_at"),
        )


#used whenever the record is missing or cannot be read (fail-open)
FALLBACK_CONFIG = MaintenanceConfig(enabled=False, window_start=None, window_end=None)


class Actor(NamedTuple):
    role: Optional[str] = None
    test_override_requested: bool = False


class GateVerdict(str, Enum):
    ALLOW = "allow"
    SHOW_NOTICE = "show_notice"


class GateEvaluation(NamedTuple):
    path: str
    active: bool
    blocked: bool
    bypass: bool
    verdict: GateVerdict


# ============= POLICIES =============

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_active(config: MaintenanceConfig, now: datetime) -> bool:
    if not config.enabled:
        return False
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    #no start: active as soon as it is enabled
    if config.window_start is None:
        return True
    if now < config.window_start:
        return False

    #no end: active indefinitely once started
    if config.window_end is None:
        return True

    #end is exclusive; an inverted window is never active
    return config.window_start <= now < config.window_end


def is_blocked(path: str) -> bool:
    if path in ALWAYS_ALLOWED_ROUTES:
        return False
    return any(path.startswith(prefix) for prefix in BLOCKED_ROUTE_PREFIXES)


def can_bypass(actor: Actor) -> bool:
    #?test_maintenance=true lets admins preview the notice
    if actor.test_override_requested:
        return False
    return actor.role == ADMIN_ROLE


def evaluate(config: MaintenanceConfig, path: str, actor: Actor, now: datetime) -> GateEvaluation:
    active = is_active(config, now)
    blocked = is_blocked(path)
    bypass = can_bypass(actor)

    if active and blocked and not bypass:
        verdict = GateVerdict.SHOW_NOTICE
    else:
        verdict = GateVerdict.ALLOW

    return GateEvaluation(path=path, active=active, blocked=blocked, bypass=bypass, verdict=verdict)


def decide(config: MaintenanceConfig, path: str, actor: Actor, now: datetime) -> GateVerdict:
    return evaluate(config, path, actor, now).verdict


def parse_test_override(value: Optional[str]) -> bool:
    return value == "true"


def countdown(target: Optional[datetime], now: datetime) -> dict:
    """Time left until ``target`` split into days/hours/minutes/seconds, never negative"""
    remaining = 0
    if target is not None:
        remaining = max(int((target - now).total_seconds()), 0)

    days, rest = divmod(remaining, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)
    return {"days": days, "hours": hours, "minutes": minutes, "seconds": seconds}


def notice_payload(config: MaintenanceConfig, now: datetime) -> dict:
    """Display payload rendered in place of a blocked route"""
    return {
        "title": config.title,
        "message": config.message,
        "countdown_label": config.countdown_label,
        "window_end": config.window_end.isoformat() if config.window_end else None,
        "countdown_active": config.window_end is not None and config.window_end > now,
        "countdown": countdown(config.window_end, now),
    }
