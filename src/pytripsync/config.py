"""Client configuration for pytripsync."""

from __future__ import annotations

import dataclasses
import os
from datetime import time
from decimal import Decimal, InvalidOperation
from typing import Any

from pytripsync import _constants as const
from pytripsync.exceptions import TripSyncConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _parse_time(value: str) -> time:
    """Parse ``HH:MM`` or ``HH:MM:SS`` into a :class:`datetime.time`."""
    try:
        return time.fromisoformat(value.strip())
    except ValueError as exc:
        raise TripSyncConfigError(f"Invalid cutoff time: {value!r}") from exc


def _parse_decimal(name: str, value: str) -> Decimal:
    try:
        result = Decimal(value.strip())
    except InvalidOperation as exc:
        raise TripSyncConfigError(f"{name} must be a number, got {value!r}") from exc
    if not result.is_finite():
        raise TripSyncConfigError(f"{name} must be finite, got {value!r}")
    return result


@dataclasses.dataclass(frozen=True)
class TripSyncConfig:
    """Runtime configuration.

    Parameters
    ----------
    trip_polling_enabled : bool
        Master switch for the trip status poller.
    notification_polling_enabled : bool
        Master switch for the unread notification poller.
    only_when_foreground : bool
        Suppress polling while the host application is backgrounded.
    trip_active_interval_ms : float
        Trip poll interval while a trip is active.
    trip_idle_interval_ms : float
        Trip poll interval while no trip is active.
    trip_min_spacing_ms : float
        Minimum spacing between two accepted trip refreshes.
    notification_interval_ms : float
        Unread notification poll interval.
    notification_min_spacing_ms : float
        Minimum spacing between two accepted notification checks.
    notification_start_delay_ms : float
        Delay between sign-in and the first notification poll.
    restart_grace_ms : float
        Grace delay between stop and start when a poller restarts.
    cutoff : datetime.time
        Daily local time after which an open trip is force-closed.
    deadline_penalty : Decimal
        Fare charged when a trip is force-closed at the cutoff.
    overdraft_floor : Decimal
        Lowest balance a fare deduction may produce.
    min_tap_in_balance : Decimal
        Lowest balance allowed to start a trip.
    closure_recheck_seconds : float
        Maximum single sleep of a pending deadline closure.
    notification_page_size : int
        Page size used for notification listing and unread checks.
    time_zone : str or None
        IANA zone used for the cutoff. ``None`` uses the host's local zone.
    """

    trip_polling_enabled: bool = True
    notification_polling_enabled: bool = True
    only_when_foreground: bool = True
    trip_active_interval_ms: float = const.TRIP_ACTIVE_INTERVAL_MS
    trip_idle_interval_ms: float = const.TRIP_IDLE_INTERVAL_MS
    trip_min_spacing_ms: float = const.TRIP_MIN_SPACING_MS
    notification_interval_ms: float = const.NOTIFICATION_INTERVAL_MS
    notification_min_spacing_ms: float = const.NOTIFICATION_MIN_SPACING_MS
    notification_start_delay_ms: float = const.NOTIFICATION_START_DELAY_MS
    restart_grace_ms: float = const.RESTART_GRACE_MS
    cutoff: time = const.DEADLINE_CUTOFF
    deadline_penalty: Decimal = const.DEADLINE_PENALTY
    overdraft_floor: Decimal = const.OVERDRAFT_FLOOR
    min_tap_in_balance: Decimal = const.MIN_TAP_IN_BALANCE
    closure_recheck_seconds: float = const.CLOSURE_RECHECK_SECONDS
    notification_page_size: int = const.NOTIFICATION_PAGE_SIZE
    time_zone: str | None = None

    def __post_init__(self) -> None:
        for name in ("trip_active_interval_ms", "trip_idle_interval_ms", "notification_interval_ms"):
            if getattr(self, name) <= 0:
                raise TripSyncConfigError(f"{name} must be positive")
        for name in (
            "trip_min_spacing_ms",
            "notification_min_spacing_ms",
            "notification_start_delay_ms",
            "restart_grace_ms",
        ):
            if getattr(self, name) < 0:
                raise TripSyncConfigError(f"{name} must not be negative")
        if self.deadline_penalty < 0:
            raise TripSyncConfigError("deadline_penalty must not be negative")
        if self.overdraft_floor > 0:
            raise TripSyncConfigError("overdraft_floor must not be positive")
        if self.closure_recheck_seconds <= 0:
            raise TripSyncConfigError("closure_recheck_seconds must be positive")
        if self.notification_page_size <= 0:
            raise TripSyncConfigError("notification_page_size must be positive")

    @classmethod
    def from_env(cls, **overrides: Any) -> TripSyncConfig:
        """Create configuration from environment variables.

        Reads optional ``TRIPSYNC_*`` variables. Explicit keyword arguments
        override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        TripSyncConfig
            Populated configuration.
        """
        env = os.environ
        config_kwargs: dict[str, Any] = {}

        _ENV_BOOL_MAP = {
            "TRIPSYNC_TRIP_POLLING_ENABLED": ("trip_polling_enabled", True),
            "TRIPSYNC_NOTIFICATION_POLLING_ENABLED": ("notification_polling_enabled", True),
            "TRIPSYNC_ONLY_WHEN_FOREGROUND": ("only_when_foreground", True),
        }
        for env_key, (field_name, default) in _ENV_BOOL_MAP.items():
            if field_name not in overrides:
                config_kwargs[field_name] = _env_bool(env.get(env_key), default)

        _ENV_FLOAT_MAP = {
            "TRIPSYNC_TRIP_ACTIVE_INTERVAL_MS": "trip_active_interval_ms",
            "TRIPSYNC_TRIP_IDLE_INTERVAL_MS": "trip_idle_interval_ms",
            "TRIPSYNC_TRIP_MIN_SPACING_MS": "trip_min_spacing_ms",
            "TRIPSYNC_NOTIFICATION_INTERVAL_MS": "notification_interval_ms",
            "TRIPSYNC_NOTIFICATION_MIN_SPACING_MS": "notification_min_spacing_ms",
            "TRIPSYNC_NOTIFICATION_START_DELAY_MS": "notification_start_delay_ms",
            "TRIPSYNC_RESTART_GRACE_MS": "restart_grace_ms",
            "TRIPSYNC_CLOSURE_RECHECK_SECONDS": "closure_recheck_seconds",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                try:
                    config_kwargs[field_name] = float(val)
                except ValueError as exc:
                    raise TripSyncConfigError(f"{env_key} must be a number, got {val!r}") from exc

        _ENV_DECIMAL_MAP = {
            "TRIPSYNC_DEADLINE_PENALTY": "deadline_penalty",
            "TRIPSYNC_OVERDRAFT_FLOOR": "overdraft_floor",
            "TRIPSYNC_MIN_TAP_IN_BALANCE": "min_tap_in_balance",
        }
        for env_key, field_name in _ENV_DECIMAL_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _parse_decimal(env_key, val)

        cutoff_env = env.get("TRIPSYNC_CUTOFF")
        if cutoff_env is not None and "cutoff" not in overrides:
            config_kwargs["cutoff"] = _parse_time(cutoff_env)

        page_size_env = env.get("TRIPSYNC_NOTIFICATION_PAGE_SIZE")
        if page_size_env is not None and "notification_page_size" not in overrides:
            try:
                config_kwargs["notification_page_size"] = int(page_size_env)
            except ValueError as exc:
                raise TripSyncConfigError(
                    f"TRIPSYNC_NOTIFICATION_PAGE_SIZE must be an integer, got {page_size_env!r}"
                ) from exc

        tz_env = env.get("TRIPSYNC_TIME_ZONE")
        if tz_env and "time_zone" not in overrides:
            config_kwargs["time_zone"] = tz_env.strip()

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
