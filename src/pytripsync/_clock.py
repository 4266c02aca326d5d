"""Time source abstraction.

Every component reads time and sleeps through a :class:`Clock` so tests can
substitute a manually advanced clock.
"""

from __future__ import annotations

import asyncio
import os
import time
from datetime import datetime, tzinfo
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pytripsync.exceptions import TripSyncConfigError

_LOCALTIME = "/etc/localtime"


def local_zone() -> tzinfo | None:
    """Resolve the host zone as an IANA zone from $TZ or /etc/localtime."""
    candidates = []
    name = os.environ.get("TZ", "").lstrip(":")
    if name:
        candidates.append(name)
    target = os.path.realpath(_LOCALTIME)
    if "zoneinfo/" in target:
        candidates.append(target.split("zoneinfo/", 1)[1])
    for candidate in candidates:
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return None


class Clock(Protocol):
    def monotonic(self) -> float:
        """Seconds from an arbitrary origin; never goes backwards."""
        ...

    def now(self) -> datetime:
        """Current tz-aware wall-clock time."""
        ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Clock backed by :mod:`time`, :mod:`datetime` and :func:`asyncio.sleep`.

    Without *tz* the host zone from :func:`local_zone` is used, so daily
    cutoffs follow DST changes. When the host zone cannot be named, ``now()``
    falls back to the current fixed UTC offset.
    """

    def __init__(self, tz: tzinfo | None = None) -> None:
        self._tz = tz if tz is not None else local_zone()

    @classmethod
    def for_zone(cls, name: str | None) -> SystemClock:
        if not name:
            return cls()
        try:
            return cls(ZoneInfo(name))
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise TripSyncConfigError(f"Unknown time zone: {name!r}") from exc

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        if self._tz is None:
            return datetime.now().astimezone()
        return datetime.now(self._tz)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
