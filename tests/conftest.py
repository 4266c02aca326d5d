from __future__ import annotations

import asyncio
import heapq
import itertools
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from pytripsync.models.notification import Notification
from pytripsync.models.tap import TapResult
from pytripsync.models.trip import Trip
from pytripsync.state.store import SessionStore


class FakeClock:
    """Manually advanced clock. ``advance`` moves monotonic and wall time together."""

    def __init__(self, start: datetime) -> None:
        self._wall = start
        self._mono = 0.0
        self._seq = itertools.count()
        self._sleepers: list[tuple[float, int, asyncio.Future[None]]] = []

    def monotonic(self) -> float:
        return self._mono

    def now(self) -> datetime:
        return self._wall

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._mono + seconds, next(self._seq), future))
        await future

    @property
    def pending(self) -> int:
        return sum(1 for _, _, future in self._sleepers if not future.done())

    def jump(self, seconds: float) -> None:
        """Move wall time only, like a host that was suspended."""
        self._wall += timedelta(seconds=seconds)

    async def settle(self, rounds: int = 50) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        target = self._mono + seconds
        await self.settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            when, _, future = heapq.heappop(self._sleepers)
            if future.done():
                continue
            self._move_to(when)
            future.set_result(None)
            await self.settle()
        self._move_to(target)
        await self.settle()

    def _move_to(self, mono: float) -> None:
        delta = mono - self._mono
        if delta > 0:
            self._mono = mono
            self._wall += timedelta(seconds=delta)


class FakeTripSource:
    def __init__(self) -> None:
        self.trip: Trip | None = None
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.calls: list[str] = []

    async def query_ongoing_trip(self, session_id: str) -> Trip | None:
        self.calls.append(session_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.trip


class FakeTapSource:
    def __init__(self) -> None:
        self.trip_id: str | None = None
        self.tap_in_error: Exception | None = None
        self.tap_out_error: Exception | None = None
        self.tap_ins: list[tuple[str, str]] = []
        self.tap_outs: list[tuple[str, str | None, Decimal]] = []

    async def tap_in(self, card_identifier: str, bus_reference: str) -> TapResult:
        await asyncio.sleep(0)
        if self.tap_in_error is not None:
            raise self.tap_in_error
        self.tap_ins.append((card_identifier, bus_reference))
        return TapResult(raw={}, trip_id=self.trip_id)

    async def tap_out(self, card_identifier: str, bus_reference: str | None, fare_amount: Decimal) -> TapResult:
        await asyncio.sleep(0)
        if self.tap_out_error is not None:
            raise self.tap_out_error
        self.tap_outs.append((card_identifier, bus_reference, fare_amount))
        return TapResult(raw={})


class FakeNotificationSource:
    def __init__(self) -> None:
        self.items: list[Notification] = []
        self.gate: asyncio.Event | None = None
        self.list_calls: list[tuple[str, int, int]] = []
        self.marked: list[str] = []
        self.marked_all: list[str] = []

    async def list_notifications(self, card_identifier: str, page: int, page_size: int) -> Sequence[Notification]:
        self.list_calls.append((card_identifier, page, page_size))
        if self.gate is not None:
            await self.gate.wait()
        start = (page - 1) * page_size
        return list(self.items[start : start + page_size])

    async def mark_read(self, notification_id: str) -> None:
        self.marked.append(notification_id)
        self.items = [
            item.model_copy(update={"is_read": True}) if item.id == notification_id else item for item in self.items
        ]

    async def mark_all_read(self, card_identifier: str) -> None:
        self.marked_all.append(card_identifier)
        self.items = [item.model_copy(update={"is_read": True}) for item in self.items]


CARD = "CARD-0001"
USER = "user-1"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 14, 8, 0, tzinfo=UTC))


@pytest.fixture
def trip_source() -> FakeTripSource:
    return FakeTripSource()


@pytest.fixture
def tap_source() -> FakeTapSource:
    return FakeTapSource()


@pytest.fixture
def notification_source() -> FakeNotificationSource:
    return FakeNotificationSource()


@pytest.fixture
def store(clock: FakeClock, trip_source: FakeTripSource) -> SessionStore:
    store = SessionStore(trip_source=trip_source, clock=clock)
    store.begin_session(CARD, balance=500, session_id=USER)
    return store


@pytest.fixture
def make_clock() -> type[FakeClock]:
    return FakeClock
