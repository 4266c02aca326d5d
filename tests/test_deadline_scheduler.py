from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from pytripsync._constants import CLOSURE_STORAGE_KEY, OVERDRAFT_FLOOR
from pytripsync.models.tap import TransactionKind
from pytripsync.models.trip import Trip, TripStatus
from pytripsync.scheduler import DeadlineClosureScheduler
from pytripsync.state.events import StatusChangeCause, TripStatusChanged
from pytripsync.state.store import SessionStore
from pytripsync.storage import InMemoryKeyValueStore

CARD = "CARD-0001"


def _setup(
    make_clock,
    start: datetime,
    *,
    balance: int = 500,
    storage: InMemoryKeyValueStore | None = None,
    trip_source=None,
    floor: Decimal = OVERDRAFT_FLOOR,
    attach: bool = True,
):
    clock = make_clock(start)
    store = SessionStore(trip_source=trip_source, clock=clock, overdraft_floor=floor, trip_id_factory=lambda: "T-1")
    store.begin_session(CARD, balance=balance, session_id="user-1")
    scheduler = DeadlineClosureScheduler(store, clock=clock, storage=storage)
    if attach:
        scheduler.attach()
    return clock, store, scheduler


@pytest.mark.asyncio
async def test_trip_open_at_cutoff_is_closed_with_penalty(make_clock) -> None:
    clock, store, scheduler = _setup(make_clock, datetime(2026, 3, 14, 23, 58, tzinfo=UTC))
    events: list[TripStatusChanged] = []
    store.subscribe(events.append)

    await store.tap_in(CARD, "BUS-42")
    (closure,) = scheduler.pending
    assert closure.trip_id == "T-1"
    assert closure.target_fire_time == datetime(2026, 3, 14, 23, 59, tzinfo=UTC)

    await clock.advance(59)
    assert store.trip_status == TripStatus.ACTIVE

    await clock.advance(2)
    assert store.trip_status == TripStatus.COMPLETED
    assert store.balance == Decimal(400)
    penalty = store.transactions[-1]
    assert penalty.kind == TransactionKind.PENALTY
    assert penalty.amount == Decimal(100)
    assert events[-1].cause == StatusChangeCause.DEADLINE
    assert scheduler.pending == ()

    await scheduler.close()


@pytest.mark.asyncio
async def test_tap_out_before_cutoff_cancels_closure(make_clock) -> None:
    clock, store, scheduler = _setup(make_clock, datetime(2026, 3, 14, 23, 58, tzinfo=UTC))

    await store.tap_in(CARD, "BUS-42")
    await clock.advance(30)
    await store.tap_out(CARD, 20)
    assert scheduler.pending == ()

    await clock.advance(120)
    assert store.balance == Decimal(480)
    assert [t.kind for t in store.transactions] == [TransactionKind.BUS_FARE]

    await scheduler.close()


@pytest.mark.asyncio
async def test_tap_in_after_cutoff_targets_next_day(make_clock) -> None:
    clock, store, scheduler = _setup(make_clock, datetime(2026, 3, 14, 23, 59, 30, tzinfo=UTC))

    await store.tap_in(CARD, "BUS-42")

    (closure,) = scheduler.pending
    assert closure.target_fire_time == datetime(2026, 3, 15, 23, 59, tzinfo=UTC)
    await scheduler.close()


@pytest.mark.asyncio
async def test_target_in_the_past_fires_immediately(make_clock) -> None:
    clock, store, scheduler = _setup(make_clock, datetime(2026, 3, 14, 8, 0, tzinfo=UTC))
    await store.tap_in(CARD, "BUS-42")

    scheduler.schedule(store.current_trip, target=clock.now() - timedelta(minutes=1))
    await clock.settle()

    assert store.trip_status == TripStatus.COMPLETED
    assert store.balance == Decimal(400)
    await scheduler.close()


@pytest.mark.asyncio
async def test_closure_fires_promptly_after_suspend(make_clock) -> None:
    clock, store, scheduler = _setup(make_clock, datetime(2026, 3, 14, 20, 0, tzinfo=UTC))
    await store.tap_in(CARD, "BUS-42")
    await clock.settle()

    # Host sleeps through the cutoff; monotonic time does not move.
    clock.jump(4 * 3600)
    assert store.trip_status == TripStatus.ACTIVE

    await clock.advance(300)
    assert store.trip_status == TripStatus.COMPLETED
    assert store.balance == Decimal(400)
    await scheduler.close()


@pytest.mark.asyncio
async def test_closure_discarded_when_trip_ended_remotely(make_clock, trip_source) -> None:
    clock, store, scheduler = _setup(
        make_clock,
        datetime(2026, 3, 14, 23, 58, tzinfo=UTC),
        trip_source=trip_source,
    )
    await store.tap_in(CARD, "BUS-42")

    await clock.advance(61)

    assert trip_source.calls
    assert store.trip_status == TripStatus.COMPLETED
    assert store.balance == Decimal(500)
    assert TransactionKind.PENALTY not in [t.kind for t in store.transactions]
    assert scheduler.pending == ()
    await scheduler.close()


@pytest.mark.asyncio
async def test_stale_remote_report_does_not_rearm_closure(make_clock, trip_source) -> None:
    clock, store, scheduler = _setup(
        make_clock,
        datetime(2026, 3, 14, 8, 0, tzinfo=UTC),
        trip_source=trip_source,
    )
    trip_source.trip = Trip.model_validate({"tripId": "T-1", "tripStartTime": "2026-03-14T07:30:00Z"})
    await store.refresh_trip_status()
    assert [c.trip_id for c in scheduler.pending] == ["T-1"]

    await store.tap_out(CARD, 20)
    await store.refresh_trip_status()
    assert scheduler.pending == ()

    await clock.advance(17 * 3600)
    assert store.trip_status == TripStatus.COMPLETED
    assert store.balance == Decimal(480)
    assert [t.kind for t in store.transactions] == [TransactionKind.BUS_FARE]
    await scheduler.close()


@pytest.mark.asyncio
async def test_tap_out_while_closure_is_firing(make_clock, trip_source, caplog) -> None:
    clock, store, scheduler = _setup(
        make_clock,
        datetime(2026, 3, 14, 23, 58, tzinfo=UTC),
        trip_source=trip_source,
    )
    await store.tap_in(CARD, "BUS-42")
    trip_source.trip = store.current_trip
    trip_source.gate = asyncio.Event()
    caplog.set_level(logging.INFO, logger="pytripsync.scheduler")

    # The closure is due and holds in its pre-fire trip status refresh.
    await clock.advance(61)
    assert trip_source.calls
    assert scheduler.is_firing("T-1")
    assert scheduler.pending == ()
    assert scheduler.cancel("T-1") is False

    assert await store.tap_out(CARD, 20) == Decimal(480)
    trip_source.gate.set()
    await clock.settle()

    assert not scheduler.is_firing("T-1")
    assert store.trip_status == TripStatus.COMPLETED
    assert store.balance == Decimal(480)
    assert [t.kind for t in store.transactions] == [TransactionKind.BUS_FARE]
    assert "Deadline closure trip=T-1 outcome=discarded" in caplog.text
    await scheduler.close()


@pytest.mark.asyncio
async def test_rejected_penalty_is_not_retried(make_clock) -> None:
    clock, store, scheduler = _setup(
        make_clock,
        datetime(2026, 3, 14, 23, 58, tzinfo=UTC),
        balance=50,
        floor=Decimal(0),
    )
    await store.tap_in(CARD, "BUS-42")

    await clock.advance(61)
    assert store.trip_status == TripStatus.ACTIVE
    assert store.balance == Decimal(50)
    assert scheduler.pending == ()

    await clock.advance(600)
    assert store.balance == Decimal(50)
    await scheduler.close()


@pytest.mark.asyncio
async def test_cancel_without_pending_closure(make_clock) -> None:
    _, _, scheduler = _setup(make_clock, datetime(2026, 3, 14, 8, 0, tzinfo=UTC))
    assert scheduler.cancel("nope") is False
    await scheduler.close()


@pytest.mark.asyncio
async def test_cancel_all_clears_pending(make_clock) -> None:
    _, store, scheduler = _setup(make_clock, datetime(2026, 3, 14, 8, 0, tzinfo=UTC))
    await store.tap_in(CARD, "BUS-42")
    assert len(scheduler.pending) == 1

    scheduler.cancel_all()

    assert scheduler.pending == ()
    assert store.trip_status == TripStatus.ACTIVE
    await scheduler.close()


@pytest.mark.asyncio
async def test_pending_closure_is_persisted_and_survives_close(make_clock) -> None:
    storage = InMemoryKeyValueStore()
    clock, store, scheduler = _setup(make_clock, datetime(2026, 3, 14, 8, 0, tzinfo=UTC), storage=storage)

    await store.tap_in(CARD, "BUS-42")
    await clock.settle()
    (entry,) = json.loads(storage.snapshot()[CLOSURE_STORAGE_KEY])
    assert entry["trip_id"] == "T-1"
    assert entry["card_identifier"] == CARD
    target = scheduler.pending[0].target_fire_time

    await scheduler.close()
    assert CLOSURE_STORAGE_KEY in storage.snapshot()

    restored = DeadlineClosureScheduler(store, clock=clock, storage=storage)
    await restored.reconcile()
    assert [c.target_fire_time for c in restored.pending] == [target]
    await restored.close()


@pytest.mark.asyncio
async def test_reconcile_reuses_persisted_target(make_clock) -> None:
    storage = InMemoryKeyValueStore(
        {
            CLOSURE_STORAGE_KEY: json.dumps(
                [
                    {
                        "trip_id": "T-1",
                        "card_identifier": CARD,
                        "target_fire_time": "2026-03-14T23:58:30Z",
                    }
                ]
            )
        }
    )
    clock, store, scheduler = _setup(
        make_clock,
        datetime(2026, 3, 14, 23, 58, tzinfo=UTC),
        storage=storage,
        attach=False,
    )
    await store.tap_in(CARD, "BUS-42")

    await scheduler.reconcile()
    (closure,) = scheduler.pending
    assert closure.target_fire_time == datetime(2026, 3, 14, 23, 58, 30, tzinfo=UTC)

    await clock.advance(31)
    assert store.balance == Decimal(400)
    await clock.settle()
    assert CLOSURE_STORAGE_KEY not in storage.snapshot()
    await scheduler.close()


@pytest.mark.asyncio
async def test_reconcile_ignores_malformed_persisted_data(make_clock) -> None:
    storage = InMemoryKeyValueStore({CLOSURE_STORAGE_KEY: "{not json"})
    clock, store, scheduler = _setup(
        make_clock,
        datetime(2026, 3, 14, 8, 0, tzinfo=UTC),
        storage=storage,
        attach=False,
    )
    await store.tap_in(CARD, "BUS-42")

    await scheduler.reconcile()

    (closure,) = scheduler.pending
    assert closure.target_fire_time == datetime(2026, 3, 14, 23, 59, tzinfo=UTC)
    await scheduler.close()


@pytest.mark.asyncio
async def test_reconcile_drops_closures_for_inactive_trips(make_clock) -> None:
    _, store, scheduler = _setup(make_clock, datetime(2026, 3, 14, 8, 0, tzinfo=UTC))
    await store.tap_in(CARD, "BUS-42")
    scheduler.schedule(Trip(raw={}, trip_id="OLD", card_identifier=CARD))
    assert len(scheduler.pending) == 2

    await scheduler.reconcile()

    assert [c.trip_id for c in scheduler.pending] == ["T-1"]
    await scheduler.close()


@pytest.mark.asyncio
async def test_reconcile_fires_overdue_closure_without_waiting(make_clock) -> None:
    clock, store, scheduler = _setup(make_clock, datetime(2026, 3, 14, 20, 0, tzinfo=UTC))
    await store.tap_in(CARD, "BUS-42")
    await clock.settle()

    clock.jump(5 * 3600)
    await scheduler.reconcile()
    await clock.settle()

    assert store.trip_status == TripStatus.COMPLETED
    assert store.balance == Decimal(400)
    await scheduler.close()
