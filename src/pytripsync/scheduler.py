"""Forced tap-out of trips still open at the daily cutoff."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Coroutine
from datetime import datetime, time
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from pytripsync._clock import Clock, SystemClock
from pytripsync._constants import (
    CLOSURE_RECHECK_SECONDS,
    CLOSURE_STORAGE_KEY,
    DEADLINE_CUTOFF,
    DEADLINE_PENALTY,
)
from pytripsync._redact import mask_card
from pytripsync.exceptions import InvalidCardError, InvalidStateError
from pytripsync.models.trip import Trip
from pytripsync.state.events import StatusChangeCause, TripStatusChanged
from pytripsync.state.policy import closure_deadline
from pytripsync.state.store import SessionStore
from pytripsync.storage import KeyValueStore

_logger = logging.getLogger(__name__)


class ClosureOutcome(StrEnum):
    APPLIED = "applied"
    DISCARDED = "discarded"
    FAILED = "failed"


class PersistedClosure(BaseModel):
    """Storage form of a pending closure."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    trip_id: str
    card_identifier: str
    target_fire_time: datetime


_PERSISTED = TypeAdapter(list[PersistedClosure])


@dataclasses.dataclass
class ScheduledClosure:
    trip_id: str
    card_identifier: str
    target_fire_time: datetime
    handle: asyncio.Task[None] | None = dataclasses.field(default=None, repr=False, compare=False)


class DeadlineClosureScheduler:
    """Arms one closure per active trip and charges the penalty at the cutoff.

    A closure is *scheduled* until its target time, then *firing* until the
    tap-out attempt finishes. Only scheduled closures can be cancelled.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        cutoff: time = DEADLINE_CUTOFF,
        penalty: Decimal = DEADLINE_PENALTY,
        clock: Clock | None = None,
        storage: KeyValueStore | None = None,
        reconcile_before_fire: bool = True,
        recheck_interval: float = CLOSURE_RECHECK_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._cutoff = cutoff
        self._penalty = penalty
        self._clock: Clock = clock or SystemClock()
        self._storage = storage
        self._reconcile_before_fire = reconcile_before_fire
        self._recheck_interval = recheck_interval
        self._logger = logger or _logger

        self._scheduled: dict[str, ScheduledClosure] = {}
        self._firing: dict[str, ScheduledClosure] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._save_lock = asyncio.Lock()
        self._unsubscribe: Callable[[], None] | None = None
        self._closing = False

    @property
    def pending(self) -> tuple[ScheduledClosure, ...]:
        """Closures that are scheduled and can still be cancelled."""
        return tuple(sorted(self._scheduled.values(), key=lambda entry: entry.target_fire_time))

    def is_firing(self, trip_id: str) -> bool:
        return trip_id in self._firing

    # ------------------------------------------------------------------
    # Store events
    # ------------------------------------------------------------------

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._store.subscribe(self._on_status_change)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_status_change(self, event: TripStatusChanged) -> None:
        if event.trip is None:
            return
        if event.ended and event.cause != StatusChangeCause.DEADLINE:
            self.cancel(event.trip.trip_id)
        if event.activated:
            self.schedule(event.trip)

    # ------------------------------------------------------------------
    # Arming and cancelling
    # ------------------------------------------------------------------

    def schedule(self, trip: Trip, *, target: datetime | None = None) -> ScheduledClosure:
        """Arm the closure for *trip*. A target in the past fires immediately."""
        firing = self._firing.get(trip.trip_id)
        if firing is not None:
            return firing

        if target is None:
            target = closure_deadline(trip.tap_in_time, self._clock.now(), self._cutoff)
        existing = self._scheduled.get(trip.trip_id)
        if existing is not None:
            if existing.target_fire_time == target:
                return existing
            self._drop(existing)

        card_identifier = trip.card_identifier or self._store.card_identifier
        if not card_identifier:
            raise InvalidStateError(f"trip {trip.trip_id} has no card to charge")

        entry = ScheduledClosure(trip.trip_id, card_identifier, target)
        self._scheduled[entry.trip_id] = entry
        entry.handle = asyncio.get_running_loop().create_task(
            self._run(entry), name=f"pytripsync-closure-{entry.trip_id}"
        )
        self._logger.info(
            "Deadline closure armed trip=%s card=%s at %s",
            entry.trip_id,
            mask_card(card_identifier),
            target.isoformat(),
        )
        self._spawn(self._save())
        return entry

    def cancel(self, trip_id: str) -> bool:
        """Cancel the scheduled closure for *trip_id*."""
        if trip_id in self._firing:
            self._logger.debug("Closure for trip=%s is already firing; not cancelled", trip_id)
            return False
        entry = self._scheduled.get(trip_id)
        if entry is None:
            self._logger.debug("No pending closure for trip=%s", trip_id)
            return False
        self._drop(entry)
        self._logger.info("Deadline closure cancelled trip=%s", trip_id)
        self._spawn(self._save())
        return True

    def cancel_all(self) -> None:
        for entry in list(self._scheduled.values()):
            self._drop(entry)
        self._spawn(self._save())

    def _drop(self, entry: ScheduledClosure) -> None:
        if self._scheduled.get(entry.trip_id) is entry:
            del self._scheduled[entry.trip_id]
        if entry.handle is not None and not entry.handle.done():
            entry.handle.cancel()

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    async def _run(self, entry: ScheduledClosure) -> None:
        try:
            while True:
                remaining = (entry.target_fire_time - self._clock.now()).total_seconds()
                if remaining <= 0:
                    break
                await self._clock.sleep(min(remaining, self._recheck_interval))

            if self._scheduled.get(entry.trip_id) is not entry:
                return
            del self._scheduled[entry.trip_id]
            self._firing[entry.trip_id] = entry

            outcome = await self._fire(entry)
            self._logger.info("Deadline closure trip=%s outcome=%s", entry.trip_id, outcome)
        finally:
            if self._scheduled.get(entry.trip_id) is entry:
                del self._scheduled[entry.trip_id]
            if self._firing.get(entry.trip_id) is entry:
                del self._firing[entry.trip_id]
            if not self._closing:
                self._spawn(self._save())

    async def _fire(self, entry: ScheduledClosure) -> ClosureOutcome:
        if self._reconcile_before_fire:
            try:
                await self._store.refresh_trip_status()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.warning("Trip status refresh before closure failed", exc_info=True)

        trip = self._store.current_trip
        if trip is None or trip.trip_id != entry.trip_id:
            return ClosureOutcome.DISCARDED

        try:
            balance = await self._store.tap_out(
                entry.card_identifier,
                self._penalty,
                cause=StatusChangeCause.DEADLINE,
                trip_id=entry.trip_id,
            )
        except (InvalidStateError, InvalidCardError) as exc:
            self._logger.debug("Closure for trip=%s no longer applies: %s", entry.trip_id, exc)
            return ClosureOutcome.DISCARDED
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.warning("Deadline tap-out failed trip=%s", entry.trip_id, exc_info=True)
            return ClosureOutcome.FAILED

        self._logger.info(
            "Penalty %s charged trip=%s card=%s balance=%s",
            self._penalty,
            entry.trip_id,
            mask_card(entry.card_identifier),
            balance,
        )
        return ClosureOutcome.APPLIED

    # ------------------------------------------------------------------
    # Wake-up reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self) -> None:
        """Bring closures in line with the store after a gap in execution."""
        try:
            await self._store.refresh_trip_status()
        except InvalidStateError:
            self._logger.debug("Reconcile without an open session")
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.warning("Trip status refresh during reconcile failed", exc_info=True)

        active = self._store.current_trip
        for trip_id in list(self._scheduled):
            if active is None or trip_id != active.trip_id:
                self.cancel(trip_id)

        if active is None or active.trip_id in self._firing:
            return

        entry = self._scheduled.get(active.trip_id)
        if entry is None:
            persisted = await self._load_persisted()
            previous = persisted.get(active.trip_id)
            self.schedule(active, target=previous.target_fire_time if previous is not None else None)
        elif entry.target_fire_time <= self._clock.now():
            # Overdue: replace the sleeping task so the closure fires now.
            self._drop(entry)
            self.schedule(active, target=entry.target_fire_time)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _save(self) -> None:
        if self._storage is None:
            return
        async with self._save_lock:
            entries = [
                PersistedClosure(
                    trip_id=entry.trip_id,
                    card_identifier=entry.card_identifier,
                    target_fire_time=entry.target_fire_time,
                )
                for entry in (*self._scheduled.values(), *self._firing.values())
            ]
            try:
                if entries:
                    await self._storage.put(CLOSURE_STORAGE_KEY, _PERSISTED.dump_json(entries).decode())
                else:
                    await self._storage.remove(CLOSURE_STORAGE_KEY)
            except Exception:
                self._logger.warning("Failed to persist deadline closures", exc_info=True)

    async def _load_persisted(self) -> dict[str, PersistedClosure]:
        if self._storage is None:
            return {}
        try:
            raw = await self._storage.get(CLOSURE_STORAGE_KEY)
        except Exception:
            self._logger.warning("Failed to read persisted deadline closures", exc_info=True)
            return {}
        if not raw:
            return {}
        try:
            entries = _PERSISTED.validate_json(raw)
        except ValidationError:
            self._logger.warning("Ignoring malformed persisted deadline closures")
            return {}
        return {entry.trip_id: entry for entry in entries}

    async def close(self) -> None:
        """Stop all closure tasks. Persisted entries are kept for the next process."""
        self._closing = True
        self.detach()
        handles = [
            entry.handle
            for entry in (*self._scheduled.values(), *self._firing.values())
            if entry.handle is not None and not entry.handle.done()
        ]
        self._scheduled.clear()
        self._firing.clear()
        for handle in handles:
            handle.cancel()
        await asyncio.gather(*handles, *self._background, return_exceptions=True)
