"""Serialized in-memory session store.

This is the only component allowed to change the balance or the trip status.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from pytripsync._clock import Clock, SystemClock
from pytripsync._constants import COMPLETED_TRIP_MEMORY, MIN_TAP_IN_BALANCE, OVERDRAFT_FLOOR
from pytripsync._redact import mask_card, redact_for_log
from pytripsync.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidCardError,
    InvalidStateError,
)
from pytripsync.models.tap import Transaction, TransactionKind
from pytripsync.models.trip import Coordinate, Trip, TripStatus
from pytripsync.session import Session
from pytripsync.sources import TapSource, TripStatusSource
from pytripsync.state.events import StatusChangeCause, TripStatusChanged
from pytripsync.state.policy import settle_fare, to_amount

_logger = logging.getLogger(__name__)

StatusListener = Callable[[TripStatusChanged], None]


def _new_trip_id() -> str:
    return uuid.uuid4().hex


class SessionStore:
    """Holds the canonical :class:`~pytripsync.session.Session`.

    ``tap_in``, ``tap_out``, ``recharge`` and the commit half of
    ``refresh_trip_status`` run under one :class:`asyncio.Lock`. Calls to the
    external sources inside the lock are the only suspension points, so the
    order of accepted mutations is the order in which callers acquired the
    lock. Listeners are notified synchronously after every committed status
    transition, in commit order.
    """

    def __init__(
        self,
        *,
        trip_source: TripStatusSource | None = None,
        tap_source: TapSource | None = None,
        clock: Clock | None = None,
        overdraft_floor: Decimal = OVERDRAFT_FLOOR,
        min_tap_in_balance: Decimal = MIN_TAP_IN_BALANCE,
        trip_id_factory: Callable[[], str] = _new_trip_id,
        logger: logging.Logger | None = None,
    ) -> None:
        self._trip_source = trip_source
        self._tap_source = tap_source
        self._clock: Clock = clock or SystemClock()
        self._overdraft_floor = overdraft_floor
        self._min_tap_in_balance = min_tap_in_balance
        self._trip_id_factory = trip_id_factory
        self._logger = logger or _logger

        self._lock = asyncio.Lock()
        self._session: Session | None = None
        self._transactions: list[Transaction] = []
        self._listeners: list[StatusListener] = []
        # Bumped on every trip status commit; lets a refresh detect that its
        # query result predates a local transition.
        self._trip_generation = 0
        # Trips this session already closed; a lagging source may still report them.
        self._completed_trip_ids: deque[str] = deque(maxlen=COMPLETED_TRIP_MEMORY)
        self._refresh_task: asyncio.Task[TripStatus] | None = None

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def snapshot(self) -> Session | None:
        """Current session record (immutable), or ``None`` when signed out."""
        return self._session

    @property
    def card_identifier(self) -> str | None:
        return self._session.card_identifier if self._session is not None else None

    @property
    def balance(self) -> Decimal | None:
        return self._session.balance if self._session is not None else None

    @property
    def trip_status(self) -> TripStatus:
        return self._session.trip_status if self._session is not None else TripStatus.IDLE

    @property
    def current_trip(self) -> Trip | None:
        return self._session.current_trip if self._session is not None else None

    @property
    def transactions(self) -> tuple[Transaction, ...]:
        return tuple(self._transactions)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register *listener* for status transitions; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, event: TripStatusChanged) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self._logger.debug("Trip status listener failed", exc_info=True)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def begin_session(
        self,
        card_identifier: str,
        *,
        balance: Any = 0,
        session_id: str | None = None,
    ) -> Session:
        """Open a session for *card_identifier*.

        Idempotent for the same card. Opening a session for a different card
        while one is open raises :class:`InvalidStateError`; call :meth:`clear`
        first.
        """
        current = self._session
        if current is not None:
            if current.card_identifier == card_identifier.strip():
                return current
            raise InvalidStateError("a session is already open for another card")

        session = Session(
            card_identifier=card_identifier,
            session_id=session_id or card_identifier,
            balance=to_amount(balance),
        )
        self._session = session
        self._transactions.clear()
        self._completed_trip_ids.clear()
        self._logger.debug("Session opened card=%s", mask_card(session.card_identifier))
        return session

    def clear(self) -> None:
        """Close the session (sign-out). An open trip is reported as ending."""
        session = self._session
        self._session = None
        self._transactions.clear()
        self._completed_trip_ids.clear()
        self._trip_generation += 1
        if session is None:
            return
        self._logger.debug("Session cleared card=%s", mask_card(session.card_identifier))
        if session.trip_status != TripStatus.IDLE:
            self._emit(
                TripStatusChanged(
                    card_identifier=session.card_identifier,
                    previous=session.trip_status,
                    current=TripStatus.IDLE,
                    cause=StatusChangeCause.RESET,
                    trip=session.current_trip,
                    balance=session.balance,
                    observed_at=self._clock.now(),
                )
            )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_card(self, card_identifier: str) -> Session:
        session = self._session
        if session is None:
            raise InvalidCardError(
                f"unknown card {mask_card(card_identifier)}: no session is open",
                card_identifier=card_identifier,
            )
        if card_identifier != session.card_identifier:
            raise InvalidCardError(
                f"unknown card {mask_card(card_identifier)}",
                card_identifier=card_identifier,
            )
        return session

    def _commit_status(
        self,
        previous: Session,
        updated: Session,
        *,
        cause: StatusChangeCause,
        trip: Trip | None,
    ) -> None:
        self._session = updated
        self._trip_generation += 1
        if trip is not None and previous.has_active_trip and not updated.has_active_trip:
            self._completed_trip_ids.append(trip.trip_id)
        self._logger.info(
            "Trip status %s -> %s card=%s trip=%s cause=%s",
            previous.trip_status,
            updated.trip_status,
            mask_card(updated.card_identifier),
            trip.trip_id if trip is not None else None,
            cause,
        )
        self._emit(
            TripStatusChanged(
                card_identifier=updated.card_identifier,
                previous=previous.trip_status,
                current=updated.trip_status,
                cause=cause,
                trip=trip,
                balance=updated.balance,
                observed_at=self._clock.now(),
            )
        )

    def _record(self, kind: TransactionKind, amount: Decimal, balance_after: Decimal, trip_id: str | None) -> None:
        self._transactions.append(
            Transaction(
                kind=kind,
                amount=amount,
                balance_after=balance_after,
                created_at=self._clock.now(),
                trip_id=trip_id,
            )
        )

    # ------------------------------------------------------------------
    # Trip status reconciliation
    # ------------------------------------------------------------------

    async def refresh_trip_status(self) -> TripStatus:
        """Reconcile the local trip with the external trip status source.

        Concurrent callers share one in-flight query and all receive its
        result.
        """
        inflight = self._refresh_task
        if inflight is not None and not inflight.done():
            self._logger.debug("Joining in-flight trip status refresh")
            return await asyncio.shield(inflight)

        task = asyncio.get_running_loop().create_task(self._refresh_once())
        self._refresh_task = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._refresh_task is task and task.done():
                self._refresh_task = None

    async def _refresh_once(self) -> TripStatus:
        session = self._session
        if session is None:
            raise InvalidStateError("cannot refresh trip status: no session is open")
        if self._trip_source is None:
            return session.trip_status

        generation = self._trip_generation
        remote = await self._trip_source.query_ongoing_trip(session.session_id)
        if remote is not None:
            self._logger.debug("Ongoing trip payload: %s", redact_for_log(remote.raw))
            if not remote.is_running:
                remote = None

        async with self._lock:
            current = self._session
            if current is None or current.card_identifier != session.card_identifier:
                self._logger.debug("Session changed during trip status query; result discarded")
                return self.trip_status
            if self._trip_generation != generation:
                self._logger.debug("Trip status changed locally during query; stale result discarded")
                return current.trip_status
            return self._reconcile(current, remote)

    def _reconcile(self, current: Session, remote: Trip | None) -> TripStatus:
        local_trip = current.current_trip
        if remote is not None:
            if remote.trip_id in self._completed_trip_ids:
                self._logger.debug("Remote still reports completed trip=%s; ignored", remote.trip_id)
                return current.trip_status
            if local_trip is not None and local_trip.trip_id == remote.trip_id:
                return current.trip_status
            if local_trip is not None:
                # A different trip is running remotely: ours ended elsewhere.
                ended = current.evolve(trip_status=TripStatus.COMPLETED, current_trip=None)
                self._commit_status(current, ended, cause=StatusChangeCause.REMOTE, trip=local_trip)
                current = ended
            if remote.card_identifier is None:
                remote = remote.model_copy(update={"card_identifier": current.card_identifier})
            activated = current.evolve(trip_status=TripStatus.ACTIVE, current_trip=remote)
            self._commit_status(current, activated, cause=StatusChangeCause.REMOTE, trip=remote)
            return TripStatus.ACTIVE

        if local_trip is not None:
            ended = current.evolve(trip_status=TripStatus.COMPLETED, current_trip=None)
            self._commit_status(current, ended, cause=StatusChangeCause.REMOTE, trip=local_trip)
            return TripStatus.COMPLETED
        return current.trip_status

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def tap_in(
        self,
        card_identifier: str,
        bus_reference: str,
        *,
        location: Coordinate | None = None,
    ) -> Decimal:
        """Start a trip. No fare is deducted; returns the unchanged balance."""
        async with self._lock:
            session = self._require_card(card_identifier)
            if session.trip_status == TripStatus.ACTIVE:
                raise InvalidStateError("a trip is already active for this card")
            if session.balance < self._min_tap_in_balance:
                raise InsufficientBalanceError(
                    f"balance {session.balance} is below the minimum {self._min_tap_in_balance}",
                    balance=session.balance,
                    required=self._min_tap_in_balance,
                )

            trip_id: str | None = None
            if self._tap_source is not None:
                result = await self._tap_source.tap_in(card_identifier, bus_reference)
                trip_id = result.trip_id

            trip = Trip(
                raw={},
                trip_id=trip_id or self._trip_id_factory(),
                card_identifier=card_identifier,
                session_id=session.session_id,
                tap_in_time=self._clock.now(),
                tap_in_location=location,
                bus_reference=bus_reference,
            )
            self._commit_status(
                session,
                session.evolve(trip_status=TripStatus.ACTIVE, current_trip=trip),
                cause=StatusChangeCause.TAP_IN,
                trip=trip,
            )
            return session.balance

    async def tap_out(
        self,
        card_identifier: str,
        fare_amount: Any,
        *,
        cause: StatusChangeCause = StatusChangeCause.TAP_OUT,
        trip_id: str | None = None,
    ) -> Decimal:
        """End the active trip and deduct *fare_amount*; returns the new balance.

        When *trip_id* is given, the call only applies to that trip.
        """
        fare = to_amount(fare_amount)
        if fare < 0:
            raise InvalidAmountError(f"fare must not be negative, got {fare}", amount=fare_amount)

        async with self._lock:
            session = self._require_card(card_identifier)
            trip = session.current_trip
            if session.trip_status != TripStatus.ACTIVE or trip is None:
                raise InvalidStateError("no active trip to tap out of")
            if trip_id is not None and trip.trip_id != trip_id:
                raise InvalidStateError(f"trip {trip_id} is no longer the active trip")

            new_balance = settle_fare(session.balance, fare, floor=self._overdraft_floor)

            if self._tap_source is not None:
                result = await self._tap_source.tap_out(card_identifier, trip.bus_reference, fare)
                if result.balance is not None and result.balance != new_balance:
                    self._logger.debug(
                        "Remote balance %s differs from local %s card=%s",
                        result.balance,
                        new_balance,
                        mask_card(card_identifier),
                    )

            kind = TransactionKind.PENALTY if cause == StatusChangeCause.DEADLINE else TransactionKind.BUS_FARE
            self._record(kind, fare, new_balance, trip.trip_id)
            self._commit_status(
                session,
                session.evolve(balance=new_balance, trip_status=TripStatus.COMPLETED, current_trip=None),
                cause=cause,
                trip=trip,
            )
            return new_balance

    async def recharge(self, card_identifier: str, amount: Any) -> Decimal:
        """Add *amount* to the balance; returns the new balance."""
        value = to_amount(amount)
        if value <= 0:
            raise InvalidAmountError(f"recharge amount must be positive, got {value}", amount=amount)

        async with self._lock:
            session = self._require_card(card_identifier)
            new_balance = session.balance + value
            self._record(TransactionKind.RECHARGE, value, new_balance, None)
            self._session = session.evolve(balance=new_balance)
            self._logger.info("Recharged %s card=%s balance=%s", value, mask_card(card_identifier), new_balance)
            return new_balance
