"""High-level async client wiring the store, pollers and deadline scheduler."""

from __future__ import annotations

import logging
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from pytripsync._clock import Clock, SystemClock
from pytripsync._redact import mask_card
from pytripsync.config import TripSyncConfig
from pytripsync.models.card import Card
from pytripsync.models.trip import Coordinate, TripStatus
from pytripsync.polling import PollingCoordinator
from pytripsync.scheduler import DeadlineClosureScheduler
from pytripsync.session import Session
from pytripsync.sources import NotificationSource, TapSource, TripStatusSource
from pytripsync.state.events import StatusChangeCause, TripStatusChanged
from pytripsync.state.notifications import NotificationState, NotificationStore
from pytripsync.state.store import SessionStore
from pytripsync.storage import KeyValueStore

_logger = logging.getLogger(__name__)


class TripSyncClient:
    """Keeps a passenger's trip state in sync with the backend.

    Usage::

        async with TripSyncClient(config, trip_source=source) as client:
            await client.set_identity("user-1", Card(card_number="1234", balance=500))
            await client.tap_in("1234", "BUS-42")
    """

    def __init__(
        self,
        config: TripSyncConfig,
        *,
        trip_source: TripStatusSource,
        tap_source: TapSource | None = None,
        notification_source: NotificationSource | None = None,
        storage: KeyValueStore | None = None,
        clock: Clock | None = None,
        on_new_notification: Callable[[int], None] | None = None,
    ) -> None:
        self._config = config
        self._clock: Clock = clock or SystemClock.for_zone(config.time_zone)
        self._on_new_notification = on_new_notification
        self._user_id: str | None = None
        self._foreground = True

        self.store = SessionStore(
            trip_source=trip_source,
            tap_source=tap_source,
            clock=self._clock,
            overdraft_floor=config.overdraft_floor,
            min_tap_in_balance=config.min_tap_in_balance,
        )
        self.scheduler = DeadlineClosureScheduler(
            self.store,
            cutoff=config.cutoff,
            penalty=config.deadline_penalty,
            clock=self._clock,
            storage=storage,
            recheck_interval=config.closure_recheck_seconds,
        )
        self.trip_poller = PollingCoordinator(
            self.store.refresh_trip_status,
            name="trip-status",
            interval_provider=self._trip_interval,
            enabled=config.trip_polling_enabled,
            only_when_foreground=config.only_when_foreground,
            requires_subject=True,
            min_spacing_ms=config.trip_min_spacing_ms,
            restart_grace_ms=config.restart_grace_ms,
            clock=self._clock,
        )

        self.notifications: NotificationStore | None = None
        self.notification_poller: PollingCoordinator | None = None
        if notification_source is not None:
            self.notifications = NotificationStore(
                notification_source,
                card_provider=lambda: self.store.card_identifier,
                page_size=config.notification_page_size,
                clock=self._clock,
            )
            self.notifications.subscribe(self._on_notifications_changed)
            self.notification_poller = PollingCoordinator(
                self.notifications.check_unread_count,
                name="notifications",
                interval_provider=lambda: config.notification_interval_ms,
                enabled=config.notification_polling_enabled,
                only_when_foreground=config.only_when_foreground,
                requires_subject=True,
                min_spacing_ms=config.notification_min_spacing_ms,
                restart_grace_ms=config.restart_grace_ms,
                start_delay_ms=config.notification_start_delay_ms,
                clock=self._clock,
            )

        self._unsubscribe: Callable[[], None] | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> TripSyncClient:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def start(self) -> None:
        self.scheduler.attach()
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self._on_status_change)
        for poller in self._pollers():
            poller.reevaluate()

    async def close(self) -> None:
        for poller in self._pollers():
            await poller.close()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.scheduler.close()

    def _pollers(self) -> list[PollingCoordinator]:
        pollers = [self.trip_poller]
        if self.notification_poller is not None:
            pollers.append(self.notification_poller)
        return pollers

    # ------------------------------------------------------------------
    # Host events
    # ------------------------------------------------------------------

    async def set_identity(self, user_id: str | None, card: Card | str | None) -> Session | None:
        """Sign in with *card*, or sign out when either argument is ``None``."""
        if user_id is None or card is None:
            self._user_id = None
            self.scheduler.cancel_all()
            self.store.clear()
            if self.notifications is not None:
                self.notifications.clear()
            self._update_gates(authenticated=False, subject_present=False)
            _logger.info("Signed out")
            return None

        if isinstance(card, str):
            card = Card(raw={}, card_number=card)
        if self.store.card_identifier not in (None, card.card_number):
            self.scheduler.cancel_all()
            self.store.clear()
            if self.notifications is not None:
                self.notifications.clear()

        self._user_id = user_id
        session = self.store.begin_session(card.card_number, balance=card.balance, session_id=user_id)
        _logger.info("Signed in card=%s", mask_card(card.card_number))
        self._update_gates(authenticated=True, subject_present=True)
        await self.scheduler.reconcile()
        return session

    async def set_foreground(self, foreground: bool) -> None:
        """Report host visibility. Returning to the foreground reconciles closures."""
        was_foreground = self._foreground
        self._foreground = foreground
        self._update_gates(foreground=foreground)
        if foreground and not was_foreground and self.store.snapshot() is not None:
            await self.scheduler.reconcile()

    def _update_gates(self, **changes: bool) -> None:
        for poller in self._pollers():
            poller.update_gates(**changes)

    # ------------------------------------------------------------------
    # Passenger operations
    # ------------------------------------------------------------------

    async def tap_in(
        self,
        card_identifier: str,
        bus_reference: str,
        *,
        location: Coordinate | None = None,
    ) -> Decimal:
        return await self.store.tap_in(card_identifier, bus_reference, location=location)

    async def tap_out(self, card_identifier: str, fare_amount: Any) -> Decimal:
        return await self.store.tap_out(card_identifier, fare_amount, cause=StatusChangeCause.TAP_OUT)

    async def recharge(self, card_identifier: str, amount: Any) -> Decimal:
        return await self.store.recharge(card_identifier, amount)

    async def refresh_trip_status(self) -> TripStatus:
        return await self.store.refresh_trip_status()

    # ------------------------------------------------------------------
    # Internal callbacks
    # ------------------------------------------------------------------

    def _trip_interval(self) -> float:
        if self.store.trip_status == TripStatus.ACTIVE:
            return self._config.trip_active_interval_ms
        return self._config.trip_idle_interval_ms

    def _on_status_change(self, event: TripStatusChanged) -> None:
        self.trip_poller.refresh_interval()

    def _on_notifications_changed(self, previous: NotificationState, current: NotificationState) -> None:
        if self._on_new_notification is None or current.unread_count <= previous.unread_count:
            return
        try:
            self._on_new_notification(current.unread_count)
        except Exception:
            _logger.debug("on_new_notification callback failed", exc_info=True)
