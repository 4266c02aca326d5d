"""Structural interfaces for the external collaborators.

The core never talks to a network directly. Applications pass objects that
satisfy these protocols; tests pass in-memory doubles.

Implementations report transient failures with
:class:`pytripsync.exceptions.SourceUnavailableError` and domain failures with
:class:`~pytripsync.exceptions.CardNotFoundError` or
:class:`~pytripsync.exceptions.InsufficientBalanceError`.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal
from typing import Protocol

from pytripsync.models.notification import Notification
from pytripsync.models.tap import TapResult
from pytripsync.models.trip import Trip


class TripStatusSource(Protocol):
    async def query_ongoing_trip(self, session_id: str) -> Trip | None:
        """Return the passenger's running trip, or ``None`` if there is none."""
        ...


class TapSource(Protocol):
    async def tap_in(self, card_identifier: str, bus_reference: str) -> TapResult: ...

    async def tap_out(self, card_identifier: str, bus_reference: str | None, fare_amount: Decimal) -> TapResult: ...


class NotificationSource(Protocol):
    async def list_notifications(self, card_identifier: str, page: int, page_size: int) -> Sequence[Notification]: ...

    async def mark_read(self, notification_id: str) -> None: ...

    async def mark_all_read(self, card_identifier: str) -> None: ...
