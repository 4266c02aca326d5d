"""Paged notification list with an unread counter."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Sequence

from pytripsync._clock import Clock, SystemClock
from pytripsync._constants import NOTIFICATION_PAGE_SIZE
from pytripsync._redact import mask_card
from pytripsync.exceptions import InvalidStateError
from pytripsync.models.notification import Notification
from pytripsync.sources import NotificationSource

_logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class NotificationState:
    items: tuple[Notification, ...] = ()
    unread_count: int = 0
    page: int = 0
    has_more: bool = True
    is_loading: bool = False


NotificationListener = Callable[[NotificationState, NotificationState], None]


class NotificationStore:
    """Holds loaded notifications for the signed-in card.

    ``card_provider`` returns the current card identifier, or ``None`` when
    signed out.
    """

    def __init__(
        self,
        source: NotificationSource,
        *,
        card_provider: Callable[[], str | None],
        page_size: int = NOTIFICATION_PAGE_SIZE,
        clock: Clock | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._source = source
        self._card_provider = card_provider
        self._page_size = page_size
        self._clock: Clock = clock or SystemClock()
        self._logger = logger or _logger
        self._state = NotificationState()
        self._listeners: list[NotificationListener] = []

    @property
    def state(self) -> NotificationState:
        return self._state

    @property
    def unread_count(self) -> int:
        return self._state.unread_count

    @property
    def items(self) -> tuple[Notification, ...]:
        return self._state.items

    def subscribe(self, listener: NotificationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _set(self, **changes: object) -> None:
        previous = self._state
        current = dataclasses.replace(previous, **changes)
        if current == previous:
            return
        self._state = current
        for listener in list(self._listeners):
            try:
                listener(previous, current)
            except Exception:
                self._logger.debug("Notification listener failed", exc_info=True)

    @staticmethod
    def _count_unread(items: Sequence[Notification]) -> int:
        return sum(1 for item in items if not item.is_read)

    def _require_card(self) -> str:
        card = self._card_provider()
        if not card:
            raise InvalidStateError("no card is signed in")
        return card

    async def check_unread_count(self) -> int:
        """Fetch the first page and update the unread count from it."""
        card = self._card_provider()
        if not card:
            return self._state.unread_count
        items = await self._source.list_notifications(card, 1, self._page_size)
        count = self._count_unread(items)
        self._logger.debug("Unread notifications card=%s count=%d", mask_card(card), count)
        self._set(unread_count=count)
        return count

    async def load_notifications(self, page: int = 1, *, reset: bool = False) -> tuple[Notification, ...]:
        """Load *page*. ``reset`` (or page 1) replaces the loaded list."""
        if self._state.is_loading:
            self._logger.debug("Notification load already running; skipped")
            return self._state.items
        card = self._require_card()

        self._set(is_loading=True)
        try:
            fetched = list(await self._source.list_notifications(card, page, self._page_size))
        except BaseException:
            self._set(is_loading=False)
            raise

        if reset or page == 1:
            items = tuple(fetched)
        else:
            known = {item.id for item in self._state.items}
            items = self._state.items + tuple(item for item in fetched if item.id not in known)
        self._set(
            items=items,
            unread_count=self._count_unread(items),
            page=page,
            has_more=len(fetched) == self._page_size,
            is_loading=False,
        )
        return items

    async def load_more(self) -> tuple[Notification, ...]:
        if not self._state.has_more:
            return self._state.items
        return await self.load_notifications(self._state.page + 1)

    async def refresh(self) -> tuple[Notification, ...]:
        return await self.load_notifications(1, reset=True)

    async def mark_as_read(self, notification_id: str) -> None:
        await self._source.mark_read(notification_id)
        read_at = self._clock.now()
        changed = False
        items: list[Notification] = []
        for item in self._state.items:
            if item.id == notification_id and not item.is_read:
                item = item.model_copy(update={"is_read": True, "read_at": read_at})
                changed = True
            items.append(item)
        if not changed:
            return
        self._set(items=tuple(items), unread_count=max(0, self._state.unread_count - 1))

    async def mark_all_as_read(self) -> None:
        card = self._require_card()
        await self._source.mark_all_read(card)
        read_at = self._clock.now()
        items = tuple(
            item if item.is_read else item.model_copy(update={"is_read": True, "read_at": read_at})
            for item in self._state.items
        )
        self._set(items=items, unread_count=0)

    def clear(self) -> None:
        self._set(items=(), unread_count=0, page=0, has_more=True, is_loading=False)
