"""Gated, debounced periodic execution of an async action.

A :class:`PollingCoordinator` owns at most one loop task. The loop performs
one invocation when it starts and then one per interval. Every invocation,
timer-driven or on demand, passes through the same debounce: calls closer
than ``min_spacing_ms`` to the last accepted call are dropped, and so are calls
arriving while the previous action is still running.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pytripsync._clock import Clock, SystemClock
from pytripsync._constants import MIN_INTERVAL_MS, RESTART_GRACE_MS

_logger = logging.getLogger(__name__)

_DEFAULT_INTERVAL_MS = 30_000.0


@dataclasses.dataclass(frozen=True)
class GateState:
    """Conditions that decide whether a coordinator may run."""

    enabled: bool = True
    authenticated: bool = False
    subject_present: bool = False
    foreground: bool = True


@dataclasses.dataclass(frozen=True)
class RunToken:
    """Identifies one start-to-stop run of a coordinator."""

    name: str
    generation: int
    interval_ms: float


@dataclasses.dataclass
class PollState:
    last_invocation: float | None = None
    """Monotonic seconds of the last accepted invocation."""
    is_running: bool = False
    current_interval_ms: float | None = None


class PollingCoordinator:
    """Run *action* periodically while its gates are open.

    Parameters
    ----------
    action : Callable[[], Awaitable[Any]]
        No-argument coroutine function. Exceptions are logged and swallowed.
    name : str
        Used in log lines and run tokens.
    interval_provider : Callable[[], float] or None
        Returns the interval in milliseconds. Read when a run is armed.
    enabled : bool
        Master switch.
    only_when_foreground : bool
        Keep the coordinator stopped while the host is backgrounded.
    requires_subject : bool
        Keep the coordinator stopped until a subject (e.g. a card) is present.
    min_spacing_ms : float
        Minimum time between two accepted invocations.
    restart_grace_ms : float
        Delay between stop and start in :meth:`restart`.
    start_delay_ms : float
        Delay before starting when :meth:`reevaluate` opens the gates.
    """

    def __init__(
        self,
        action: Callable[[], Awaitable[Any]],
        *,
        name: str = "poller",
        interval_provider: Callable[[], float] | None = None,
        enabled: bool = True,
        only_when_foreground: bool = True,
        requires_subject: bool = False,
        min_spacing_ms: float = 0.0,
        restart_grace_ms: float = RESTART_GRACE_MS,
        start_delay_ms: float = 0.0,
        clock: Clock | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._action = action
        self._name = name
        self._interval_provider = interval_provider or (lambda: _DEFAULT_INTERVAL_MS)
        self._only_when_foreground = only_when_foreground
        self._requires_subject = requires_subject
        self._min_spacing_ms = max(0.0, min_spacing_ms)
        self._restart_grace_ms = max(0.0, restart_grace_ms)
        self._start_delay_ms = max(0.0, start_delay_ms)
        self._clock: Clock = clock or SystemClock()
        self._logger = logger or _logger

        self._gates = GateState(enabled=enabled)
        self._state = PollState()
        self._generation = 0
        self._token: RunToken | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._action_task: asyncio.Task[None] | None = None
        self._pending_start: asyncio.Task[None] | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def gates(self) -> GateState:
        return self._gates

    @property
    def state(self) -> PollState:
        return dataclasses.replace(self._state)

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def token(self) -> RunToken | None:
        return self._token

    @property
    def should_run(self) -> bool:
        gates = self._gates
        if self._closed or not gates.enabled or not gates.authenticated:
            return False
        if self._requires_subject and not gates.subject_present:
            return False
        return not (self._only_when_foreground and not gates.foreground)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _current_interval(self) -> float:
        return max(MIN_INTERVAL_MS, float(self._interval_provider()))

    def start(self) -> RunToken | None:
        """Start the loop; returns the live run token, or ``None`` when gated."""
        if self._token is not None:
            return self._token
        if not self.should_run:
            self._logger.debug("%s: start skipped, gates closed (%s)", self._name, self._gates)
            return None

        self._cancel_pending_start()
        self._generation += 1
        token = RunToken(self._name, self._generation, self._current_interval())
        self._token = token
        self._state.is_running = True
        self._state.current_interval_ms = token.interval_ms
        self._loop_task = asyncio.get_running_loop().create_task(
            self._run(token), name=f"pytripsync-{self._name}-{token.generation}"
        )
        self._logger.debug("%s: started, interval %.0f ms", self._name, token.interval_ms)
        return token

    def stop(self, token: RunToken | None = None) -> bool:
        """Stop the current run. Returns ``False`` if nothing was stopped.

        With *token*, only the run that token belongs to is stopped.
        """
        if token is not None and token != self._token:
            self._logger.debug("%s: stale stop ignored (run %d)", self._name, token.generation)
            return False
        self._cancel_pending_start()
        if self._token is None:
            return False

        loop_task = self._loop_task
        self._token = None
        self._loop_task = None
        self._state = PollState()
        if loop_task is not None and not loop_task.done():
            loop_task.cancel()
        self._logger.debug("%s: stopped", self._name)
        return True

    def restart(self) -> None:
        """Stop, then start again after the restart grace delay."""
        self.stop()
        self._schedule_start(self._restart_grace_ms)

    def refresh_interval(self) -> bool:
        """Restart when the interval provider disagrees with the live run."""
        token = self._token
        if token is None:
            return False
        interval = self._current_interval()
        if interval == token.interval_ms:
            return False
        self._logger.debug("%s: interval %.0f -> %.0f ms", self._name, token.interval_ms, interval)
        self.restart()
        return True

    def update_gates(self, **changes: bool) -> None:
        """Apply gate changes (``enabled``, ``authenticated``, ``subject_present``, ``foreground``)."""
        self._gates = dataclasses.replace(self._gates, **changes)
        self.reevaluate()

    def reevaluate(self) -> None:
        """Start or stop according to the current gates."""
        if not self.should_run:
            self.stop()
            return
        if self._token is not None or self._pending_start is not None:
            return
        if self._start_delay_ms > 0:
            self._schedule_start(self._start_delay_ms)
        else:
            self.start()

    async def close(self) -> None:
        """Stop and cancel any in-flight action. The coordinator cannot be restarted."""
        self._closed = True
        loop_task = self._loop_task
        self.stop()
        tasks = [t for t in (loop_task, self._action_task) if t is not None and not t.done()]
        self._action_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _schedule_start(self, delay_ms: float) -> None:
        self._cancel_pending_start()
        self._pending_start = asyncio.get_running_loop().create_task(
            self._delayed_start(delay_ms / 1000.0), name=f"pytripsync-{self._name}-pending-start"
        )

    def _cancel_pending_start(self) -> None:
        pending = self._pending_start
        self._pending_start = None
        if pending is not None and not pending.done() and pending is not asyncio.current_task():
            pending.cancel()

    async def _delayed_start(self, delay: float) -> None:
        await self._clock.sleep(delay)
        self._pending_start = None
        self.start()

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def check_now(self) -> bool:
        """Invoke the action immediately, subject to debounce. Returns whether it ran."""
        if self._closed:
            return False
        task = self._try_begin("check")
        if task is None:
            return False
        await asyncio.shield(task)
        return True

    def _try_begin(self, trigger: str) -> asyncio.Task[None] | None:
        inflight = self._action_task
        if inflight is not None and not inflight.done():
            self._logger.debug("%s: %s dropped, previous call still running", self._name, trigger)
            return None

        now = self._clock.monotonic()
        last = self._state.last_invocation
        if last is not None and (now - last) * 1000.0 < self._min_spacing_ms:
            self._logger.debug(
                "%s: %s dropped, %.0f ms since last call (min %.0f ms)",
                self._name,
                trigger,
                (now - last) * 1000.0,
                self._min_spacing_ms,
            )
            return None

        self._state.last_invocation = now
        task = asyncio.get_running_loop().create_task(self._call_action(trigger))
        self._action_task = task
        return task

    async def _call_action(self, trigger: str) -> None:
        try:
            await self._action()
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.warning("%s: %s call failed", self._name, trigger, exc_info=True)

    async def _run(self, token: RunToken) -> None:
        task = self._try_begin("start")
        if task is not None:
            await asyncio.shield(task)
        while self._token is token:
            await self._clock.sleep(token.interval_ms / 1000.0)
            if self._token is not token:
                break
            task = self._try_begin("timer")
            if task is not None:
                await asyncio.shield(task)
