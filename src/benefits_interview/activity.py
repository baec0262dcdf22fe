"""Idle tracking and inactivity warnings."""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional, Union

from .config import CompletionThresholds
from .models import utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
TickCallback = Callable[[datetime], Union[None, Awaitable[None]]]


def create_idle_warning(
    idle_minutes: float,
    thresholds: Optional[CompletionThresholds] = None,
) -> str:
    """Warning text for the UI; empty while the user is active."""

    limits = thresholds or CompletionThresholds()
    if idle_minutes >= limits.idle_final_warning_minutes:
        remaining = limits.idle_timeout_minutes - limits.idle_final_warning_minutes
        unit = "minute" if remaining == 1 else "minutes"
        return (
            f"Your interview will auto-complete in {remaining:g} {unit} due "
            "to inactivity. Please respond to continue."
        )
    if idle_minutes >= limits.idle_warning_minutes:
        return (
            "Are you still there? The interview will timeout soon if there's "
            "no response."
        )
    return ""


class ActivityTracker:
    """Remembers the last transcript event and re-arms the idle watchdog."""

    def __init__(
        self,
        thresholds: Optional[CompletionThresholds] = None,
        *,
        clock: Clock = utcnow,
        check_interval: float = 60.0,
    ) -> None:
        self._thresholds = thresholds or CompletionThresholds()
        self._clock = clock
        self._check_interval = check_interval
        self._last_activity_at = clock()
        self._on_tick: Optional[TickCallback] = None
        self._watchdog: Optional[asyncio.Task[None]] = None
        self._in_callback = False

    @property
    def last_activity_at(self) -> datetime:
        return self._last_activity_at

    def touch(self, at: Optional[datetime] = None) -> None:
        self._last_activity_at = at or self._clock()
        if self._on_tick is not None:
            self._arm()

    def idle_minutes(self, now: Optional[datetime] = None) -> float:
        current = now or self._clock()
        elapsed = (current - self._last_activity_at).total_seconds()
        return max(elapsed, 0.0) / 60

    def warning(self, now: Optional[datetime] = None) -> str:
        return create_idle_warning(self.idle_minutes(now), self._thresholds)

    def start(self, on_tick: TickCallback) -> None:
        """Call ``on_tick`` every check interval until stopped."""

        self._on_tick = on_tick
        self._arm()

    async def stop(self) -> None:
        self._on_tick = None
        task = self._watchdog
        self._watchdog = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _arm(self) -> None:
        if self._watchdog is not None and not self._watchdog.done():
            if self._in_callback:
                # The loop sleeps a full interval again once the tick returns.
                return
            self._watchdog.cancel()
        self._watchdog = asyncio.create_task(self._watch())

    async def _watch(self) -> None:
        while self._on_tick is not None:
            await asyncio.sleep(self._check_interval)
            callback = self._on_tick
            if callback is None:
                return
            self._in_callback = True
            try:
                result = callback(self._clock())
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 # pylint: disable=broad-except
                logger.exception("Idle watchdog callback failed")
            finally:
                self._in_callback = False
