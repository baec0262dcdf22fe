"""Debounced coverage evaluation for a single interview session."""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

from .completion import completion_percentage
from .coverage_oracle import (
    CoverageEvaluation,
    CoverageOracleClient,
    CoverageOracleError,
)
from .models import SECTION_LABELS, SectionCoverage

logger = logging.getLogger(__name__)

DEFAULT_QUIET_PERIOD = 2.0

ChangeCallback = Callable[
    ["CoverageDebouncer"], Union[None, Awaitable[None]]
]


class DebouncerState(str, Enum):
    """Observable scheduling state of the debouncer."""

    IDLE = "idle"
    TIMER_PENDING = "timer_pending"
    EVALUATING = "evaluating"
    EVALUATING_WITH_RERUN = "evaluating_with_rerun"


class CoverageDebouncer:
    """Coalesces transcript changes into one oracle call per quiet period.

    At most one evaluation is in flight and at most one more is queued behind
    it. The in-flight call is never cancelled by new input.
    """

    def __init__(
        self,
        oracle: CoverageOracleClient,
        *,
        quiet_period: float = DEFAULT_QUIET_PERIOD,
        on_change: Optional[ChangeCallback] = None,
    ) -> None:
        self._oracle = oracle
        self._quiet_period = quiet_period
        self._on_change = on_change
        self._text = ""
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._rerun = False
        self._force = False
        self._closed = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._coverage: Optional[SectionCoverage] = None
        self._last_evaluation: Optional[CoverageEvaluation] = None
        self._evaluation_count = 0

    @property
    def coverage(self) -> Optional[SectionCoverage]:
        return self._coverage

    @property
    def is_loading(self) -> bool:
        return self._task is not None

    @property
    def last_error(self) -> Optional[Exception]:
        if self._last_evaluation is None:
            return None
        return self._last_evaluation.error

    @property
    def degraded(self) -> bool:
        return self.last_error is not None

    @property
    def evaluation_count(self) -> int:
        return self._evaluation_count

    @property
    def percentage(self) -> int:
        if self._coverage is None:
            return 0
        return completion_percentage(self._coverage)

    @property
    def missing_sections(self) -> List[str]:
        if self._coverage is None:
            return []
        return [SECTION_LABELS[name] for name in self._coverage.missing()]

    @property
    def state(self) -> DebouncerState:
        if self._task is not None:
            if self._rerun or self._timer is not None:
                return DebouncerState.EVALUATING_WITH_RERUN
            return DebouncerState.EVALUATING
        if self._timer is not None:
            return DebouncerState.TIMER_PENDING
        return DebouncerState.IDLE

    def update(self, transcript_text: str) -> None:
        """Record a transcript change and restart the quiet-period timer."""

        if self._closed:
            return
        self._text = transcript_text
        self._cancel_timer()
        if not transcript_text.strip():
            self._coverage = None
            self._last_evaluation = None
            self._rerun = False
            self._sync_idle()
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._quiet_period, self._on_timer)
        self._idle.clear()

    def refresh(self) -> None:
        """Evaluate now, skipping the quiet period."""

        if self._closed or not self._text.strip():
            return
        self._cancel_timer()
        if self._task is not None:
            self._rerun = True
            self._force = True
            return
        self._start_evaluation()

    async def wait_idle(self) -> None:
        """Block until no timer is armed and no evaluation is running."""

        await self._idle.wait()

    async def close(self) -> None:
        self._closed = True
        self._cancel_timer()
        task = self._task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._idle.set()

    def _on_timer(self) -> None:
        self._timer = None
        if self._task is not None:
            self._rerun = True
            return
        self._start_evaluation()

    def _start_evaluation(self) -> None:
        self._idle.clear()
        self._task = asyncio.create_task(self._evaluate(self._text))

    async def _evaluate(self, text: str) -> None:
        try:
            evaluation = await self._oracle.evaluate(text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 # pylint: disable=broad-except
            logger.exception("Coverage evaluation crashed")
            evaluation = CoverageEvaluation(
                coverage=SectionCoverage.empty(),
                error=CoverageOracleError(str(exc)),
            )
        self._evaluation_count += 1
        if self._text.strip():
            self._coverage = evaluation.coverage
            self._last_evaluation = evaluation
        if evaluation.degraded:
            logger.warning(
                "Coverage evaluation degraded: %s", evaluation.error
            )
        await self._notify()
        self._task = None
        self._after_evaluation(text)

    def _after_evaluation(self, evaluated_text: str) -> None:
        rerun, force = self._rerun, self._force
        self._rerun = False
        self._force = False
        if (
            rerun
            and not self._closed
            and self._text.strip()
            and (force or self._text != evaluated_text)
        ):
            self._start_evaluation()
            return
        self._sync_idle()

    async def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            result = self._on_change(self)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001 # pylint: disable=broad-except
            logger.exception("Coverage change callback failed")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _sync_idle(self) -> None:
        if self._timer is None and self._task is None:
            self._idle.set()

