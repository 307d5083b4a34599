"""Deferred-callback scheduling for timer-driven side effects.

Welcome messages and simulated replies are not fired inline by the call
that triggers them; they are submitted to a ``Scheduler`` and run later.

Provides:
- ``Scheduler``         — abstract ``call_later`` interface
- ``AsyncioScheduler``  — production scheduler on an asyncio event loop
- ``ManualScheduler``   — virtual clock for tests (``advance()`` instead of sleeping)

Callbacks are fire-and-forget: there is no cancellation of a single entry.
Exceptions raised by a callback are logged, never propagated to the loop.
"""

from __future__ import annotations

import abc
import asyncio
import heapq
import itertools
from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger


def _run_logged(callback: Callable[[], Any], label: str) -> None:
    try:
        callback()
    except Exception as exc:
        logger.error("[Scheduler] callback {!r} failed: {!r}", label, exc)


# ---------------------------------------------------------------------------
# Abstract scheduler
# ---------------------------------------------------------------------------

class Scheduler(abc.ABC):
    """Runs callbacks after a delay (seconds)."""

    @abc.abstractmethod
    def call_later(
        self,
        delay: float,
        callback: Callable[[], Any],
        *,
        label: str = "",
    ) -> None:
        """Schedule *callback* to run once, *delay* seconds from now."""

    @property
    @abc.abstractmethod
    def pending(self) -> int:
        """Number of callbacks scheduled but not yet run."""

    def shutdown(self) -> None:
        """Abandon pending callbacks (best-effort)."""


# ---------------------------------------------------------------------------
# asyncio-backed scheduler
# ---------------------------------------------------------------------------

class AsyncioScheduler(Scheduler):
    """Scheduler built on ``loop.call_later``.

    Callbacks execute on the loop thread, so they are serialized with every
    other mutation made from that loop.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._handles: set[asyncio.TimerHandle] = set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(
        self,
        delay: float,
        callback: Callable[[], Any],
        *,
        label: str = "",
    ) -> None:
        loop = self._get_loop()
        handle: asyncio.TimerHandle | None = None

        def _fire() -> None:
            self._handles.discard(handle)
            _run_logged(callback, label)

        handle = loop.call_later(max(0.0, delay), _fire)
        self._handles.add(handle)
        logger.debug("[Scheduler] {} scheduled in {:.2f}s", label or "callback", delay)

    @property
    def pending(self) -> int:
        return len(self._handles)

    def shutdown(self) -> None:
        if self._handles:
            logger.info("[Scheduler] abandoning {} pending callbacks", len(self._handles))
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()


# ---------------------------------------------------------------------------
# Virtual-clock scheduler (testing)
# ---------------------------------------------------------------------------

@dataclass(order=True)
class _Entry:
    due: float
    seq: int
    callback: Callable[[], Any] = field(compare=False)
    label: str = field(default="", compare=False)


class ManualScheduler(Scheduler):
    """Scheduler driven by an explicit virtual clock.

    Nothing runs until ``advance()`` or ``run_all()`` is called. Entries
    fire in due-time order; entries due at the same instant fire in the
    order they were scheduled.

    >>> sched = ManualScheduler()
    >>> sched.call_later(1.0, lambda: print("tick"))
    >>> ran = sched.advance(1.0)
    tick
    """

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self._queue: list[_Entry] = []
        self._seq = itertools.count()

    def call_later(
        self,
        delay: float,
        callback: Callable[[], Any],
        *,
        label: str = "",
    ) -> None:
        entry = _Entry(self.now + max(0.0, delay), next(self._seq), callback, label)
        heapq.heappush(self._queue, entry)

    @property
    def pending(self) -> int:
        return len(self._queue)

    def advance(self, seconds: float) -> int:
        """Move the clock forward and run everything that became due.

        Callbacks scheduled by a firing callback run in the same call when
        they fall inside the window. Returns the number of callbacks run.
        """
        target = self.now + seconds
        ran = 0
        while self._queue and self._queue[0].due <= target:
            entry = heapq.heappop(self._queue)
            self.now = entry.due
            _run_logged(entry.callback, entry.label)
            ran += 1
        self.now = target
        return ran

    def run_all(self) -> int:
        """Run every pending callback, advancing the clock as needed."""
        ran = 0
        while self._queue:
            entry = heapq.heappop(self._queue)
            self.now = max(self.now, entry.due)
            _run_logged(entry.callback, entry.label)
            ran += 1
        return ran

    def shutdown(self) -> None:
        self._queue.clear()
