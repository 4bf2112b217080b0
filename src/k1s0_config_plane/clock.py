"""差し替え可能なクロックとタイマー"""

from __future__ import annotations

import asyncio
import contextlib
import heapq
import inspect
import itertools
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import structlog

logger = structlog.stdlib.get_logger(__name__)

TimerCallback = Callable[[], Awaitable[None] | None]


async def _invoke(callback: TimerCallback) -> None:
    try:
        result = callback()
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("timer callback failed")


class TimerHandle(ABC):
    """スケジュールしたタイマーのハンドル。"""

    @abstractmethod
    def cancel(self) -> None:
        """タイマーを取り消す。2 回目以降の呼び出しは何もしない。"""
        ...

    @property
    @abstractmethod
    def cancelled(self) -> bool: ...


class Clock(ABC):
    """時刻の取得元と、単発・周期タイマー。"""

    @abstractmethod
    def monotonic(self) -> float:
        """任意の起点からの秒数。経過時間の計測に使う。"""
        ...

    @abstractmethod
    def utcnow(self) -> datetime:
        """現在の実時刻 (タイムゾーン付き)。"""
        ...

    @abstractmethod
    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        """delay 秒後に callback を 1 回実行する。"""
        ...

    @abstractmethod
    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        """取り消されるまで interval 秒ごとに callback を実行する。"""
        ...


class _TaskTimer(TimerHandle):
    __slots__ = ("_task",)

    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task

    def cancel(self) -> None:
        self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()


class AsyncioClock(Clock):
    """実行中の asyncio イベントループを使うクロック。"""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    def monotonic(self) -> float:
        return time.monotonic()

    def utcnow(self) -> datetime:
        return datetime.now(UTC)

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        async def _run() -> None:
            await asyncio.sleep(delay)
            await _invoke(callback)

        return self._spawn(_run())

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        async def _run() -> None:
            while True:
                await asyncio.sleep(interval)
                await _invoke(callback)

        return self._spawn(_run())

    async def aclose(self) -> None:
        """このクロックで待機中のタイマーをすべて取り消す。"""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _spawn(self, coro: Awaitable[None]) -> TimerHandle:
        task = asyncio.get_running_loop().create_task(coro)  # type: ignore[arg-type]
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return _TaskTimer(task)


class _ManualTimer(TimerHandle):
    __slots__ = ("due", "interval", "callback", "_cancelled")

    def __init__(self, due: float, interval: float | None, callback: TimerCallback) -> None:
        self.due = due
        self.interval = interval
        self.callback = callback
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualClock(Clock):
    """テスト用の仮想クロック。advance を await したときだけ時間が進む。"""

    def __init__(self, start: datetime | None = None) -> None:
        self._start = start or datetime(2024, 1, 1, tzinfo=UTC)
        self._now = 0.0
        self._heap: list[tuple[float, int, _ManualTimer]] = []
        self._seq = itertools.count()

    def monotonic(self) -> float:
        return self._now

    def utcnow(self) -> datetime:
        return self._start + timedelta(seconds=self._now)

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        timer = _ManualTimer(self._now + max(delay, 0.0), None, callback)
        self._push(timer)
        return timer

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        timer = _ManualTimer(self._now + interval, interval, callback)
        self._push(timer)
        return timer

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, t in self._heap if not t.cancelled)

    async def advance(self, seconds: float) -> None:
        """時間を進め、期限の来たタイマーを順に実行して完了を待つ。"""
        target = self._now + seconds
        while self._heap and self._heap[0][0] <= target:
            _, _, timer = heapq.heappop(self._heap)
            if timer.cancelled:
                continue
            self._now = timer.due
            if timer.interval is not None:
                timer.due += timer.interval
                self._push(timer)
            await _invoke(timer.callback)
        self._now = target

    def _push(self, timer: _ManualTimer) -> None:
        heapq.heappush(self._heap, (timer.due, next(self._seq), timer))
