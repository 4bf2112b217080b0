"""型付きのプロセス内イベントレジストリ"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

logger = structlog.stdlib.get_logger(__name__)


class EventKind(StrEnum):
    """制御プレーンが発行するイベントの種類。"""

    WATCHER_STARTED = "watcher:started"
    WATCHER_STOPPED = "watcher:stopped"
    CHANGE_DETECTED = "change:detected"
    CHANGE_APPLIED = "change:applied"
    CHANGE_FAILED = "change:failed"
    CHANGE_IGNORED = "change:ignored"
    BACKUP_CREATED = "backup:created"
    BACKUP_RESTORED = "backup:restored"
    ROLLBACK_COMPLETED = "rollback:completed"
    FLAG_LOADED = "flag:loaded"
    FLAG_EVALUATED = "flag:evaluated"
    FLAG_CHANGED = "flag:changed"
    FLAG_ERROR = "flag:error"
    CONFIG_RELOADED = "config:reloaded"
    CONFIG_CHANGED = "config:changed"
    ERROR = "error"


@dataclass
class Event:
    """購読者へ配送されるイベント。"""

    kind: EventKind
    payload: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


EventHandler = Callable[[Event], Awaitable[None] | None]


class Subscription:
    """EventBus.subscribe が返す購読解除ハンドル。"""

    def __init__(self, bus: EventBus, kind: EventKind | None, handler: EventHandler) -> None:
        self._bus = bus
        self._kind = kind
        self._handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if self._active:
            self._bus._remove(self._kind, self._handler)
            self._active = False

    __call__ = unsubscribe


class EventBus:
    """EventKind をキーにした Pub/Sub レジストリ。

    ハンドラは通常の関数でもコルーチン関数でもよい。コルーチンは実行中の
    ループにスケジュールする。例外を送出したハンドラはログに記録され、
    発行元や他のハンドラには影響しない。
    """

    def __init__(self) -> None:
        self._handlers: dict[EventKind | None, list[EventHandler]] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def subscribe(self, kind: EventKind, handler: EventHandler) -> Subscription:
        """handler を 1 種類のイベントに登録する。"""
        self._handlers.setdefault(kind, []).append(handler)
        return Subscription(self, kind, handler)

    def subscribe_all(self, handler: EventHandler) -> Subscription:
        """handler をすべての種類のイベントに登録する。"""
        self._handlers.setdefault(None, []).append(handler)
        return Subscription(self, None, handler)

    def handler_count(self, kind: EventKind) -> int:
        return len(self._handlers.get(kind, [])) + len(self._handlers.get(None, []))

    def emit(self, kind: EventKind, **payload: Any) -> Event:
        event = Event(kind=kind, payload=payload)
        handlers = [*self._handlers.get(kind, []), *self._handlers.get(None, [])]
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    self._schedule(result, kind)
            except Exception:
                logger.exception("event handler failed", event_kind=str(kind))
        return event

    async def drain(self) -> None:
        """これまでにスケジュールしたコルーチンハンドラの完了を待つ。"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _schedule(self, awaitable: Awaitable[None], kind: EventKind) -> None:
        async def _run() -> None:
            try:
                await awaitable
            except Exception:
                logger.exception("async event handler failed", event_kind=str(kind))

        task = asyncio.get_running_loop().create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _remove(self, kind: EventKind | None, handler: EventHandler) -> None:
        handlers = self._handlers.get(kind)
        if handlers and handler in handlers:
            handlers.remove(handler)
