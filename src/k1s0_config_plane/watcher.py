"""設定変更スケジューラー（フィルタ・検証・適用）"""

from __future__ import annotations

import asyncio
import copy
import functools
import inspect
from collections import deque
from collections.abc import Iterable
from dataclasses import replace
from pathlib import Path
from typing import Any, Protocol

import structlog

from . import metrics
from .backup import BackupStore
from .changes import (
    ChangeDetectionMode,
    ChangeStatus,
    ChangeType,
    ConfigurationChange,
    WatcherStatistics,
)
from .classifier import ChangeClassifier
from .clock import AsyncioClock, Clock, TimerHandle
from .events import EventBus, EventKind
from .exceptions import ErrorCodes, OperationTimeoutError, WatcherError
from .settings import WatchOptions
from .validation import (
    ConfigurationValidator,
    ImpactAssessment,
    RecommendedAction,
    Severity,
    ValidationIssue,
    ValidationResult,
)

logger = structlog.stdlib.get_logger(__name__)


class ConfigurationTarget(Protocol):
    """ウォッチャーとバックアップストアが操作する対象。"""

    def get_configuration(self) -> dict[str, Any]: ...

    def get_source(self, path: str) -> Any: ...

    async def update_configuration(self, config: dict[str, Any], *, replace: bool = False) -> None: ...

    async def reload(self, change: ConfigurationChange | None = None) -> None:
        """設定を再解決する。``change`` があれば先に取り込む。"""
        ...


async def _exists(path: str) -> bool:
    return await asyncio.to_thread(Path(path).exists)


class ConfigurationWatcher:
    """待機中・監視中の状態機械とモード別の適用制御。

    生のイベントは ``handle_event`` から受け取る。ファイルシステムの監視自体は
    ホストプロセスが行う。パイプラインの失敗はログに記録して ``error``
    イベントとして発行し、イベント発生元へは送出しない。
    """

    def __init__(
        self,
        target: ConfigurationTarget,
        *,
        options: WatchOptions | None = None,
        validator: ConfigurationValidator | None = None,
        backups: BackupStore | None = None,
        clock: Clock | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._target = target
        self._options = options or WatchOptions.defaults()
        self._validator = validator
        self._backups = backups
        self._clock = clock or AsyncioClock()
        self._bus = bus or EventBus()
        self._classifier = self._new_classifier(self._options)
        self._mode = self._options.mode
        self._watching = False
        self._paths: list[str] = []
        self._history: deque[ConfigurationChange] = deque(maxlen=self._options.history_limit)
        self._debounced: dict[str, tuple[ConfigurationChange, TimerHandle]] = {}
        self._queued: list[ConfigurationChange] = []
        self._scheduled_timer: TimerHandle | None = None
        self._started_at = self._clock.monotonic()
        self._statistics = WatcherStatistics(start_time=self._clock.utcnow())

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def options(self) -> WatchOptions:
        return self._options

    # -- lifecycle ----------------------------------------------------------

    async def start_watching(self, paths: str | Iterable[str], options: WatchOptions | None = None) -> None:
        """監視を開始する。監視中であれば先に停止する。"""
        if self._watching:
            await self.stop_watching()

        if options is not None:
            self._options = options
            self._classifier = self._new_classifier(options)
            self._mode = options.mode
            if self._history.maxlen != options.history_limit:
                self._history = deque(self._history, maxlen=options.history_limit)

        self._paths = [paths] if isinstance(paths, str) else list(paths)
        self._watching = True
        if self._mode == ChangeDetectionMode.SCHEDULED:
            self._start_schedule()

        logger.info("configuration watcher started", paths=self._paths, mode=str(self._mode))
        self._bus.emit(EventKind.WATCHER_STARTED, paths=list(self._paths), options=self._options)

    async def stop_watching(self) -> None:
        """保留中のタイマーをすべて取り消し、監視パスを破棄する。冪等。"""
        for _, handle in self._debounced.values():
            handle.cancel()
        self._debounced.clear()
        self._stop_schedule()
        self._paths = []

        if not self._watching:
            return
        self._watching = False
        logger.info("configuration watcher stopped")
        self._bus.emit(EventKind.WATCHER_STOPPED)

    def is_watching(self) -> bool:
        return self._watching

    def get_watched_paths(self) -> list[str]:
        return list(self._paths)

    def get_mode(self) -> ChangeDetectionMode:
        return self._mode

    def set_mode(self, mode: ChangeDetectionMode) -> None:
        """適用モードを切り替える。

        scheduled モードを抜けると定期実行を取り消す。実行中の
        デバウンスタイマーはそのまま発火させる。
        """
        self._mode = ChangeDetectionMode(mode)
        if self._mode == ChangeDetectionMode.SCHEDULED:
            if self._watching:
                self._start_schedule()
        else:
            self._stop_schedule()

    # -- pipeline -----------------------------------------------------------

    async def handle_event(self, path: str, event_type: ChangeType | str) -> ConfigurationChange | None:
        """生のファイルシステムイベントを 1 件パイプラインに通す。

        変更レコードを返す。フィルタで除外された場合や待機中の場合は None。
        """
        if not self._watching:
            return None
        try:
            change_type = ChangeType(event_type)
            if not self._classifier.should_process(path):
                return None

            change = await self._classifier.classify(
                path, change_type, previous_value=self._target.get_source(path)
            )

            if self._options.enable_validation:
                change.validation = await self.validate_change(change)
                if not change.validation.valid:
                    change.transition(ChangeStatus.IGNORED)
                    self._statistics.ignored_changes += 1
                    metrics.config_changes_ignored_total.add(1)
                    logger.warning(
                        "configuration change ignored",
                        path=path,
                        change_id=change.id,
                        errors=[i.message for i in change.validation.errors],
                    )
                    self._bus.emit(EventKind.CHANGE_IGNORED, change=change, reason="validation-failed")
                    return change

            if self._options.enable_auto_backup and self._backups is not None:
                await self._backups.create_backup(f"auto-backup-{change.timestamp:%Y%m%dT%H%M%S%f}")

            self._record(change)
            await self._dispatch(change)
            return change
        except Exception as e:
            logger.exception("configuration change pipeline failed", path=path)
            self._bus.emit(EventKind.ERROR, error=e, context="handle_event", path=path)
            return None

    async def flush(self) -> int:
        """キュー済みの変更を到着順に適用し、適用した件数を返す。"""
        pending, self._queued = self._queued, []
        done = 0
        try:
            for change in pending:
                await self._apply(change)
                done += 1
        finally:
            # 中断された場合、未着手の変更をキューの先頭へ戻す
            rest = [c for c in pending[done:] if c.status == ChangeStatus.PENDING]
            if rest:
                self._queued = rest + self._queued
        return done

    async def trigger_reload(self, path: str | None = None) -> None:
        """キュー済みの変更（``path`` 指定時はそのパスのみ）を適用する。なければ再読み込みする。"""
        selected = [c for c in self._queued if path is None or c.path == path]
        if selected:
            selected_ids = {c.id for c in selected}
            self._queued = [c for c in self._queued if c.id not in selected_ids]
            for change in selected:
                await self._apply(change)
            return

        change = ConfigurationChange(
            type=ChangeType.FILE_MODIFIED,
            path=path or "manual-trigger",
            timestamp=self._clock.utcnow(),
        )
        await self._apply(change)

    async def rollback(self, change_id: str) -> ConfigurationChange:
        """記録済みの変更の逆を適用し、逆変更のレコードを返す。"""
        original = next((c for c in self._history if c.id == change_id), None)
        if original is None:
            raise WatcherError(f"change '{change_id}' not found", code=ErrorCodes.CHANGE_NOT_FOUND)

        inverse = ConfigurationChange(
            type=ChangeType.FILE_MODIFIED,
            path=original.path,
            timestamp=self._clock.utcnow(),
            requires_restart=original.requires_restart,
            previous_value=copy.deepcopy(original.new_value),
            new_value=copy.deepcopy(original.previous_value),
            rollback_of=original.id,
        )
        self._record(inverse)
        await self._apply(inverse)

        logger.info("configuration change rolled back", change_id=change_id, status=str(inverse.status))
        self._bus.emit(EventKind.ROLLBACK_COMPLETED, change_id=change_id, change=inverse)
        return inverse

    async def validate_change(self, change: ConfigurationChange) -> ValidationResult:
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []
        action = RecommendedAction.REVIEW

        try:
            if not change.type.is_deletion and not await _exists(change.path):
                errors.append(
                    ValidationIssue(path=change.path, message=f"file not accessible: {change.path}", type="file.access")
                )
            if change.error is not None:
                errors.append(ValidationIssue(path=change.path, message=str(change.error), type="parse"))
            if self._validator is not None and change.new_value is not None:
                result = self._validator.validate(change.new_value, self._options.schema_name)
                if inspect.isawaitable(result):
                    result = await result
                errors.extend(result.errors)
                warnings.extend(result.warnings)
        except Exception as e:
            errors.append(
                ValidationIssue(path=change.path, message=f"validator raised: {e}", type="validator.exception")
            )
            action = RecommendedAction.REJECT

        if not errors:
            action = RecommendedAction.REVIEW if warnings else RecommendedAction.APPLY
        return ValidationResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            impact=ImpactAssessment(
                level=Severity.HIGH if change.requires_restart else Severity.LOW,
                requires_restart=change.requires_restart,
                affected_components=["configuration"],
                description="restart required" if change.requires_restart else "hot reload",
            ),
            recommended_action=action,
        )

    # -- history and statistics ---------------------------------------------

    def get_change_history(self, limit: int | None = None) -> list[ConfigurationChange]:
        """新しい順。"""
        history = list(self._history)
        return history[:limit] if limit else history

    def get_change(self, change_id: str) -> ConfigurationChange | None:
        return next((c for c in self._history if c.id == change_id), None)

    def clear_change_history(self) -> None:
        self._history.clear()

    def get_statistics(self) -> WatcherStatistics:
        return replace(
            self._statistics,
            uptime_seconds=self._clock.monotonic() - self._started_at,
            watched_paths=len(self._paths),
            history_size=len(self._history),
            pending_changes=len(self._queued) + len(self._debounced),
        )

    def clear_statistics(self) -> None:
        self._started_at = self._clock.monotonic()
        self._statistics = WatcherStatistics(start_time=self._clock.utcnow())

    # -- internals ----------------------------------------------------------

    def _new_classifier(self, options: WatchOptions) -> ChangeClassifier:
        return ChangeClassifier(
            self._clock,
            include=options.include,
            exclude=options.exclude,
            restart_patterns=options.restart_patterns,
        )

    def _record(self, change: ConfigurationChange) -> None:
        self._statistics.total_changes += 1
        self._statistics.last_change_time = change.timestamp
        self._history.appendleft(change)
        self._bus.emit(EventKind.CHANGE_DETECTED, change=change)

    async def _dispatch(self, change: ConfigurationChange) -> None:
        mode = self._mode
        if mode == ChangeDetectionMode.IMMEDIATE:
            await self._apply(change)
        elif mode == ChangeDetectionMode.DEBOUNCED:
            self._debounce(change)
        elif mode in (ChangeDetectionMode.BATCH, ChangeDetectionMode.SCHEDULED, ChangeDetectionMode.MANUAL):
            self._queued.append(change)
            if mode == ChangeDetectionMode.BATCH and len(self._queued) >= self._options.batch_size:
                await self.flush()

    def _debounce(self, change: ConfigurationChange) -> None:
        previous = self._debounced.pop(change.path, None)
        if previous is not None:
            superseded, handle = previous
            handle.cancel()
            superseded.superseded_by = change.id
        handle = self._clock.call_later(
            self._options.debounce_ms / 1000,
            functools.partial(self._fire_debounced, change.path, change.id),
        )
        self._debounced[change.path] = (change, handle)

    async def _fire_debounced(self, path: str, change_id: str) -> None:
        entry = self._debounced.get(path)
        if entry is None or entry[0].id != change_id:
            return
        del self._debounced[path]
        await self._apply(entry[0])

    def _start_schedule(self) -> None:
        if self._scheduled_timer is None:
            self._scheduled_timer = self._clock.call_every(
                self._options.schedule_interval_ms / 1000, self.flush
            )

    def _stop_schedule(self) -> None:
        if self._scheduled_timer is not None:
            self._scheduled_timer.cancel()
            self._scheduled_timer = None

    async def _apply(self, change: ConfigurationChange) -> None:
        change.transition(ChangeStatus.PROCESSING)
        if change.error is not None:
            self._fail(change, change.error, 0.0)
            return

        started = self._clock.monotonic()
        try:
            if self._options.reload_timeout_ms is not None:
                timeout = self._options.reload_timeout_ms / 1000
                try:
                    await asyncio.wait_for(self._target.reload(change), timeout)
                except TimeoutError as e:
                    raise OperationTimeoutError("configuration reload", timeout) from e
            else:
                await self._target.reload(change)
        except asyncio.CancelledError:
            error = WatcherError("configuration reload cancelled")
            self._fail(change, error, self._clock.monotonic() - started)
            raise
        except Exception as e:
            self._fail(change, e, self._clock.monotonic() - started)
            return

        duration = self._clock.monotonic() - started
        change.transition(ChangeStatus.APPLIED)
        stats = self._statistics
        stats.successful_reloads += 1
        stats.average_reload_time_ms += (duration * 1000 - stats.average_reload_time_ms) / stats.successful_reloads
        metrics.config_reloads_total.add(1, {"outcome": "applied"})
        metrics.config_reload_duration_seconds.record(duration)
        logger.info("configuration change applied", path=change.path, change_id=change.id)
        self._bus.emit(EventKind.CHANGE_APPLIED, change=change)

    def _fail(self, change: ConfigurationChange, error: Exception, duration: float) -> None:
        change.transition(ChangeStatus.FAILED, error=error)
        self._statistics.failed_reloads += 1
        metrics.config_reloads_total.add(1, {"outcome": "failed"})
        metrics.config_reload_duration_seconds.record(duration)
        logger.error("configuration change failed", path=change.path, change_id=change.id, error=str(error))
        self._bus.emit(EventKind.CHANGE_FAILED, change=change, error=error)
