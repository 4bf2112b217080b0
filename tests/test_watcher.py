"""設定ウォッチャーのユニットテスト"""

import asyncio
import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
from k1s0_config_plane import (
    AsyncioClock,
    BackupStore,
    ChangeDetectionMode,
    ChangeStatus,
    Clock,
    ConfigurationChange,
    ConfigurationWatcher,
    ErrorCodes,
    Event,
    EventBus,
    EventKind,
    ManualClock,
    OperationTimeoutError,
    SchemaValidator,
    WatcherError,
    WatchOptions,
)
from pydantic import BaseModel


class FakeTarget:
    def __init__(self) -> None:
        self.config: dict[str, Any] = {}
        self.sources: dict[str, Any] = {}
        self.reload = AsyncMock()

    def get_configuration(self) -> dict[str, Any]:
        return dict(self.config)

    def get_source(self, path: str) -> Any:
        return self.sources.get(path)

    async def update_configuration(self, config: dict[str, Any], *, replace: bool = False) -> None:
        self.config = config


class PortConfig(BaseModel):
    port: int


def record(bus: EventBus, kind: EventKind) -> list[Event]:
    events: list[Event] = []
    bus.subscribe(kind, events.append)
    return events


def write_json(path: Path, data: Any) -> str:
    path.write_text(json.dumps(data))
    return str(path)


async def start(
    tmp_path: Path,
    *,
    clock: Clock | None = None,
    bus: EventBus | None = None,
    target: FakeTarget | None = None,
    **options: Any,
) -> tuple[ConfigurationWatcher, FakeTarget]:
    target = target or FakeTarget()
    watcher = ConfigurationWatcher(
        target,
        clock=clock or ManualClock(),
        bus=bus or EventBus(),
        validator=options.pop("validator", None),
        backups=options.pop("backups", None),
    )
    await watcher.start_watching([str(tmp_path)], WatchOptions.defaults(**options))
    return watcher, target


def applied_paths(target: FakeTarget) -> list[str]:
    return [call.args[0].path for call in target.reload.await_args_list]


async def test_immediate_mode_applies_change(tmp_path: Path) -> None:
    bus = EventBus()
    detected = record(bus, EventKind.CHANGE_DETECTED)
    applied = record(bus, EventKind.CHANGE_APPLIED)
    watcher, target = await start(tmp_path, bus=bus)
    path = write_json(tmp_path / "app.json", {"port": 8080})

    change = await watcher.handle_event(path, "file_modified")

    assert change is not None
    assert change.status == ChangeStatus.APPLIED
    assert change.new_value == {"port": 8080}
    target.reload.assert_awaited_once_with(change)
    assert len(detected) == 1 and len(applied) == 1
    stats = watcher.get_statistics()
    assert stats.total_changes == 1
    assert stats.successful_reloads == 1
    assert stats.watched_paths == 1


async def test_previous_value_comes_from_target(tmp_path: Path) -> None:
    target = FakeTarget()
    path = write_json(tmp_path / "app.json", {"port": 2})
    target.sources[path] = {"port": 1}
    watcher, _ = await start(tmp_path, target=target)

    change = await watcher.handle_event(path, "file_modified")

    assert change is not None
    assert change.previous_value == {"port": 1}


async def test_idle_watcher_ignores_events(tmp_path: Path) -> None:
    target = FakeTarget()
    watcher = ConfigurationWatcher(target, clock=ManualClock())
    path = write_json(tmp_path / "app.json", {})
    assert await watcher.handle_event(path, "file_modified") is None
    target.reload.assert_not_awaited()


async def test_filtered_event_is_not_recorded(tmp_path: Path) -> None:
    watcher, target = await start(tmp_path)
    (tmp_path / "notes.md").write_text("hello")
    assert await watcher.handle_event(str(tmp_path / "notes.md"), "file_modified") is None
    assert watcher.get_change_history() == []
    assert watcher.get_statistics().total_changes == 0
    target.reload.assert_not_awaited()


async def test_debounce_collapses_rapid_changes(tmp_path: Path) -> None:
    """300 ms の窓で 100 ms 間隔の 2 回の編集が、2 回目の内容で 1 度だけ適用されること。"""
    clock = ManualClock()
    bus = EventBus()
    applied = record(bus, EventKind.CHANGE_APPLIED)
    watcher, target = await start(
        tmp_path, clock=clock, bus=bus, mode=ChangeDetectionMode.DEBOUNCED, debounce_ms=300
    )
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    path = write_json(config_dir / "app.json", {"v": 1})

    first = await watcher.handle_event(path, "file_modified")
    await clock.advance(0.1)
    write_json(config_dir / "app.json", {"v": 2})
    second = await watcher.handle_event(path, "file_modified")
    assert first is not None and second is not None

    await clock.advance(0.299)
    assert applied == []

    await clock.advance(0.002)
    assert len(applied) == 1
    assert applied[0].payload["change"].new_value == {"v": 2}
    target.reload.assert_awaited_once_with(second)
    assert first.status == ChangeStatus.PENDING
    assert first.superseded_by == second.id
    assert [c.id for c in watcher.get_change_history()] == [second.id, first.id]


async def test_debounce_is_per_path(tmp_path: Path) -> None:
    clock = ManualClock()
    watcher, target = await start(
        tmp_path, clock=clock, mode=ChangeDetectionMode.DEBOUNCED, debounce_ms=100
    )
    a = write_json(tmp_path / "a.json", {})
    b = write_json(tmp_path / "b.json", {})
    await watcher.handle_event(a, "file_modified")
    await watcher.handle_event(b, "file_modified")
    await clock.advance(0.1)
    assert sorted(applied_paths(target)) == [a, b]


async def test_batch_flushes_in_arrival_order(tmp_path: Path) -> None:
    watcher, target = await start(tmp_path, mode=ChangeDetectionMode.BATCH, batch_size=3)
    paths = [write_json(tmp_path / f"{name}.json", {}) for name in ("c", "a", "b")]

    await watcher.handle_event(paths[0], "file_modified")
    await watcher.handle_event(paths[1], "file_created")
    target.reload.assert_not_awaited()
    assert watcher.get_statistics().pending_changes == 2

    await watcher.handle_event(paths[2], "file_modified")
    assert applied_paths(target) == paths
    assert watcher.get_statistics().pending_changes == 0


async def test_scheduled_mode_flushes_on_interval(tmp_path: Path) -> None:
    clock = ManualClock()
    watcher, target = await start(
        tmp_path, clock=clock, mode=ChangeDetectionMode.SCHEDULED, schedule_interval_ms=1000
    )
    a = write_json(tmp_path / "a.json", {})
    b = write_json(tmp_path / "b.json", {})
    await watcher.handle_event(a, "file_modified")
    await watcher.handle_event(b, "file_modified")
    target.reload.assert_not_awaited()

    await clock.advance(1.0)
    assert applied_paths(target) == [a, b]


async def test_leaving_scheduled_mode_cancels_interval(tmp_path: Path) -> None:
    clock = ManualClock()
    watcher, _ = await start(tmp_path, clock=clock, mode=ChangeDetectionMode.SCHEDULED)
    assert clock.pending_timers == 1
    watcher.set_mode(ChangeDetectionMode.MANUAL)
    assert clock.pending_timers == 0
    assert watcher.get_mode() == ChangeDetectionMode.MANUAL


async def test_manual_mode_waits_for_trigger(tmp_path: Path) -> None:
    watcher, target = await start(tmp_path, mode=ChangeDetectionMode.MANUAL)
    a = write_json(tmp_path / "a.json", {})
    b = write_json(tmp_path / "b.json", {})
    await watcher.handle_event(a, "file_modified")
    await watcher.handle_event(b, "file_modified")
    target.reload.assert_not_awaited()

    await watcher.trigger_reload(b)
    assert applied_paths(target) == [b]
    await watcher.trigger_reload()
    assert applied_paths(target) == [b, a]


async def test_trigger_reload_without_queue_forces_reload(tmp_path: Path) -> None:
    watcher, target = await start(tmp_path)
    await watcher.trigger_reload()
    change: ConfigurationChange = target.reload.await_args.args[0]
    assert change.path == "manual-trigger"
    assert change.status == ChangeStatus.APPLIED


async def test_validation_failure_ignores_change(tmp_path: Path) -> None:
    """スキーマに適合しない変更は破棄され、再読み込みされないこと。"""
    validator = SchemaValidator()
    validator.register_schema("port", PortConfig)
    bus = EventBus()
    ignored = record(bus, EventKind.CHANGE_IGNORED)
    watcher, target = await start(
        tmp_path, bus=bus, validator=validator, enable_validation=True, schema_name="port"
    )
    path = write_json(tmp_path / "app.json", {"port": "not-a-number"})

    change = await watcher.handle_event(path, "file_modified")

    assert change is not None
    assert change.status == ChangeStatus.IGNORED
    assert change.validation is not None and not change.validation.valid
    target.reload.assert_not_awaited()
    assert watcher.get_statistics().ignored_changes == 1
    assert len(ignored) == 1
    assert watcher.get_change_history() == []


async def test_validation_accepts_good_change(tmp_path: Path) -> None:
    validator = SchemaValidator()
    validator.register_schema("port", PortConfig)
    watcher, target = await start(
        tmp_path, validator=validator, enable_validation=True, schema_name="port"
    )
    path = write_json(tmp_path / "app.json", {"port": 80})
    change = await watcher.handle_event(path, "file_modified")
    assert change is not None and change.status == ChangeStatus.APPLIED


async def test_validate_change_reports_restart_impact(tmp_path: Path) -> None:
    watcher, _ = await start(tmp_path)
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    path = write_json(config_dir / "app.json", {})
    change = await watcher.handle_event(path, "file_modified")
    assert change is not None and change.requires_restart

    result = await watcher.validate_change(change)
    assert result.valid
    assert result.impact.requires_restart


async def test_reload_failure_marks_change_failed(tmp_path: Path) -> None:
    bus = EventBus()
    failed = record(bus, EventKind.CHANGE_FAILED)
    watcher, target = await start(tmp_path, bus=bus)
    target.reload.side_effect = RuntimeError("reload broke")
    path = write_json(tmp_path / "app.json", {})

    change = await watcher.handle_event(path, "file_modified")

    assert change is not None
    assert change.status == ChangeStatus.FAILED
    assert isinstance(change.error, RuntimeError)
    assert target.reload.await_count == 1
    assert watcher.get_statistics().failed_reloads == 1
    assert failed[0].payload["error"] is change.error


async def test_parse_error_fails_without_reload(tmp_path: Path) -> None:
    watcher, target = await start(tmp_path)
    (tmp_path / "app.json").write_text("{oops")
    change = await watcher.handle_event(str(tmp_path / "app.json"), "file_modified")
    assert change is not None and change.status == ChangeStatus.FAILED
    target.reload.assert_not_awaited()


async def test_undecodable_file_is_recorded_as_failed(tmp_path: Path) -> None:
    """UTF-8 でないファイルも履歴に残り change:failed が発行されること。"""
    bus = EventBus()
    failed = record(bus, EventKind.CHANGE_FAILED)
    errors = record(bus, EventKind.ERROR)
    watcher, target = await start(tmp_path, bus=bus)
    path = tmp_path / "app.json"
    path.write_bytes(b'{"a": "\xff\xfe"}')

    change = await watcher.handle_event(str(path), "file_modified")

    assert change is not None and change.status == ChangeStatus.FAILED
    assert change.error is not None and change.error.code == ErrorCodes.READ_FILE
    assert watcher.get_change_history() == [change]
    assert len(failed) == 1
    assert errors == []
    assert watcher.get_statistics().failed_reloads == 1
    target.reload.assert_not_awaited()


async def test_reload_timeout(tmp_path: Path) -> None:
    async def hang(change: ConfigurationChange) -> None:
        await asyncio.sleep(10)

    watcher, target = await start(tmp_path, reload_timeout_ms=10)
    target.reload.side_effect = hang
    path = write_json(tmp_path / "app.json", {})

    change = await watcher.handle_event(path, "file_modified")

    assert change is not None and change.status == ChangeStatus.FAILED
    assert isinstance(change.error, OperationTimeoutError)


async def test_average_reload_time(tmp_path: Path) -> None:
    clock = ManualClock()
    watcher, target = await start(tmp_path, clock=clock)
    durations = iter([0.05, 0.15])

    async def timed(change: ConfigurationChange) -> None:
        await clock.advance(next(durations))

    target.reload.side_effect = timed
    path = write_json(tmp_path / "app.json", {})
    await watcher.handle_event(path, "file_modified")
    await watcher.handle_event(path, "file_modified")
    assert watcher.get_statistics().average_reload_time_ms == pytest.approx(100.0)


async def test_history_is_bounded(tmp_path: Path) -> None:
    watcher, _ = await start(tmp_path, history_limit=3)
    path = write_json(tmp_path / "app.json", {})
    changes = [await watcher.handle_event(path, "file_modified") for _ in range(5)]

    history = watcher.get_change_history()
    assert len(history) == 3
    assert [c.id for c in history] == [c.id for c in reversed(changes[2:])]  # type: ignore[union-attr]
    assert len(watcher.get_change_history(limit=1)) == 1
    assert watcher.get_statistics().total_changes == 5

    watcher.clear_change_history()
    assert watcher.get_change_history() == []


async def test_rollback_applies_inverse_change(tmp_path: Path) -> None:
    bus = EventBus()
    completed = record(bus, EventKind.ROLLBACK_COMPLETED)
    target = FakeTarget()
    path = write_json(tmp_path / "app.json", {"port": 8080})
    target.sources[path] = {"port": 80}
    watcher, _ = await start(tmp_path, bus=bus, target=target)
    change = await watcher.handle_event(path, "file_modified")
    assert change is not None

    inverse = await watcher.rollback(change.id)

    assert inverse.rollback_of == change.id
    assert inverse.new_value == {"port": 80}
    assert inverse.previous_value == {"port": 8080}
    assert inverse.status == ChangeStatus.APPLIED
    assert change.status == ChangeStatus.APPLIED
    target.reload.assert_awaited_with(inverse)
    assert completed[0].payload["change_id"] == change.id
    assert watcher.get_statistics().successful_reloads == 2


async def test_rollback_unknown_change() -> None:
    watcher = ConfigurationWatcher(FakeTarget(), clock=ManualClock())
    with pytest.raises(WatcherError) as exc_info:
        await watcher.rollback("nope")
    assert exc_info.value.code == ErrorCodes.CHANGE_NOT_FOUND


async def test_auto_backup_before_dispatch(tmp_path: Path) -> None:
    clock = ManualClock()
    bus = EventBus()
    target = FakeTarget()
    target.config = {"port": 80}
    store = BackupStore(target, lambda: [], clock=clock, bus=bus)
    watcher, _ = await start(
        tmp_path, clock=clock, bus=bus, target=target, backups=store, enable_auto_backup=True
    )
    path = write_json(tmp_path / "app.json", {})
    await watcher.handle_event(path, "file_modified")
    assert len(store) == 1
    assert store.list_backups()[0].configuration == {"port": 80}


async def test_stop_watching_cancels_timers_and_is_idempotent(tmp_path: Path) -> None:
    clock = ManualClock()
    bus = EventBus()
    stopped = record(bus, EventKind.WATCHER_STOPPED)
    watcher, target = await start(tmp_path, clock=clock, bus=bus, mode=ChangeDetectionMode.DEBOUNCED)
    await watcher.handle_event(write_json(tmp_path / "app.json", {}), "file_modified")
    assert clock.pending_timers == 1

    await watcher.stop_watching()
    await watcher.stop_watching()

    assert clock.pending_timers == 0
    assert not watcher.is_watching()
    assert watcher.get_watched_paths() == []
    assert len(stopped) == 1
    await clock.advance(5)
    target.reload.assert_not_awaited()


async def test_restart_watching_replaces_paths(tmp_path: Path) -> None:
    bus = EventBus()
    started = record(bus, EventKind.WATCHER_STARTED)
    watcher, _ = await start(tmp_path, bus=bus)
    await watcher.start_watching("other", WatchOptions())
    assert watcher.get_watched_paths() == ["other"]
    assert len(started) == 2


async def test_pipeline_error_emits_error_event(tmp_path: Path) -> None:
    bus = EventBus()
    errors = record(bus, EventKind.ERROR)
    watcher, _ = await start(tmp_path, bus=bus)
    assert await watcher.handle_event(str(tmp_path / "a.json"), "renamed") is None
    assert errors[0].payload["context"] == "handle_event"


async def test_clear_statistics(tmp_path: Path) -> None:
    watcher, _ = await start(tmp_path)
    await watcher.handle_event(write_json(tmp_path / "a.json", {}), "file_modified")
    watcher.clear_statistics()
    stats = watcher.get_statistics()
    assert stats.total_changes == 0
    assert stats.successful_reloads == 0


async def test_stop_during_scheduled_flush_fails_in_flight_change(tmp_path: Path) -> None:
    """フラッシュ中に停止すると実行中の変更は failed、未着手の変更は pending のまま残ること。"""
    clock = AsyncioClock()
    bus = EventBus()
    failed = record(bus, EventKind.CHANGE_FAILED)
    reloading = asyncio.Event()

    async def slow_reload(change: ConfigurationChange) -> None:
        reloading.set()
        await asyncio.sleep(10)

    watcher, target = await start(
        tmp_path, clock=clock, bus=bus, mode=ChangeDetectionMode.SCHEDULED, schedule_interval_ms=10
    )
    target.reload.side_effect = slow_reload
    first = await watcher.handle_event(write_json(tmp_path / "a.json", {}), "file_modified")
    second = await watcher.handle_event(write_json(tmp_path / "b.json", {}), "file_modified")
    assert first is not None and second is not None

    await asyncio.wait_for(reloading.wait(), 1)
    await watcher.stop_watching()
    await clock.aclose()

    assert first.status == ChangeStatus.FAILED
    assert isinstance(first.error, WatcherError)
    assert [e.payload["change"] for e in failed] == [first]
    assert second.status == ChangeStatus.PENDING
    assert watcher.get_statistics().pending_changes == 1
    assert target.reload.await_count == 1
