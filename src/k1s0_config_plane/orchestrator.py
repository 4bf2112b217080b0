"""設定オーケストレーター（設定の解決と各コンポーネントの連携）"""

from __future__ import annotations

import copy
import inspect
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, TypeVar

import structlog

from .backup import BackupStore, ConfigurationBackup
from .changes import ChangeType, ConfigurationChange, WatcherStatistics
from .checksum import configuration_hash
from .clock import AsyncioClock, Clock
from .evaluator import ContextLike
from .events import EventBus, EventKind
from .exceptions import ValidationError
from .logger import configure_logging
from .manager import FeatureFlagManager, FeatureFlagStatistics
from .merger import deep_merge
from .provider import FeatureFlagProvider
from .retry import RetryConfig
from .settings import ControlPlaneSettings, FeatureFlagOptions, WatchOptions
from .validation import ConfigurationValidator, ValidationResult
from .watcher import ConfigurationWatcher

T = TypeVar("T")

logger = structlog.stdlib.get_logger(__name__)


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


@dataclass
class ComponentHealth:
    status: HealthStatus
    message: str | None = None


@dataclass
class HealthReport:
    """バリデータ・フラグ取得元・ウォッチャーの健全性の集約。"""

    status: HealthStatus
    components: dict[str, ComponentHealth] = field(default_factory=dict)
    issues: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


@dataclass
class ConfigurationStatistics:
    initialized: bool
    configuration_hash: str
    last_reload: datetime | None
    watching: bool
    watcher: WatcherStatistics
    feature_flags: FeatureFlagStatistics
    flag_count: int
    backup_count: int


class ConfigurationOrchestrator:
    """レイヤーから設定を解決し、フラグ・ウォッチャー・バックアップを連携させる。

    解決済み設定は ``base``、パス順のファイルソース、プログラムからの上書きの
    順に ``deep_merge`` で重ねたもの。マージ対象は dict のソースだけ。再読み込みの
    結果が検証に失敗した場合は ValidationError を送出し、直前の正常な設定を保つ。
    """

    def __init__(
        self,
        provider: FeatureFlagProvider,
        *,
        base: dict[str, Any] | None = None,
        validator: ConfigurationValidator | None = None,
        schema_name: str | None = None,
        flag_options: FeatureFlagOptions | None = None,
        watch_options: WatchOptions | None = None,
        watch_paths: Iterable[str] = (),
        max_backups: int | None = 100,
        load_retry: RetryConfig | None = None,
        clock: Clock | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._clock = clock or AsyncioClock()
        self._bus = bus or EventBus()
        self._provider = provider
        self._validator = validator
        self._schema_name = schema_name
        self._watch_paths = list(watch_paths)

        self._base: dict[str, Any] = copy.deepcopy(base or {})
        self._sources: dict[str, Any] = {}
        self._overrides: dict[str, Any] = {}
        self._resolved = self._resolve(self._base, self._sources, self._overrides)
        self._hash = configuration_hash(self._resolved)
        self._last_reload: datetime | None = None
        self._initialized = False

        self.flags = FeatureFlagManager(
            provider, flag_options, clock=self._clock, bus=self._bus, load_retry=load_retry
        )
        self.backups = BackupStore(
            self,
            self._current_watch_paths,
            clock=self._clock,
            bus=self._bus,
            max_backups=max_backups,
        )
        self.watcher = ConfigurationWatcher(
            self,
            options=watch_options,
            validator=validator,
            backups=self.backups,
            clock=self._clock,
            bus=self._bus,
        )

    @classmethod
    def from_settings(
        cls,
        settings: ControlPlaneSettings,
        provider: FeatureFlagProvider,
        *,
        validator: ConfigurationValidator | None = None,
        base: dict[str, Any] | None = None,
        clock: Clock | None = None,
        bus: EventBus | None = None,
        setup_logging: bool = True,
    ) -> ConfigurationOrchestrator:
        """1 つの設定オブジェクトから全コンポーネントを組み立てる。

        setup_logging が真なら settings.log に従ってログ出力も設定する。
        """
        if setup_logging:
            configure_logging(settings.log)
        retry = settings.flag_load_retry
        return cls(
            provider,
            base=base,
            validator=validator,
            schema_name=settings.schema_name,
            flag_options=settings.feature_flags,
            watch_options=settings.watcher,
            watch_paths=settings.watch_paths,
            max_backups=settings.backup.max_backups,
            load_retry=RetryConfig(**retry.model_dump()) if retry is not None else None,
            clock=clock,
            bus=bus,
        )

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def initialized(self) -> bool:
        return self._initialized

    # -- lifecycle ----------------------------------------------------------

    async def initialize(
        self,
        paths: Iterable[str] | None = None,
        options: WatchOptions | None = None,
    ) -> None:
        """初期設定を検証し、フラグを読み込み、監視を開始する。"""
        await self._check(self._resolved)
        await self.flags.start()
        watch_paths = list(paths) if paths is not None else self._watch_paths
        if watch_paths:
            self._watch_paths = watch_paths
            await self.watcher.start_watching(watch_paths, options)
        self._initialized = True
        logger.info("configuration orchestrator initialized", watch_paths=watch_paths)

    async def close(self) -> None:
        await self.watcher.stop_watching()
        self.flags.close()
        self._initialized = False

    # -- configuration ------------------------------------------------------

    def get_configuration(self) -> dict[str, Any]:
        return copy.deepcopy(self._resolved)

    def get_source(self, path: str) -> Any:
        """``path`` について最後にパースした内容。なければ None。"""
        return copy.deepcopy(self._sources.get(path))

    async def reload(self, change: ConfigurationChange | None = None) -> None:
        """設定を再解決する。``change`` があれば先にファイルソースへ取り込む。"""
        sources = dict(self._sources)
        if change is not None and change.error is None:
            if change.type.is_deletion or (change.rollback_of is not None and change.new_value is None):
                sources.pop(change.path, None)
            elif change.new_value is not None:
                sources[change.path] = copy.deepcopy(change.new_value)

        resolved = self._resolve(self._base, sources, self._overrides)
        await self._check(resolved)
        self._sources = sources
        self._commit(resolved, change)

    async def update_configuration(self, config: dict[str, Any], *, replace: bool = False) -> None:
        """``config`` を現在の設定の上にマージする。

        ``replace`` を指定するとレイヤーをすべて破棄し、``config`` をそのまま
        設定とする。
        """
        if replace:
            base, sources, overrides = copy.deepcopy(config), {}, {}
        else:
            base, sources = self._base, self._sources
            overrides = deep_merge(self._overrides, config)

        resolved = self._resolve(base, sources, overrides)
        await self._check(resolved)
        self._base, self._sources, self._overrides = base, sources, overrides
        self._commit(resolved, None)

    async def validate_configuration(self, config: Any = None) -> ValidationResult:
        target = self._resolved if config is None else config
        if self._validator is None:
            return ValidationResult.ok(value=target)
        result = self._validator.validate(target, self._schema_name)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def handle_file_event(self, path: str, event_type: ChangeType | str) -> ConfigurationChange | None:
        return await self.watcher.handle_event(path, event_type)

    # -- feature flags ------------------------------------------------------

    def is_feature_enabled(self, key: str, context: ContextLike = None) -> bool:
        return self.flags.is_enabled(key, context)

    def get_feature_variant(self, key: str, context: ContextLike = None) -> str | None:
        return self.flags.get_variant(key, context)

    def get_feature_value(self, key: str, default: T, context: ContextLike = None) -> T:
        return self.flags.get_value(key, default, context)

    async def set_feature_flag(self, key: str, enabled: bool) -> None:
        await self.flags.set_flag(key, enabled)

    # -- backups ------------------------------------------------------------

    async def create_backup(self, label: str | None = None) -> str:
        return await self.backups.create_backup(label)

    async def restore_backup(self, backup_id: str) -> None:
        await self.backups.restore_backup(backup_id)

    def list_backups(self) -> list[ConfigurationBackup]:
        return self.backups.list_backups()

    async def rollback(self, change_id: str) -> ConfigurationChange:
        return await self.watcher.rollback(change_id)

    # -- reporting ----------------------------------------------------------

    def get_statistics(self) -> ConfigurationStatistics:
        flag_stats = self.flags.get_statistics()
        return ConfigurationStatistics(
            initialized=self._initialized,
            configuration_hash=self._hash,
            last_reload=self._last_reload,
            watching=self.watcher.is_watching(),
            watcher=self.watcher.get_statistics(),
            feature_flags=flag_stats,
            flag_count=len(self.flags.get_flag_keys()),
            backup_count=len(self.backups),
        )

    async def health_check(self) -> HealthReport:
        components: dict[str, ComponentHealth] = {}
        issues: list[str] = []

        try:
            result = await self.validate_configuration()
        except Exception as e:
            result = None
            components["validation"] = ComponentHealth(HealthStatus.UNHEALTHY, str(e))
            issues.append("configuration validation raised")
        if result is not None:
            if result.valid:
                components["validation"] = ComponentHealth(HealthStatus.HEALTHY)
            else:
                message = result.errors[0].message if result.errors else None
                components["validation"] = ComponentHealth(HealthStatus.UNHEALTHY, message)
                issues.append("configuration validation failed")

        try:
            await self._provider.get_flags()
            components["feature_flags"] = ComponentHealth(HealthStatus.HEALTHY)
        except Exception as e:
            components["feature_flags"] = ComponentHealth(HealthStatus.UNHEALTHY, str(e))
            issues.append("feature flags not accessible")

        if self._watch_paths and not self.watcher.is_watching():
            components["watcher"] = ComponentHealth(HealthStatus.DEGRADED, "watcher is not active")
            issues.append("configuration watcher is not active")
        else:
            components["watcher"] = ComponentHealth(HealthStatus.HEALTHY)

        overall = max((c.status for c in components.values()), key=_SEVERITY.__getitem__)
        return HealthReport(status=overall, components=components, issues=issues)

    # -- internals ----------------------------------------------------------

    def _current_watch_paths(self) -> list[str]:
        return self.watcher.get_watched_paths()

    @staticmethod
    def _resolve(base: dict[str, Any], sources: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
        layers = [sources[path] for path in sorted(sources) if isinstance(sources[path], dict)]
        return deep_merge(base, *layers, overrides)

    async def _check(self, config: dict[str, Any]) -> None:
        result = await self.validate_configuration(config)
        if not result.valid:
            raise ValidationError("resolved configuration failed validation", issues=result.errors)

    def _commit(self, resolved: dict[str, Any], change: ConfigurationChange | None) -> None:
        previous_hash = self._hash
        self._resolved = resolved
        self._hash = configuration_hash(resolved)
        self._last_reload = self._clock.utcnow()

        self._bus.emit(EventKind.CONFIG_RELOADED, config=self.get_configuration(), change=change)
        if self._hash != previous_hash:
            logger.info("configuration changed", hash=self._hash, path=change.path if change else None)
            self._bus.emit(
                EventKind.CONFIG_CHANGED,
                config=self.get_configuration(),
                change=change,
                previous_hash=previous_hash,
                hash=self._hash,
            )
