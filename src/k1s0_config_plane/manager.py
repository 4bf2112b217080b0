"""フィーチャーフラグマネージャー"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

import structlog

from . import metrics
from .cache import EvaluationCache
from .clock import AsyncioClock, Clock, TimerHandle
from .evaluator import ContextLike, FlagEvaluator
from .events import EventBus, EventKind
from .exceptions import ConfigPlaneError, FlagEvaluationError, ProviderConnectionError, is_retryable
from .models import EvaluationContext, FeatureFlag, FlagChange, FlagChangeType
from .provider import FeatureFlagProvider
from .retry import RetryConfig, with_retry
from .settings import ErrorHandling, FeatureFlagOptions

T = TypeVar("T")

logger = structlog.stdlib.get_logger(__name__)


@dataclass
class FeatureFlagStatistics:
    """評価カウンタ。``clear_statistics`` まで単調増加する。"""

    collection_start_time: datetime
    total_evaluations: int = 0
    enabled_evaluations: int = 0
    disabled_evaluations: int = 0
    flag_evaluations: dict[str, int] = field(default_factory=dict)
    variant_selections: dict[str, dict[str, int]] = field(default_factory=dict)
    error_counts: dict[str, int] = field(default_factory=dict)
    last_evaluation_time: datetime | None = None


def _convert(value: Any, default: T) -> T:
    if default is None:
        return value  # type: ignore[no-any-return]
    try:
        if isinstance(default, bool):
            return bool(value)  # type: ignore[return-value]
        if isinstance(default, int):
            return int(value)  # type: ignore[return-value]
        if isinstance(default, float):
            return float(value)  # type: ignore[return-value]
        if isinstance(default, str):
            return str(value)  # type: ignore[return-value]
    except (TypeError, ValueError):
        return default
    if isinstance(value, type(default)):
        return value
    return default


def _load_retryable(error: BaseException) -> bool:
    return is_retryable(error) or isinstance(error, (ConnectionError, TimeoutError))


class FeatureFlagManager:
    """プロバイダーと同期したメモリ上のフラグ表でフラグを評価する。

    ``error_handling`` が ``throw`` でない限り評価は例外を送出しない。失敗は
    エラーとして数え、``flag:error`` を発行して安全なデフォルトを返す。
    """

    def __init__(
        self,
        provider: FeatureFlagProvider,
        options: FeatureFlagOptions | None = None,
        *,
        evaluator: FlagEvaluator | None = None,
        clock: Clock | None = None,
        bus: EventBus | None = None,
        load_retry: RetryConfig | None = None,
    ) -> None:
        self._provider = provider
        self._options = options or FeatureFlagOptions()
        self._evaluator = evaluator or FlagEvaluator()
        self._clock = clock or AsyncioClock()
        self._bus = bus or EventBus()
        self._load_retry = load_retry
        self._default_context = self._options.evaluation_defaults()
        self._flags: dict[str, FeatureFlag] = {}
        self._cache = EvaluationCache(self._clock, self._options.cache_ttl_seconds)
        self._statistics = self._new_statistics()
        self._refresh_timer: TimerHandle | None = None
        self._unsubscribe = provider.subscribe(self._on_provider_changes)

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def start(self) -> None:
        """フラグを読み込み、設定があれば定期リフレッシュを開始する。"""
        await self.load_flags()
        interval = self._options.refresh_interval_seconds
        if interval and self._refresh_timer is None:
            self._refresh_timer = self._clock.call_every(interval, self._refresh_in_background)

    def close(self) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None
        self._unsubscribe()
        self._cache.clear()

    # -- evaluation ---------------------------------------------------------

    def is_enabled(self, key: str, context: ContextLike = None) -> bool:
        """フラグ ``key`` が有効か返す。評価に失敗した場合は False。"""
        try:
            result = self._evaluate(key, self._context_for(context))
        except Exception as e:
            self._handle_error(key, e, context)
            return False
        self._record_evaluation(key, result)
        self._bus.emit(EventKind.FLAG_EVALUATED, key=key, result=result, context=context)
        return result

    async def is_enabled_async(self, key: str, context: ContextLike = None) -> bool:
        return self.is_enabled(key, context)

    def get_variant(self, key: str, context: ContextLike = None) -> str | None:
        """選択されたバリアントのキーを返す。無効または未知のフラグでは None。"""
        try:
            flag = self._flags.get(key)
            if flag is None:
                return None
            variant = self._evaluator.select_variant(
                flag, self._context_for(context), now=self._clock.utcnow()
            )
        except Exception as e:
            self._handle_error(key, e, context)
            return None
        self._record_variant(key, variant)
        return variant

    async def get_variant_async(self, key: str, context: ContextLike = None) -> str | None:
        return self.get_variant(key, context)

    def get_value(self, key: str, default: T, context: ContextLike = None) -> T:
        """選択されたバリアントの値を ``default`` の型に変換して返す。

        未知または無効のフラグは ``default`` を返す。バリアントを持たない
        有効なフラグは、有効状態を同じ方法で変換して返す。
        """
        try:
            flag = self._flags.get(key)
            if flag is None:
                return default
            ctx = self._context_for(context)
            now = self._clock.utcnow()
            if not self._evaluator.evaluate(flag, ctx, now=now):
                return default
            variant_key = self._evaluator.select_variant(flag, ctx, now=now)
            if variant_key is not None:
                variant = next((v for v in flag.variants if v.key == variant_key), None)
                if variant is not None:
                    self._record_variant(key, variant_key)
                    return _convert(variant.value, default)
            return _convert(flag.enabled, default)
        except Exception as e:
            self._handle_error(key, e, context)
            return default

    async def get_value_async(self, key: str, default: T, context: ContextLike = None) -> T:
        return self.get_value(key, default, context)

    # -- writes -------------------------------------------------------------

    async def set_flag(self, key: str, enabled: bool) -> None:
        """フラグを有効化または無効化する。``key`` が新規なら最小構成のフラグを作る。"""
        now = self._clock.utcnow()
        existing = self._flags.get(key)
        flag = existing.copy() if existing is not None else FeatureFlag(
            key=key, description=f"Flag {key}", created_at=now
        )
        flag.enabled = enabled
        flag.updated_at = now
        await self._provider.update_flag(key, flag)
        self._mirror(key, flag)

    async def set_flag_config(self, key: str, flag: FeatureFlag) -> None:
        """``key`` の定義全体を置き換える。"""
        now = self._clock.utcnow()
        stored = flag.copy()
        stored.key = key
        stored.updated_at = now
        stored.created_at = stored.created_at or now
        await self._provider.update_flag(key, stored)
        self._mirror(key, stored)

    async def remove_flag(self, key: str) -> None:
        await self._provider.delete_flag(key)
        self._flags.pop(key, None)
        self._cache.invalidate(key)

    # -- reads --------------------------------------------------------------

    def get_flag(self, key: str) -> FeatureFlag | None:
        flag = self._flags.get(key)
        return flag.copy() if flag is not None else None

    def get_flag_keys(self) -> list[str]:
        return sorted(self._flags)

    async def get_all_flags(self) -> dict[str, FeatureFlag]:
        return {k: f.copy() for k, f in self._flags.items()}

    async def get_flags_by_prefix(self, prefix: str) -> dict[str, FeatureFlag]:
        return {k: f.copy() for k, f in self._flags.items() if k.startswith(prefix)}

    async def load_flags(self) -> None:
        """フラグ表をプロバイダーの現在のフラグで置き換える。"""

        async def _fetch() -> dict[str, FeatureFlag]:
            return await self._provider.get_flags()

        try:
            if self._load_retry is not None:
                flags = await with_retry(self._load_retry, _fetch, retryable=_load_retryable)
            else:
                flags = await _fetch()
        except Exception as e:
            self._bus.emit(EventKind.ERROR, error=e, context="load_flags")
            if isinstance(e, ConfigPlaneError):
                raise
            raise ProviderConnectionError(type(self._provider).__name__, str(e), cause=e) from e

        self._flags = {k: f.copy() for k, f in flags.items()}
        self._cache.clear()
        logger.info("feature flags loaded", flag_count=len(self._flags))
        self._bus.emit(EventKind.FLAG_LOADED, flags={k: f.copy() for k, f in self._flags.items()})

    async def refresh_flags(self) -> None:
        await self.load_flags()

    def get_statistics(self) -> FeatureFlagStatistics:
        return copy.deepcopy(self._statistics)

    def clear_statistics(self) -> None:
        self._statistics = self._new_statistics()

    # -- internals ----------------------------------------------------------

    def _new_statistics(self) -> FeatureFlagStatistics:
        return FeatureFlagStatistics(collection_start_time=self._clock.utcnow())

    def _context_for(self, context: ContextLike) -> dict[str, Any]:
        if isinstance(context, EvaluationContext):
            return context.merged_with(self._default_context).to_dict()
        base = self._default_context.to_dict() if self._default_context else {}
        if context:
            base.update(copy.deepcopy(dict(context)))
        return base

    def _evaluate(self, key: str, ctx: Mapping[str, Any]) -> bool:
        flag = self._flags.get(key)
        if flag is None:
            return False
        now = self._clock.utcnow()
        if not self._evaluator.is_active(flag, now):
            return False
        if self._options.enable_caching:
            cached = self._cache.get(key, ctx)
            if cached is not None:
                return cached
        result = self._evaluator.evaluate(flag, ctx, now=now)
        if self._options.enable_caching:
            self._cache.set(key, ctx, result)
        return result

    def _record_evaluation(self, key: str, result: bool) -> None:
        metrics.flag_evaluations_total.add(1, {"flag_key": key, "result": result})
        if not self._options.enable_statistics:
            return
        stats = self._statistics
        stats.total_evaluations += 1
        if result:
            stats.enabled_evaluations += 1
        else:
            stats.disabled_evaluations += 1
        stats.flag_evaluations[key] = stats.flag_evaluations.get(key, 0) + 1
        stats.last_evaluation_time = self._clock.utcnow()

    def _record_variant(self, key: str, variant: str | None) -> None:
        if not self._options.enable_statistics or variant is None:
            return
        selections = self._statistics.variant_selections.setdefault(key, {})
        selections[variant] = selections.get(variant, 0) + 1

    def _handle_error(self, key: str, error: Exception, context: ContextLike) -> None:
        if self._options.enable_statistics:
            counts = self._statistics.error_counts
            counts[key] = counts.get(key, 0) + 1
        self._bus.emit(EventKind.FLAG_ERROR, key=key, error=error, context=context)

        policy = self._options.error_handling
        if policy == ErrorHandling.THROW:
            if isinstance(error, FlagEvaluationError):
                raise error
            raise FlagEvaluationError(key, str(error), cause=error) from error
        if policy == ErrorHandling.LOG:
            logger.error("feature flag evaluation failed", flag_key=key, error=str(error))

    def _mirror(self, key: str, flag: FeatureFlag) -> None:
        self._flags[key] = flag.copy()
        self._cache.invalidate(key)

    def _on_provider_changes(self, changes: list[FlagChange]) -> None:
        for change in changes:
            if change.type in (FlagChangeType.CREATED, FlagChangeType.UPDATED):
                if change.new_value is not None:
                    self._flags[change.key] = change.new_value.copy()
                    self._cache.invalidate(change.key)
            elif change.type == FlagChangeType.DELETED:
                self._flags.pop(change.key, None)
                self._cache.invalidate(change.key)
            self._bus.emit(EventKind.FLAG_CHANGED, key=change.key, change=change)

    async def _refresh_in_background(self) -> None:
        try:
            await self.refresh_flags()
        except ConfigPlaneError as e:
            logger.warning("scheduled flag refresh failed", error=str(e))
