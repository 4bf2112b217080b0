"""InMemoryFeatureFlagProvider 実装"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog

from .models import FeatureFlag, FlagChange, FlagChangeType
from .provider import FlagChangeCallback

logger = structlog.stdlib.get_logger(__name__)


@dataclass
class ProviderStatistics:
    """インメモリプロバイダが保持している内容のスナップショット。"""

    total_flags: int
    enabled_flags: int
    disabled_flags: int
    expired_flags: int
    flags_with_variants: int
    subscriber_count: int


class InMemoryFeatureFlagProvider:
    """開発・テスト用のインメモリフラグプロバイダ。"""

    def __init__(
        self,
        initial_flags: Iterable[FeatureFlag] | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._now = now or (lambda: datetime.now(UTC))
        self._flags: dict[str, FeatureFlag] = {}
        self._subscribers: list[FlagChangeCallback] = []
        for flag in initial_flags or []:
            self._flags[flag.key] = flag.copy()

    async def get_flags(self) -> dict[str, FeatureFlag]:
        return {key: flag.copy() for key, flag in self._flags.items()}

    async def get_flag(self, key: str) -> FeatureFlag | None:
        flag = self._flags.get(key)
        return flag.copy() if flag is not None else None

    async def update_flag(self, key: str, flag: FeatureFlag) -> None:
        self._notify([self._store(key, flag)])

    async def update_flags(self, flags: dict[str, FeatureFlag]) -> None:
        """複数のフラグを保存し、購読者へは 1 回だけ通知する。"""
        changes = [self._store(key, flag) for key, flag in flags.items()]
        if changes:
            self._notify(changes)

    async def delete_flag(self, key: str) -> None:
        previous = self._flags.pop(key, None)
        if previous is None:
            return
        self._notify(
            [FlagChange(key=key, type=FlagChangeType.DELETED, timestamp=self._now(), previous_value=previous)]
        )

    async def clear_flags(self) -> None:
        now = self._now()
        changes = [
            FlagChange(key=key, type=FlagChangeType.DELETED, timestamp=now, previous_value=flag)
            for key, flag in self._flags.items()
        ]
        self._flags.clear()
        if changes:
            self._notify(changes)

    def subscribe(self, callback: FlagChangeCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def get_flags_by_tag(self, tag: str) -> dict[str, FeatureFlag]:
        return {k: f.copy() for k, f in self._flags.items() if tag in f.tags}

    async def get_flags_by_owner(self, owner: str) -> dict[str, FeatureFlag]:
        return {k: f.copy() for k, f in self._flags.items() if f.owner == owner}

    async def get_expiring_flags(self, within: timedelta = timedelta(days=7)) -> dict[str, FeatureFlag]:
        """expires_at が 現在時刻 + within より前のフラグ。"""
        cutoff = self._now() + within
        return {
            k: f.copy()
            for k, f in self._flags.items()
            if f.expires_at is not None and _aware(f.expires_at) <= cutoff
        }

    def get_statistics(self) -> ProviderStatistics:
        now = self._now()
        enabled = sum(1 for f in self._flags.values() if f.enabled)
        return ProviderStatistics(
            total_flags=len(self._flags),
            enabled_flags=enabled,
            disabled_flags=len(self._flags) - enabled,
            expired_flags=sum(
                1 for f in self._flags.values() if f.expires_at is not None and _aware(f.expires_at) < now
            ),
            flags_with_variants=sum(1 for f in self._flags.values() if f.variants),
            subscriber_count=len(self._subscribers),
        )

    def _store(self, key: str, flag: FeatureFlag) -> FlagChange:
        now = self._now()
        previous = self._flags.get(key)
        stored = flag.copy()
        stored.key = key
        stored.updated_at = now
        if previous is None:
            stored.created_at = stored.created_at or now
        self._flags[key] = stored
        return FlagChange(
            key=key,
            type=FlagChangeType.CREATED if previous is None else FlagChangeType.UPDATED,
            timestamp=now,
            previous_value=previous,
            new_value=stored.copy(),
        )

    def _notify(self, changes: list[FlagChange]) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(changes)
            except Exception:
                logger.exception("flag change subscriber failed", change_count=len(changes))


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
