"""評価結果キャッシュ"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .checksum import configuration_hash
from .clock import Clock


class _CacheEntry:
    __slots__ = ("value", "expires_at")

    def __init__(self, value: bool, expires_at: float | None) -> None:
        self.value = value
        self.expires_at = expires_at

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


def context_fingerprint(context: Mapping[str, Any] | None) -> str:
    """キーをソートしたコンテキストのハッシュ。空のコンテキストは同じスロットを使う。"""
    if not context:
        return ""
    return configuration_hash(context)[:16]


class EvaluationCache:
    """TTL 付きでフラグごとに真偽値の評価結果を保持するキャッシュ。

    エントリはフラグキーごとにまとめてあり、あるフラグへの書き込みで
    そのフラグの結果を一度に破棄できる。
    """

    def __init__(self, clock: Clock, ttl: float | None = 300.0) -> None:
        self._clock = clock
        self._ttl = ttl
        self._entries: dict[str, dict[str, _CacheEntry]] = {}

    def get(self, flag_key: str, context: Mapping[str, Any] | None) -> bool | None:
        slots = self._entries.get(flag_key)
        if not slots:
            return None
        fingerprint = context_fingerprint(context)
        entry = slots.get(fingerprint)
        if entry is None:
            return None
        if entry.is_expired(self._clock.monotonic()):
            del slots[fingerprint]
            return None
        return entry.value

    def set(self, flag_key: str, context: Mapping[str, Any] | None, value: bool) -> None:
        expires_at = self._clock.monotonic() + self._ttl if self._ttl is not None else None
        self._entries.setdefault(flag_key, {})[context_fingerprint(context)] = _CacheEntry(
            value, expires_at
        )

    def invalidate(self, flag_key: str) -> int:
        """flag_key のエントリをすべて破棄し、破棄した件数を返す。"""
        return len(self._entries.pop(flag_key, {}))

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return sum(len(slots) for slots in self._entries.values())
