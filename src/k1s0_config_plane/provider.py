"""FeatureFlagProvider プロトコル"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from .models import FeatureFlag, FlagChange

FlagChangeCallback = Callable[[list[FlagChange]], None]


class FeatureFlagProvider(Protocol):
    """フラグ定義の取得元。変更はプッシュで通知する。

    実装はコピーを返す。呼び出し側がプロバイダ内部のストレージへの参照を
    持つことはない。
    """

    async def get_flags(self) -> dict[str, FeatureFlag]: ...

    async def get_flag(self, key: str) -> FeatureFlag | None: ...

    async def update_flag(self, key: str, flag: FeatureFlag) -> None: ...

    async def delete_flag(self, key: str) -> None: ...

    def subscribe(self, callback: FlagChangeCallback) -> Callable[[], None]:
        """callback を登録する。戻り値を呼ぶと登録を解除する。"""
        ...
