"""設定ツリーのレイヤーマージ"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any


def deep_merge(base: Mapping[str, Any], *layers: Mapping[str, Any]) -> dict[str, Any]:
    """base に layers を順に重ねた新しい dict を返す。

    後のレイヤーほど優先される。dict 同士は再帰的にマージし、リストを含む
    それ以外の値は置き換える。戻り値は入力と値を共有しない。
    """
    result = copy.deepcopy(dict(base))
    for layer in layers:
        _merge_into(result, layer)
    return result


def _merge_into(target: dict[str, Any], layer: Mapping[str, Any]) -> None:
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge_into(current, value)
        else:
            target[key] = copy.deepcopy(value)
