"""内容と設定ツリーのハッシュ"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def compute_checksum(content: str | bytes) -> str:
    """content の sha256 を 16 進文字列で返す。"""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def configuration_hash(config: Any) -> str:
    """設定ツリーの安定したハッシュ。キーの順序には依存しない。"""
    serialized = json.dumps(config, sort_keys=True, separators=(",", ":"), default=str)
    return compute_checksum(serialized)
