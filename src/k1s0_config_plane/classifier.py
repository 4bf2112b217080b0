"""ファイル変更イベントの分類"""

from __future__ import annotations

import asyncio
import copy
import functools
import json
import re
from collections.abc import Iterable
from pathlib import Path, PurePosixPath
from typing import Any

import yaml

from .changes import ChangeType, ConfigurationChange
from .clock import Clock
from .exceptions import ConfigPlaneError, ErrorCodes


@functools.lru_cache(maxsize=512)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """``**`` はディレクトリをまたぎ、``*`` は 1 階層内に留まる glob をコンパイルする。"""
    out: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(out))


def normalize_path(path: str) -> str:
    normalized = path.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    normalized = normalize_path(path)
    return any(glob_to_regex(p).fullmatch(normalized) for p in patterns)


def parse_env(content: str) -> dict[str, str]:
    """``KEY=value`` 形式の行を読む。空行と ``#`` コメントは読み飛ばす。"""
    result: dict[str, str] = {}
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, _, value = line.partition("=")
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        result[key.strip()] = value
    return result


def parse_config_content(content: str, path: str) -> Any:
    """拡張子に応じてファイル内容をパースする。

    JSON と YAML はデコードし、``.env`` はフラットな dict にする。それ以外は
    ``{"content": <text>}`` として返す。
    """
    name = PurePosixPath(normalize_path(path)).name
    suffix = PurePosixPath(name).suffix.lower()
    try:
        if suffix == ".json":
            return json.loads(content)
        if suffix in (".yml", ".yaml"):
            return yaml.safe_load(content)
        if name == ".env" or name.startswith(".env.") or suffix == ".env":
            return parse_env(content)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigPlaneError(
            code=ErrorCodes.PARSE,
            message=f"Failed to parse {path}",
            cause=e,
            context={"path": path},
        ) from e
    return {"content": content}


class ChangeClassifier:
    """glob でパスを絞り込み、パース済み内容つきの変更レコードを作る。"""

    def __init__(
        self,
        clock: Clock,
        include: Iterable[str] = (),
        exclude: Iterable[str] = (),
        restart_patterns: Iterable[str] = (),
    ) -> None:
        self._clock = clock
        self.include = list(include)
        self.exclude = list(exclude)
        self.restart_patterns = list(restart_patterns)

    def should_process(self, path: str) -> bool:
        """include に一致（または include 未指定）し、exclude に一致しないこと。"""
        if self.include and not matches_any(path, self.include):
            return False
        return not matches_any(path, self.exclude)

    def requires_restart(self, path: str) -> bool:
        return matches_any(path, self.restart_patterns)

    async def classify(
        self,
        path: str,
        change_type: ChangeType,
        previous_value: Any = None,
    ) -> ConfigurationChange:
        """PENDING の変更を作る。読み込み・パースの失敗は ``change.error`` に残す。"""
        change = ConfigurationChange(
            type=change_type,
            path=path,
            timestamp=self._clock.utcnow(),
            requires_restart=self.requires_restart(path),
            previous_value=copy.deepcopy(previous_value),
        )
        if change_type not in (ChangeType.FILE_CREATED, ChangeType.FILE_MODIFIED):
            return change

        try:
            content = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            change.error = ConfigPlaneError(
                code=ErrorCodes.READ_FILE,
                message=f"Failed to read {path}",
                cause=e,
                context={"path": path},
            )
            return change

        try:
            change.new_value = parse_config_content(content, path)
        except ConfigPlaneError as e:
            change.error = e
        return change
