"""制御プレーン設定 (pydantic BaseModel) と YAML 読み込み"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .changes import ChangeDetectionMode
from .exceptions import ConfigPlaneError, ErrorCodes
from .merger import deep_merge
from .models import EvaluationContext

DEFAULT_INCLUDE = [
    "**/*.json",
    "**/*.yml",
    "**/*.yaml",
    "**/*.env",
    "**/.env",
    "**/.env.*",
    "**/config/**",
]

DEFAULT_EXCLUDE = [
    "**/.git/**",
    "**/node_modules/**",
    "**/__pycache__/**",
    "**/dist/**",
    "**/build/**",
    "**/*.test.*",
    "**/*.spec.*",
]

DEFAULT_RESTART_PATTERNS = [
    "**/.env",
    "**/pyproject.toml",
    "**/config/**",
    "**/*config*",
]


class ErrorHandling(StrEnum):
    """評価エラー時のフラグマネージャーの振る舞い。"""

    THROW = "throw"
    LOG = "log"
    SILENT = "silent"


class WatchOptions(BaseModel):
    """変更ウォッチャーの設定。"""

    mode: ChangeDetectionMode = ChangeDetectionMode.IMMEDIATE
    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    restart_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_RESTART_PATTERNS))
    debounce_ms: int = Field(default=1000, ge=0)
    batch_size: int = Field(default=10, ge=1)
    schedule_interval_ms: int = Field(default=30_000, gt=0)
    enable_validation: bool = False
    enable_auto_backup: bool = False
    schema_name: str | None = None
    reload_timeout_ms: int | None = Field(default=None, gt=0)
    history_limit: int = Field(default=1000, ge=1)

    @classmethod
    def defaults(cls, **overrides: Any) -> WatchOptions:
        """設定ツリー向けの標準 include/exclude を持つ設定を返す。"""
        data: dict[str, Any] = {
            "include": list(DEFAULT_INCLUDE),
            "exclude": list(DEFAULT_EXCLUDE),
        }
        data.update(overrides)
        return cls.model_validate(data)


class FeatureFlagOptions(BaseModel):
    """フィーチャーフラグマネージャーの設定。"""

    enable_caching: bool = True
    cache_ttl_seconds: float | None = Field(default=300.0, gt=0)
    enable_statistics: bool = True
    error_handling: ErrorHandling = ErrorHandling.LOG
    refresh_interval_seconds: float | None = Field(default=None, gt=0)
    default_context: dict[str, Any] = Field(default_factory=dict)

    def evaluation_defaults(self) -> EvaluationContext | None:
        """default_context を EvaluationContext にする。未知のキーは attributes に入る。"""
        if not self.default_context:
            return None
        known = {"user_id", "session_id", "tenant_id", "user_roles", "environment"}
        data = dict(self.default_context)
        attributes = dict(data.pop("attributes", None) or {})
        attributes.update({k: data.pop(k) for k in list(data) if k not in known})
        return EvaluationContext(**data, attributes=attributes)


class BackupOptions(BaseModel):
    """バックアップストアの設定。"""

    max_backups: int | None = Field(default=100, ge=1)


class LogSection(BaseModel):
    """ログ設定。"""

    level: str = "INFO"
    format: Literal["json", "text"] = "json"


class RetrySection(BaseModel):
    """プロバイダからのフラグ読み込みのリトライポリシー。"""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=0.1, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    jitter: bool = True


class ControlPlaneSettings(BaseModel):
    """制御プレーン全体の設定。"""

    watch_paths: list[str] = Field(default_factory=list)
    watcher: WatchOptions = Field(default_factory=WatchOptions.defaults)
    feature_flags: FeatureFlagOptions = Field(default_factory=FeatureFlagOptions)
    flag_load_retry: RetrySection | None = None
    backup: BackupOptions = Field(default_factory=BackupOptions)
    log: LogSection = Field(default_factory=LogSection)
    schema_name: str | None = None


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigPlaneError(
            code=ErrorCodes.READ_FILE,
            message=f"Failed to read settings file: {path}",
            cause=e,
        ) from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigPlaneError(
            code=ErrorCodes.PARSE,
            message=f"Failed to parse YAML: {path}",
            cause=e,
        ) from e
    if not isinstance(data, dict):
        raise ConfigPlaneError(
            code=ErrorCodes.PARSE,
            message=f"Settings file must contain a mapping: {path}",
        )
    return data


def load_settings(base_path: Path, env_path: Path | None = None) -> ControlPlaneSettings:
    """YAML から設定を読み込む。

    base_path: 制御プレーン設定ファイル（必須）
    env_path: 環境別の上書きファイル（任意）。ファイルがあればベースへ深くマージする。
    """
    data = _read_yaml(base_path)
    if env_path is not None and env_path.exists():
        data = deep_merge(data, _read_yaml(env_path))
    try:
        return ControlPlaneSettings.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigPlaneError(
            code=ErrorCodes.VALIDATION,
            message=f"Settings validation failed: {e}",
            cause=e,
        ) from e
