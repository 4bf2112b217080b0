"""設定スナップショットの作成・検証・復元"""

from __future__ import annotations

import asyncio
import copy
import json
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import structlog

from .checksum import compute_checksum
from .clock import Clock
from .events import EventBus, EventKind
from .exceptions import BackupError, ErrorCodes

if TYPE_CHECKING:
    from .watcher import ConfigurationTarget

logger = structlog.stdlib.get_logger(__name__)


@dataclass(frozen=True)
class ConfigurationBackup:
    """解決済み設定のスナップショット（不変）。"""

    id: str
    created_at: datetime
    configuration: Any
    checksums: MappingProxyType[str, str]
    label: str | None = None
    metadata: MappingProxyType[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    size: int = 0


def _detached(backup: ConfigurationBackup) -> ConfigurationBackup:
    """呼び出し側へ渡す複製。保存済みスナップショットは外から変更できない。"""
    return replace(
        backup,
        configuration=copy.deepcopy(backup.configuration),
        metadata=MappingProxyType(copy.deepcopy(dict(backup.metadata))),
    )


async def _file_checksum(path: str) -> str | None:
    try:
        content = await asyncio.to_thread(Path(path).read_bytes)
    except OSError:
        return None
    return compute_checksum(content)


class BackupStore:
    """1 つの設定対象のバックアップを保持する。

    スナップショット時点で読めた監視ファイルはすべてチェックサムを記録する。
    ``restore_backup`` はディスク上のファイルと照合しない。照合結果は
    ``verify_backup`` で確認する。
    """

    def __init__(
        self,
        target: ConfigurationTarget,
        paths: Callable[[], list[str]],
        *,
        clock: Clock,
        bus: EventBus,
        max_backups: int | None = 100,
        environment: str = "development",
    ) -> None:
        self._target = target
        self._paths = paths
        self._clock = clock
        self._bus = bus
        self._max_backups = max_backups
        self._environment = environment
        self._backups: dict[str, ConfigurationBackup] = {}

    def __len__(self) -> int:
        return len(self._backups)

    async def create_backup(self, label: str | None = None) -> str:
        """現在の設定をスナップショットし、バックアップ ID を返す。"""
        started = time.perf_counter()
        configuration = copy.deepcopy(self._target.get_configuration())
        files = list(self._paths())

        checksums: dict[str, str] = {}
        for path in files:
            digest = await _file_checksum(path)
            if digest is None:
                logger.debug("skipping unreadable path in backup", path=path)
                continue
            checksums[path] = digest

        try:
            size = len(json.dumps(configuration, default=str))
        except (TypeError, ValueError) as e:
            raise BackupError("create", "configuration is not serializable", cause=e) from e

        backup = ConfigurationBackup(
            id=str(uuid.uuid4()),
            label=label,
            created_at=self._clock.utcnow(),
            configuration=configuration,
            checksums=MappingProxyType(checksums),
            metadata=MappingProxyType(
                {
                    "environment": self._environment,
                    "files": files,
                    "creation_duration_ms": (time.perf_counter() - started) * 1000,
                }
            ),
            size=size,
        )
        self._backups[backup.id] = backup
        self._evict()

        logger.info("configuration backup created", backup_id=backup.id, label=label, files=len(checksums))
        self._bus.emit(EventKind.BACKUP_CREATED, backup=_detached(backup))
        return backup.id

    async def restore_backup(self, backup_id: str) -> None:
        """スナップショットを対象の更新経路へ戻し、再読み込みする。"""
        backup = self._require(backup_id)
        try:
            await self._target.update_configuration(copy.deepcopy(backup.configuration), replace=True)
            await self._target.reload()
        except BackupError:
            raise
        except Exception as e:
            raise BackupError("restore", str(e), cause=e) from e

        logger.info("configuration backup restored", backup_id=backup_id)
        self._bus.emit(EventKind.BACKUP_RESTORED, backup_id=backup_id)

    def list_backups(self) -> list[ConfigurationBackup]:
        """新しい順。"""
        backups = sorted(self._backups.values(), key=lambda b: b.created_at, reverse=True)
        return [_detached(b) for b in backups]

    def get_backup(self, backup_id: str) -> ConfigurationBackup | None:
        backup = self._backups.get(backup_id)
        return _detached(backup) if backup is not None else None

    def delete_backup(self, backup_id: str) -> bool:
        return self._backups.pop(backup_id, None) is not None

    async def verify_backup(self, backup_id: str) -> dict[str, bool]:
        """記録したチェックサムと現在のファイルを比較する。"""
        backup = self._require(backup_id)
        report: dict[str, bool] = {}
        for path, recorded in backup.checksums.items():
            report[path] = await _file_checksum(path) == recorded
        return report

    def _require(self, backup_id: str) -> ConfigurationBackup:
        backup = self._backups.get(backup_id)
        if backup is None:
            raise BackupError(
                "lookup",
                f"backup '{backup_id}' not found",
                code=ErrorCodes.BACKUP_NOT_FOUND,
            )
        return backup

    def _evict(self) -> None:
        if self._max_backups is None:
            return
        # dict は挿入順を保つため、先頭のキーが最も古い
        while len(self._backups) > self._max_backups:
            oldest = next(iter(self._backups))
            del self._backups[oldest]
            logger.debug("evicted oldest backup", backup_id=oldest)
