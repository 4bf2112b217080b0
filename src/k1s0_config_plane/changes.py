"""設定変更レコードとウォッチャー統計"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from .exceptions import ErrorCodes, WatcherError

if TYPE_CHECKING:
    from .validation import ValidationResult


class ChangeType(StrEnum):
    """ファイルウォッチャーから受け付ける変更イベントの種類。"""

    FILE_CREATED = "file_created"
    FILE_MODIFIED = "file_modified"
    FILE_DELETED = "file_deleted"
    DIRECTORY_CREATED = "directory_created"
    DIRECTORY_DELETED = "directory_deleted"

    @property
    def is_deletion(self) -> bool:
        return self in (ChangeType.FILE_DELETED, ChangeType.DIRECTORY_DELETED)


class ChangeStatus(StrEnum):
    """変更のライフサイクル。PENDING と PROCESSING 以外は終端状態。

    ロールバックは ``rollback_of`` を持つ新しい変更として記録され、
    元の変更は APPLIED のまま残る。
    """

    PENDING = "pending"
    PROCESSING = "processing"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    IGNORED = "ignored"


class ChangeDetectionMode(StrEnum):
    """検出した変更をいつ適用するか。"""

    IMMEDIATE = "immediate"
    DEBOUNCED = "debounced"
    BATCH = "batch"
    SCHEDULED = "scheduled"
    MANUAL = "manual"


_TRANSITIONS: dict[ChangeStatus, frozenset[ChangeStatus]] = {
    ChangeStatus.PENDING: frozenset({ChangeStatus.PROCESSING, ChangeStatus.IGNORED}),
    ChangeStatus.PROCESSING: frozenset({ChangeStatus.APPLIED, ChangeStatus.FAILED}),
}


@dataclass
class ConfigurationChange:
    """分類済みの設定変更 1 件。"""

    type: ChangeType
    path: str
    timestamp: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ChangeStatus = ChangeStatus.PENDING
    requires_restart: bool = False
    previous_value: Any = None
    new_value: Any = None
    validation: ValidationResult | None = None
    error: Exception | None = None
    superseded_by: str | None = None
    rollback_of: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status not in (ChangeStatus.PENDING, ChangeStatus.PROCESSING)

    def transition(self, status: ChangeStatus, error: Exception | None = None) -> None:
        """``status`` へ遷移する。ライフサイクル外の遷移は WatcherError。"""
        if status not in _TRANSITIONS.get(self.status, frozenset()):
            raise WatcherError(
                f"change {self.id} cannot move from {self.status} to {status}",
                code=ErrorCodes.INVALID_TRANSITION,
            )
        self.status = status
        if error is not None:
            self.error = error


@dataclass
class WatcherStatistics:
    """ウォッチャーのカウンタ。``clear_statistics`` でのみリセットされる。"""

    start_time: datetime
    total_changes: int = 0
    successful_reloads: int = 0
    failed_reloads: int = 0
    ignored_changes: int = 0
    average_reload_time_ms: float = 0.0
    last_change_time: datetime | None = None
    uptime_seconds: float = 0.0
    watched_paths: int = 0
    history_size: int = 0
    pending_changes: int = 0
