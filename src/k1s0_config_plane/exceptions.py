"""設定制御プレーンの例外型"""

from __future__ import annotations

from typing import Any


class ErrorCodes:
    """ConfigPlaneError 用のエラーコード定数。"""

    CONFIG_ERROR: str = "CONFIG_ERROR"
    READ_FILE: str = "READ_FILE_ERROR"
    PARSE: str = "PARSE_ERROR"
    VALIDATION: str = "VALIDATION_ERROR"
    SCHEMA_NOT_FOUND: str = "SCHEMA_NOT_FOUND"
    FLAG_NOT_FOUND: str = "FLAG_NOT_FOUND"
    FLAG_EVALUATION: str = "FLAG_EVALUATION_ERROR"
    PROVIDER_CONNECTION: str = "PROVIDER_CONNECTION_ERROR"
    WATCHER: str = "WATCHER_ERROR"
    CHANGE_NOT_FOUND: str = "CHANGE_NOT_FOUND"
    INVALID_TRANSITION: str = "INVALID_TRANSITION"
    BACKUP: str = "BACKUP_ERROR"
    BACKUP_NOT_FOUND: str = "BACKUP_NOT_FOUND"
    TIMEOUT: str = "TIMEOUT"
    RETRY_EXHAUSTED: str = "RETRY_EXHAUSTED"


class ConfigPlaneError(Exception):
    """設定制御プレーンの基底エラー。"""

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.context = context or {}
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class ValidationError(ConfigPlaneError):
    """スキーマまたは業務ルールの検証に失敗した。"""

    def __init__(
        self,
        message: str,
        issues: list[Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(ErrorCodes.VALIDATION, message, cause=cause)
        self.issues = list(issues or [])

    def summary(self) -> str:
        """"path: message" を "; " で連結して返す。"""
        if not self.issues:
            return super(ConfigPlaneError, self).__str__()
        return "; ".join(f"{i.path}: {i.message}" for i in self.issues)


class FlagEvaluationError(ConfigPlaneError):
    """ルールまたは条件を評価できなかった。"""

    def __init__(self, flag_key: str, reason: str, cause: Exception | None = None) -> None:
        super().__init__(
            ErrorCodes.FLAG_EVALUATION,
            f"Failed to evaluate feature flag '{flag_key}': {reason}",
            cause=cause,
            context={"flag_key": flag_key, "reason": reason},
        )
        self.flag_key = flag_key
        self.reason = reason


class WatcherError(ConfigPlaneError):
    """変更ウォッチャー内部の失敗。"""

    def __init__(
        self,
        message: str,
        code: str = ErrorCodes.WATCHER,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(code, message, cause=cause)


class BackupError(ConfigPlaneError):
    """スナップショット作成または復元の失敗。"""

    def __init__(
        self,
        operation: str,
        reason: str,
        code: str = ErrorCodes.BACKUP,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            code,
            f"Backup {operation} failed: {reason}",
            cause=cause,
            context={"operation": operation, "reason": reason},
        )
        self.operation = operation


class ProviderConnectionError(ConfigPlaneError):
    """フラグの取得元に接続できない。"""

    def __init__(self, provider: str, reason: str, cause: Exception | None = None) -> None:
        super().__init__(
            ErrorCodes.PROVIDER_CONNECTION,
            f"Failed to connect to provider '{provider}': {reason}",
            cause=cause,
            context={"provider": provider, "reason": reason},
        )
        self.provider = provider


class OperationTimeoutError(ConfigPlaneError):
    """明示的に設定された期限内に処理が終わらなかった。"""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(
            ErrorCodes.TIMEOUT,
            f"{operation} did not complete within {timeout:.3f}s",
            context={"operation": operation, "timeout": timeout},
        )
        self.operation = operation
        self.timeout = timeout


class RetryExhaustedError(ConfigPlaneError):
    """すべてのリトライが失敗したときに送出される。"""

    def __init__(self, attempts: int, last_error: Exception | None = None) -> None:
        msg = f"gave up after {attempts} attempts"
        if last_error is not None:
            msg += f": {last_error}"
        super().__init__(ErrorCodes.RETRY_EXHAUSTED, msg, cause=last_error)
        self.attempts = attempts
        self.last_error = last_error


def is_retryable(error: BaseException) -> bool:
    """タイムアウトとプロバイダ接続エラーのみリトライ対象とする。"""
    return isinstance(error, (OperationTimeoutError, ProviderConnectionError))
