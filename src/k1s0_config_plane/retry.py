"""リトライ可能な失敗に対するオプトインのリトライ"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from .exceptions import RetryExhaustedError, is_retryable

T = TypeVar("T")

logger = structlog.stdlib.get_logger(__name__)


@dataclass
class RetryConfig:
    """リトライポリシー。"""

    max_attempts: int = 3
    initial_delay: float = 0.1
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True

    def compute_delay(self, attempt: int) -> float:
        """attempt + 1 回目の試行までの待ち時間 (秒)。"""
        base = self.initial_delay * (self.multiplier**attempt)
        capped = min(base, self.max_delay)
        if self.jitter:
            return capped * (0.9 + random.random() * 0.2)
        return capped


async def with_retry(
    config: RetryConfig,
    fn: Callable[[], Awaitable[T]],
    *,
    retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """fn が成功するまで実行する。retryable が真を返すエラーのみ再試行する。

    終端エラーはそのまま送出する。すべての試行がリトライ可能なエラーで
    失敗した場合は、最後のエラーを cause にした RetryExhaustedError を送出する。
    """
    last_error: Exception | None = None
    for attempt in range(config.max_attempts):
        try:
            return await fn()
        except Exception as e:
            if not retryable(e):
                raise
            last_error = e
            if attempt + 1 < config.max_attempts:
                delay = config.compute_delay(attempt)
                logger.warning("retrying after failure", attempt=attempt + 1, delay=delay, error=str(e))
                await sleep(delay)
    raise RetryExhaustedError(attempts=config.max_attempts, last_error=last_error)
