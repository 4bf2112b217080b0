"""制御プレーンのログ設定 (structlog)"""

from __future__ import annotations

import logging
import sys
from typing import TextIO

import structlog

from .settings import LogSection

PACKAGE_LOGGER = "k1s0_config_plane"


def _processors(format: str) -> list[structlog.types.Processor]:
    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if format == "json":
        return [
            *shared,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    return [*shared, structlog.dev.ConsoleRenderer()]


def configure_logging(section: LogSection, stream: TextIO | None = None) -> structlog.stdlib.BoundLogger:
    """LogSection に従ってパッケージのログ出力を設定し、ロガーを返す。

    標準 logging のルートには触れず、``k1s0_config_plane`` 配下のロガーだけに
    ハンドラとレベルを設定する。モジュールロガーはキャッシュしないため、
    再設定はすぐに反映される。

    Args:
        section: ログ設定 (level, format)
        stream: 出力先。省略時は標準出力

    Returns:
        設定済みの structlog.stdlib.BoundLogger
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.handlers[:] = [handler]
    package_logger.setLevel(getattr(logging, section.level.upper(), logging.INFO))
    package_logger.propagate = False

    structlog.configure(
        processors=_processors(section.format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
    return structlog.stdlib.get_logger(PACKAGE_LOGGER)


def new_logger(level: str = "INFO", format: str = "json") -> structlog.stdlib.BoundLogger:
    """レベルと形式を直接指定して configure_logging を呼ぶ。"""
    return configure_logging(LogSection(level=level, format=format))  # type: ignore[arg-type]
