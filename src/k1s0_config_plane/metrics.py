"""制御プレーンの OpenTelemetry メトリクス

API のみを使う。MeterProvider とエクスポーターはホストプロセスが決める。
設定されていなければ各計器は何もしない。
"""

from __future__ import annotations

from opentelemetry import metrics

_meter = metrics.get_meter("k1s0_config_plane", version="0.1.0")

config_reloads_total = _meter.create_counter(
    name="config_reloads_total",
    description="Configuration reloads by outcome",
    unit="1",
)

config_reload_duration_seconds = _meter.create_histogram(
    name="config_reload_duration_seconds",
    description="Time spent in the reload collaborator",
    unit="s",
)

config_changes_ignored_total = _meter.create_counter(
    name="config_changes_ignored_total",
    description="Changes dropped because validation failed",
    unit="1",
)

flag_evaluations_total = _meter.create_counter(
    name="flag_evaluations_total",
    description="Feature flag evaluations by result",
    unit="1",
)
