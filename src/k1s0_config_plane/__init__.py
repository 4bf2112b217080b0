"""k1s0 設定コントロールプレーン ライブラリ"""

from .backup import BackupStore, ConfigurationBackup
from .cache import EvaluationCache
from .changes import (
    ChangeDetectionMode,
    ChangeStatus,
    ChangeType,
    ConfigurationChange,
    WatcherStatistics,
)
from .classifier import ChangeClassifier, glob_to_regex, parse_config_content
from .checksum import compute_checksum, configuration_hash
from .clock import AsyncioClock, Clock, ManualClock, TimerHandle
from .evaluator import FlagEvaluator, bucket_percentage, bucket_unit
from .events import Event, EventBus, EventKind, Subscription
from .exceptions import (
    BackupError,
    ConfigPlaneError,
    ErrorCodes,
    FlagEvaluationError,
    OperationTimeoutError,
    ProviderConnectionError,
    RetryExhaustedError,
    ValidationError,
    WatcherError,
    is_retryable,
)
from .logger import configure_logging, new_logger
from .manager import FeatureFlagManager, FeatureFlagStatistics
from .memory import InMemoryFeatureFlagProvider, ProviderStatistics
from .merger import deep_merge
from .models import (
    ActionType,
    ConditionOperator,
    EvaluationCondition,
    EvaluationContext,
    EvaluationRule,
    FeatureFlag,
    FlagChange,
    FlagChangeType,
    FlagVariant,
    RuleAction,
    RuleOperator,
)
from .orchestrator import (
    ComponentHealth,
    ConfigurationOrchestrator,
    ConfigurationStatistics,
    HealthReport,
    HealthStatus,
)
from .provider import FeatureFlagProvider
from .retry import RetryConfig, with_retry
from .settings import (
    BackupOptions,
    ControlPlaneSettings,
    ErrorHandling,
    FeatureFlagOptions,
    LogSection,
    WatchOptions,
    load_settings,
)
from .validation import (
    ConfigurationValidator,
    ImpactAssessment,
    RecommendedAction,
    SchemaValidator,
    ValidationIssue,
    ValidationResult,
)
from .watcher import ConfigurationTarget, ConfigurationWatcher

__all__ = [
    "ActionType",
    "AsyncioClock",
    "BackupError",
    "BackupOptions",
    "BackupStore",
    "ChangeClassifier",
    "ChangeDetectionMode",
    "ChangeStatus",
    "ChangeType",
    "Clock",
    "ComponentHealth",
    "ConditionOperator",
    "ConfigPlaneError",
    "ConfigurationBackup",
    "ConfigurationChange",
    "ConfigurationOrchestrator",
    "ConfigurationStatistics",
    "ConfigurationTarget",
    "ConfigurationValidator",
    "ConfigurationWatcher",
    "ControlPlaneSettings",
    "ErrorCodes",
    "ErrorHandling",
    "EvaluationCache",
    "EvaluationCondition",
    "EvaluationContext",
    "EvaluationRule",
    "Event",
    "EventBus",
    "EventKind",
    "FeatureFlag",
    "FeatureFlagManager",
    "FeatureFlagOptions",
    "FeatureFlagProvider",
    "FeatureFlagStatistics",
    "FlagChange",
    "FlagChangeType",
    "FlagEvaluationError",
    "FlagEvaluator",
    "FlagVariant",
    "HealthReport",
    "HealthStatus",
    "ImpactAssessment",
    "InMemoryFeatureFlagProvider",
    "LogSection",
    "ManualClock",
    "OperationTimeoutError",
    "ProviderConnectionError",
    "ProviderStatistics",
    "RecommendedAction",
    "RetryConfig",
    "RetryExhaustedError",
    "RuleAction",
    "RuleOperator",
    "SchemaValidator",
    "Subscription",
    "TimerHandle",
    "ValidationError",
    "ValidationIssue",
    "ValidationResult",
    "WatchOptions",
    "WatcherError",
    "WatcherStatistics",
    "bucket_percentage",
    "bucket_unit",
    "compute_checksum",
    "configuration_hash",
    "deep_merge",
    "glob_to_regex",
    "is_retryable",
    "load_settings",
    "configure_logging",
    "new_logger",
    "parse_config_content",
    "with_retry",
]
