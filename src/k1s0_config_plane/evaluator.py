"""フラグ評価: ルールの優先順位、条件演算子、一貫したバケッティング"""

from __future__ import annotations

import functools
import hashlib
import re
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

import structlog

from .exceptions import FlagEvaluationError
from .models import (
    ActionType,
    ConditionOperator,
    EvaluationCondition,
    EvaluationContext,
    EvaluationRule,
    FeatureFlag,
    FlagVariant,
    RuleOperator,
)

logger = structlog.stdlib.get_logger(__name__)

ContextLike = EvaluationContext | Mapping[str, Any] | None

_SEQUENCES = (list, tuple, set, frozenset)


def _digest(seed: str) -> int:
    return int(hashlib.sha256(seed.encode("utf-8")).hexdigest()[:8], 16)


def bucket_percentage(identifier: str, salt: str = "") -> int:
    """identifier を [0, 100) の安定したバケットに割り当てる。"""
    return _digest(f"{salt}:{identifier}") % 100


def bucket_unit(identifier: str, salt: str = "") -> float:
    """identifier を [0, 1) の安定した点に割り当てる。"""
    return _digest(f"{salt}:{identifier}") / 0x100000000


def resolve_attribute(context: Mapping[str, Any], path: str) -> Any:
    """ドット区切りのパスを辿る。存在しない要素は None になる。"""
    value: Any = context
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return None
    return value


def _as_mapping(context: ContextLike) -> Mapping[str, Any]:
    if context is None:
        return {}
    if isinstance(context, EvaluationContext):
        return context.to_dict()
    return context


def _stable_identifier(context: Mapping[str, Any]) -> str:
    for name in ("user_id", "session_id"):
        value = context.get(name)
        if value not in (None, ""):
            return str(value)
    # 識別子がない場合、呼び出しごとの割り当ては固定されない
    logger.debug("no user_id or session_id in context, bucketing randomly")
    return uuid.uuid4().hex


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, (dict, *_SEQUENCES)):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, str):
        return str(expected) in actual
    if isinstance(actual, (dict, *_SEQUENCES)):
        return expected in actual
    return str(expected) in str(actual)


@functools.lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


class FlagEvaluator:
    """フラグ定義の純粋な評価器。

    フラグもコンテキストも変更しないため、1 つのインスタンスを
    複数の呼び出し元で共有できる。
    """

    def __init__(self) -> None:
        self._comparisons: dict[ConditionOperator, Callable[[float, float], bool]] = {
            ConditionOperator.GREATER_THAN: lambda a, b: a > b,
            ConditionOperator.GREATER_THAN_OR_EQUAL: lambda a, b: a >= b,
            ConditionOperator.LESS_THAN: lambda a, b: a < b,
            ConditionOperator.LESS_THAN_OR_EQUAL: lambda a, b: a <= b,
        }

    def is_active(self, flag: FeatureFlag, now: datetime | None = None) -> bool:
        """有効で、かつ expires_at を過ぎていないこと。"""
        if not flag.enabled:
            return False
        if flag.expires_at is None:
            return True
        now = now or datetime.now(UTC)
        expires_at = flag.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return now <= expires_at

    def evaluate(
        self,
        flag: FeatureFlag,
        context: ContextLike = None,
        *,
        now: datetime | None = None,
    ) -> bool:
        """context に対して flag が有効かどうかを返す。"""
        if not self.is_active(flag, now):
            return False
        if not flag.rules:
            return True
        rule = self.matching_rule(flag, context)
        return rule is not None and rule.action.type == ActionType.ENABLE

    def matching_rule(self, flag: FeatureFlag, context: ContextLike = None) -> EvaluationRule | None:
        """priority の降順で、条件を満たす最初の有効なルールを返す。

        priority が同じルールは定義順を保つ。
        """
        ctx = _as_mapping(context)
        ordered = sorted(
            (r for r in flag.rules if r.enabled),
            key=lambda r: r.priority,
            reverse=True,
        )
        for rule in ordered:
            if self._rule_matches(flag.key, rule, ctx):
                return rule
        return None

    def select_variant(
        self,
        flag: FeatureFlag,
        context: ContextLike = None,
        *,
        now: datetime | None = None,
    ) -> str | None:
        """context に対するバリアントキーを選ぶ。フラグが無効なら None。"""
        if not self.is_active(flag, now):
            return None
        ctx = _as_mapping(context)
        enabled = [v for v in flag.variants if v.enabled]

        if flag.rules:
            rule = self.matching_rule(flag, ctx)
            if rule is not None and rule.action.type == ActionType.VARIANT:
                pinned = next((v for v in enabled if v.key == rule.action.variant), None)
                if pinned is not None:
                    return pinned.key

        if not enabled:
            return flag.default_variant
        if len(enabled) == 1:
            return enabled[0].key

        identifier = _stable_identifier(ctx)
        if any(v.weight is not None for v in enabled):
            return self._weighted(flag.key, enabled, identifier)
        return enabled[_digest(f"{flag.key}/variants:{identifier}") % len(enabled)].key

    def _weighted(self, flag_key: str, variants: list[FlagVariant], identifier: str) -> str:
        weights = [max(v.weight or 0.0, 0.0) for v in variants]
        total = sum(weights)
        if total <= 0:
            return variants[0].key
        target = bucket_unit(identifier, f"{flag_key}/variants") * total
        cumulative = 0.0
        for variant, weight in zip(variants, weights):
            cumulative += weight
            if target < cumulative:
                return variant.key
        return variants[-1].key

    def _rule_matches(self, flag_key: str, rule: EvaluationRule, ctx: Mapping[str, Any]) -> bool:
        if not rule.conditions:
            return True
        results = (self._condition_holds(flag_key, c, ctx) for c in rule.conditions)
        if rule.operator == RuleOperator.AND:
            return all(results)
        return any(results)

    def _condition_holds(
        self, flag_key: str, condition: EvaluationCondition, ctx: Mapping[str, Any]
    ) -> bool:
        actual = resolve_attribute(ctx, condition.attribute)
        expected = condition.value
        op = condition.operator

        if op == ConditionOperator.EQUALS:
            return actual == expected
        if op == ConditionOperator.NOT_EQUALS:
            return actual != expected
        if op == ConditionOperator.CONTAINS:
            return _contains(actual, expected)
        if op == ConditionOperator.NOT_CONTAINS:
            return not _contains(actual, expected)
        if op == ConditionOperator.STARTS_WITH:
            return actual is not None and str(actual).startswith(str(expected))
        if op == ConditionOperator.ENDS_WITH:
            return actual is not None and str(actual).endswith(str(expected))
        if op in self._comparisons:
            threshold = self._configured_number(flag_key, condition)
            value = _as_number(actual)
            return value is not None and self._comparisons[op](value, threshold)
        if op in (ConditionOperator.IN, ConditionOperator.NOT_IN):
            if not isinstance(expected, _SEQUENCES):
                raise FlagEvaluationError(
                    flag_key, f"'{op}' on '{condition.attribute}' needs a list value"
                )
            return (actual in expected) == (op == ConditionOperator.IN)
        if op == ConditionOperator.REGEX_MATCH:
            try:
                pattern = _compile(str(expected))
            except re.error as e:
                raise FlagEvaluationError(flag_key, f"invalid pattern {expected!r}", cause=e) from e
            return actual is not None and pattern.search(str(actual)) is not None
        if op == ConditionOperator.EXISTS:
            return actual is not None
        if op == ConditionOperator.NOT_EXISTS:
            return actual is None
        if op == ConditionOperator.PERCENTAGE:
            threshold = self._configured_number(flag_key, condition)
            identifier = str(actual) if actual not in (None, "") else _stable_identifier(ctx)
            return bucket_percentage(identifier, flag_key) < threshold
        raise FlagEvaluationError(flag_key, f"unsupported operator {op!r}")

    @staticmethod
    def _configured_number(flag_key: str, condition: EvaluationCondition) -> float:
        value = _as_number(condition.value)
        if value is None:
            raise FlagEvaluationError(
                flag_key,
                f"'{condition.operator}' on '{condition.attribute}' needs a numeric value, "
                f"got {condition.value!r}",
            )
        return value
