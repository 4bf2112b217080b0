"""フィーチャーフラグのデータモデル"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import StrEnum
from typing import Any


class ConditionOperator(StrEnum):
    """条件がコンテキスト属性に適用する演算子。"""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    IN = "in"
    NOT_IN = "not_in"
    REGEX_MATCH = "regex_match"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    PERCENTAGE = "percentage"


class RuleOperator(StrEnum):
    """1 つのルール内の条件の結合方法。"""

    AND = "AND"
    OR = "OR"


class ActionType(StrEnum):
    """一致したルールの結果。"""

    ENABLE = "enable"
    DISABLE = "disable"
    VARIANT = "variant"
    PERCENTAGE = "percentage"


class FlagChangeType(StrEnum):
    """プロバイダが通知する変更の種類。"""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass
class EvaluationCondition:
    """評価コンテキストのドット区切り属性に対する単一の述語。"""

    attribute: str
    operator: ConditionOperator
    value: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvaluationCondition:
        return cls(
            attribute=data["attribute"],
            operator=ConditionOperator(data["operator"]),
            value=data.get("value"),
        )


@dataclass
class RuleAction:
    """一致したルールがフラグに与える作用。"""

    type: ActionType
    variant: str | None = None
    percentage: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RuleAction:
        return cls(
            type=ActionType(data["type"]),
            variant=data.get("variant"),
            percentage=data.get("percentage"),
        )


@dataclass
class EvaluationRule:
    """条件付きルール。priority が高いものから評価する。"""

    conditions: list[EvaluationCondition] = field(default_factory=list)
    operator: RuleOperator = RuleOperator.AND
    action: RuleAction = field(default_factory=lambda: RuleAction(ActionType.ENABLE))
    priority: int = 0
    enabled: bool = True
    id: str = ""
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvaluationRule:
        action = data.get("action")
        return cls(
            conditions=[EvaluationCondition.from_dict(c) for c in data.get("conditions", [])],
            operator=RuleOperator(data.get("operator", RuleOperator.AND)),
            action=RuleAction.from_dict(action) if action else RuleAction(ActionType.ENABLE),
            priority=int(data.get("priority", 0)),
            enabled=bool(data.get("enabled", True)),
            id=data.get("id", ""),
            description=data.get("description", ""),
        )


@dataclass
class FlagVariant:
    """マルチバリアントフラグのバリアント。

    weight は任意。有効なバリアントのいずれかが weight を持つ場合は重み付きで
    選択し、持たない場合は均等に割り当てる。
    """

    key: str
    value: Any = None
    name: str = ""
    weight: float | None = None
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlagVariant:
        return cls(
            key=data["key"],
            value=data.get("value"),
            name=data.get("name", ""),
            weight=data.get("weight"),
            enabled=bool(data.get("enabled", True)),
        )


@dataclass
class FeatureFlag:
    """フィーチャーフラグ定義。"""

    key: str
    enabled: bool = False
    description: str = ""
    rules: list[EvaluationRule] = field(default_factory=list)
    variants: list[FlagVariant] = field(default_factory=list)
    default_variant: str | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    owner: str | None = None
    tags: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def copy(self) -> FeatureFlag:
        return copy.deepcopy(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeatureFlag:
        """YAML などを読み込んだプレーンなデータからフラグを組み立てる。"""
        expires_at = data.get("expires_at")
        if isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at)
        return cls(
            key=data["key"],
            enabled=bool(data.get("enabled", False)),
            description=data.get("description", ""),
            rules=[EvaluationRule.from_dict(r) for r in data.get("rules", [])],
            variants=[FlagVariant.from_dict(v) for v in data.get("variants", [])],
            default_variant=data.get("default_variant"),
            expires_at=expires_at,
            metadata=dict(data.get("metadata", {})),
            owner=data.get("owner"),
            tags=list(data.get("tags", [])),
        )


@dataclass
class EvaluationContext:
    """評価ごとに渡される属性の集合。"""

    user_id: str | None = None
    session_id: str | None = None
    tenant_id: str | None = None
    user_roles: list[str] | None = None
    environment: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """条件の解決に使うフラットな mapping に変換する。

        カスタム属性はトップレベルに展開する。同名の場合は名前付きフィールドが
        優先される。
        """
        data: dict[str, Any] = copy.deepcopy(self.attributes)
        for f in fields(self):
            if f.name == "attributes":
                continue
            value = getattr(self, f.name)
            if value is not None:
                data[f.name] = copy.deepcopy(value)
        return data

    def merged_with(self, defaults: EvaluationContext | None) -> EvaluationContext:
        """未設定のフィールドを defaults から補った新しいコンテキストを返す。"""
        if defaults is None:
            return copy.deepcopy(self)
        merged = copy.deepcopy(defaults)
        for f in fields(self):
            if f.name == "attributes":
                continue
            value = getattr(self, f.name)
            if value is not None:
                setattr(merged, f.name, copy.deepcopy(value))
        merged.attributes = {**merged.attributes, **copy.deepcopy(self.attributes)}
        return merged


@dataclass
class FlagChange:
    """プロバイダが購読者へ通知する変更。"""

    key: str
    type: FlagChangeType
    timestamp: datetime
    previous_value: FeatureFlag | None = None
    new_value: FeatureFlag | None = None
