"""バリデータのインターフェースと pydantic によるスキーマ検証"""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ValidationError


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecommendedAction(StrEnum):
    """変更に対してバリデータが推奨する処理。"""

    APPLY = "apply"
    REVIEW = "review"
    REJECT = "reject"


@dataclass
class ValidationIssue:
    """設定ツリーで見つかった 1 件の問題。"""

    path: str
    message: str
    type: str = "validation"
    severity: Severity = Severity.HIGH
    value: Any = None


@dataclass
class ImpactAssessment:
    """変更を適用した場合の影響度。"""

    level: Severity = Severity.LOW
    requires_restart: bool = False
    affected_components: list[str] = field(default_factory=list)
    description: str = ""


@dataclass
class ValidationResult:
    """1 つの設定ツリーの検証結果。"""

    valid: bool
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    impact: ImpactAssessment = field(default_factory=ImpactAssessment)
    recommended_action: RecommendedAction = RecommendedAction.APPLY
    value: Any = None

    @classmethod
    def ok(cls, value: Any = None, warnings: list[ValidationIssue] | None = None) -> ValidationResult:
        return cls(
            valid=True,
            warnings=list(warnings or []),
            recommended_action=RecommendedAction.REVIEW if warnings else RecommendedAction.APPLY,
            value=value,
        )

    @classmethod
    def rejected(cls, errors: list[ValidationIssue]) -> ValidationResult:
        return cls(
            valid=False,
            errors=list(errors),
            impact=ImpactAssessment(level=Severity.HIGH, description="configuration rejected"),
            recommended_action=RecommendedAction.REJECT,
        )


class ConfigurationValidator(Protocol):
    """設定ツリーを検証する。スキーマ名を指定できる。

    実装は同期でも awaitable を返してもよい。
    """

    def validate(
        self, config: Any, schema_name: str | None = None
    ) -> ValidationResult | Awaitable[ValidationResult]: ...


def _location(loc: tuple[int | str, ...]) -> str:
    return ".".join(str(part) for part in loc) or "$"


class SchemaValidator:
    """登録済みの pydantic モデルで設定ツリーを検証する。"""

    def __init__(self, default_schema: str | None = None) -> None:
        self._schemas: dict[str, type[BaseModel]] = {}
        self._default_schema = default_schema

    def register_schema(self, name: str, model: type[BaseModel]) -> None:
        self._schemas[name] = model

    def unregister_schema(self, name: str) -> bool:
        return self._schemas.pop(name, None) is not None

    def has_schema(self, name: str) -> bool:
        return name in self._schemas

    @property
    def schema_names(self) -> list[str]:
        return sorted(self._schemas)

    def validate(self, config: Any, schema_name: str | None = None) -> ValidationResult:
        """``config`` を検証する。

        スキーマ名もデフォルトもなければすべて受け入れる。未登録のスキーマ名は
        それ自体を検証エラーとする。
        """
        name = schema_name or self._default_schema
        if name is None:
            return ValidationResult.ok(value=config)
        model = self._schemas.get(name)
        if model is None:
            return ValidationResult.rejected(
                [ValidationIssue(path="$", message=f"schema '{name}' is not registered", type="schema.missing")]
            )
        try:
            parsed = model.model_validate(config)
        except PydanticValidationError as e:
            return ValidationResult.rejected(
                [
                    ValidationIssue(
                        path=_location(err["loc"]),
                        message=err["msg"],
                        type=err["type"],
                        value=err.get("input"),
                    )
                    for err in e.errors()
                ]
            )
        return ValidationResult.ok(value=parsed)

    def validate_or_raise(self, config: Any, schema_name: str | None = None) -> Any:
        """パース済みの値を返す。問題があれば ValidationError を送出する。"""
        result = self.validate(config, schema_name)
        if not result.valid:
            raise ValidationError(
                f"configuration failed validation against '{schema_name or self._default_schema}'",
                issues=result.errors,
            )
        return result.value
