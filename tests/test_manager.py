"""フィーチャーフラグマネージャーのユニットテスト"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from k1s0_config_plane import (
    ConditionOperator,
    EvaluationCondition,
    EvaluationContext,
    EvaluationRule,
    Event,
    EventBus,
    EventKind,
    FeatureFlag,
    FeatureFlagManager,
    FeatureFlagOptions,
    FlagEvaluationError,
    FlagEvaluator,
    FlagVariant,
    InMemoryFeatureFlagProvider,
    ManualClock,
    ProviderConnectionError,
    RetryConfig,
)


def role_flag(key: str = "beta", role: str = "beta-tester") -> FeatureFlag:
    return FeatureFlag(
        key=key,
        enabled=True,
        rules=[EvaluationRule(conditions=[EvaluationCondition("user_roles", ConditionOperator.CONTAINS, role)])],
    )


def broken_flag(key: str = "broken") -> FeatureFlag:
    return FeatureFlag(
        key=key,
        enabled=True,
        rules=[EvaluationRule(conditions=[EvaluationCondition("name", ConditionOperator.REGEX_MATCH, "(")])],
    )


async def make_manager(
    *flags: FeatureFlag,
    options: FeatureFlagOptions | None = None,
    clock: ManualClock | None = None,
    bus: EventBus | None = None,
) -> tuple[FeatureFlagManager, InMemoryFeatureFlagProvider]:
    clock = clock or ManualClock()
    provider = InMemoryFeatureFlagProvider(flags, now=clock.utcnow)
    manager = FeatureFlagManager(provider, options, clock=clock, bus=bus)
    await manager.load_flags()
    return manager, provider


async def test_is_enabled_uses_rules() -> None:
    manager, _ = await make_manager(role_flag())
    assert manager.is_enabled("beta", {"user_roles": ["beta-tester"]}) is True
    assert manager.is_enabled("beta", EvaluationContext(user_roles=["user"])) is False


async def test_unknown_flag_is_disabled() -> None:
    manager, _ = await make_manager()
    assert manager.is_enabled("missing") is False
    assert manager.get_variant("missing") is None
    assert manager.get_value("missing", 42) == 42


async def test_async_variants_match_sync() -> None:
    manager, _ = await make_manager(
        FeatureFlag(key="v", enabled=True, variants=[FlagVariant("only", value="3")])
    )
    assert await manager.is_enabled_async("v") is True
    assert await manager.get_variant_async("v") == "only"
    assert await manager.get_value_async("v", 0) == 3


async def test_cache_hit_skips_evaluator() -> None:
    clock = ManualClock()
    provider = InMemoryFeatureFlagProvider([role_flag()], now=clock.utcnow)
    evaluator = FlagEvaluator()
    spy = MagicMock(wraps=evaluator.evaluate)
    evaluator.evaluate = spy  # type: ignore[method-assign]
    manager = FeatureFlagManager(provider, clock=clock, evaluator=evaluator)
    await manager.load_flags()

    ctx = {"user_roles": ["beta-tester"]}
    assert manager.is_enabled("beta", ctx) is True
    assert manager.is_enabled("beta", ctx) is True
    assert spy.call_count == 1
    assert manager.cache_size == 1


async def test_cache_expires_after_ttl() -> None:
    clock = ManualClock()
    provider = InMemoryFeatureFlagProvider([role_flag()], now=clock.utcnow)
    evaluator = FlagEvaluator()
    spy = MagicMock(wraps=evaluator.evaluate)
    evaluator.evaluate = spy  # type: ignore[method-assign]
    manager = FeatureFlagManager(
        provider, FeatureFlagOptions(cache_ttl_seconds=5), clock=clock, evaluator=evaluator
    )
    await manager.load_flags()

    ctx = {"user_roles": ["beta-tester"]}
    manager.is_enabled("beta", ctx)
    await clock.advance(6)
    manager.is_enabled("beta", ctx)
    assert spy.call_count == 2


async def test_write_invalidates_cache() -> None:
    """書き込み後に古いキャッシュ結果が残らないこと。"""
    manager, provider = await make_manager(FeatureFlag(key="f", enabled=True))
    assert manager.is_enabled("f") is True
    await manager.set_flag("f", False)
    assert manager.is_enabled("f") is False
    stored = await provider.get_flag("f")
    assert stored is not None and stored.enabled is False


async def test_set_flag_creates_missing_flag() -> None:
    manager, provider = await make_manager()
    await manager.set_flag("fresh", True)
    assert manager.is_enabled("fresh") is True
    assert await provider.get_flag("fresh") is not None


async def test_set_flag_config_and_remove() -> None:
    manager, provider = await make_manager()
    await manager.set_flag_config("cfg", role_flag("cfg", "admin"))
    assert manager.is_enabled("cfg", {"user_roles": ["admin"]}) is True

    await manager.remove_flag("cfg")
    assert manager.is_enabled("cfg", {"user_roles": ["admin"]}) is False
    assert await provider.get_flag("cfg") is None


async def test_provider_push_updates_local_table() -> None:
    bus = EventBus()
    changed: list[Event] = []
    bus.subscribe(EventKind.FLAG_CHANGED, changed.append)
    manager, provider = await make_manager(FeatureFlag(key="f", enabled=True), bus=bus)
    assert manager.is_enabled("f") is True

    await provider.update_flag("f", FeatureFlag(key="f", enabled=False))
    assert manager.is_enabled("f") is False

    await provider.delete_flag("f")
    assert manager.get_flag("f") is None
    assert [e.payload["key"] for e in changed] == ["f", "f"]


async def test_expired_flag_turns_off_despite_cache() -> None:
    clock = ManualClock()
    flag = FeatureFlag(key="f", enabled=True, expires_at=clock.utcnow() + timedelta(seconds=30))
    manager, _ = await make_manager(flag, clock=clock)
    assert manager.is_enabled("f") is True
    await clock.advance(31)
    assert manager.is_enabled("f") is False


async def test_get_value_converts_to_default_type() -> None:
    manager, _ = await make_manager(
        FeatureFlag(
            key="limits",
            enabled=True,
            variants=[FlagVariant("high", value="100")],
        ),
        FeatureFlag(key="plain", enabled=True),
        FeatureFlag(key="off", enabled=False, variants=[FlagVariant("x", value=1)]),
    )
    assert manager.get_value("limits", 0) == 100
    assert manager.get_value("limits", "") == "100"
    assert manager.get_value("limits", 0.0) == 100.0
    assert manager.get_value("plain", False) is True
    assert manager.get_value("off", 7) == 7


async def test_get_value_unconvertible_returns_default() -> None:
    manager, _ = await make_manager(
        FeatureFlag(key="f", enabled=True, variants=[FlagVariant("v", value="abc")])
    )
    assert manager.get_value("f", 5) == 5


async def test_log_policy_returns_default_and_counts_error() -> None:
    bus = EventBus()
    errors: list[Event] = []
    bus.subscribe(EventKind.FLAG_ERROR, errors.append)
    manager, _ = await make_manager(broken_flag(), bus=bus)

    assert manager.is_enabled("broken", {"name": "x"}) is False
    assert manager.get_value("broken", "fallback", {"name": "x"}) == "fallback"
    assert manager.get_statistics().error_counts == {"broken": 2}
    assert len(errors) == 2


async def test_silent_policy_returns_default() -> None:
    manager, _ = await make_manager(
        broken_flag(), options=FeatureFlagOptions(error_handling="silent")
    )
    assert manager.is_enabled("broken", {"name": "x"}) is False


async def test_throw_policy_raises() -> None:
    manager, _ = await make_manager(
        broken_flag(), options=FeatureFlagOptions(error_handling="throw")
    )
    with pytest.raises(FlagEvaluationError):
        manager.is_enabled("broken", {"name": "x"})
    assert manager.get_statistics().error_counts["broken"] == 1


async def test_disabled_statistics_skip_error_counts() -> None:
    """enable_statistics=False ではエラー件数も集計されず、イベントは発行されること。"""
    bus = EventBus()
    errors: list[Event] = []
    bus.subscribe(EventKind.FLAG_ERROR, errors.append)
    manager, _ = await make_manager(
        broken_flag(), options=FeatureFlagOptions(enable_statistics=False), bus=bus
    )
    assert manager.is_enabled("broken", {"name": "x"}) is False
    stats = manager.get_statistics()
    assert stats.error_counts == {}
    assert stats.total_evaluations == 0
    assert len(errors) == 1


async def test_statistics_count_evaluations_and_variants() -> None:
    manager, _ = await make_manager(
        FeatureFlag(key="on", enabled=True),
        FeatureFlag(key="off", enabled=False),
        FeatureFlag(key="v", enabled=True, variants=[FlagVariant("a")]),
    )
    manager.is_enabled("on")
    manager.is_enabled("on")
    manager.is_enabled("off")
    manager.get_variant("v", {"user_id": "u"})

    stats = manager.get_statistics()
    assert stats.total_evaluations == 3
    assert stats.enabled_evaluations == 2
    assert stats.disabled_evaluations == 1
    assert stats.flag_evaluations == {"on": 2, "off": 1}
    assert stats.variant_selections == {"v": {"a": 1}}

    stats.flag_evaluations["on"] = 99
    assert manager.get_statistics().flag_evaluations["on"] == 2

    manager.clear_statistics()
    assert manager.get_statistics().total_evaluations == 0


async def test_default_context_applies() -> None:
    manager, _ = await make_manager(
        role_flag(),
        options=FeatureFlagOptions(default_context={"user_roles": ["beta-tester"]}),
    )
    assert manager.is_enabled("beta") is True
    assert manager.is_enabled("beta", EvaluationContext(user_roles=["user"])) is False


async def test_get_all_flags_returns_copies() -> None:
    manager, _ = await make_manager(FeatureFlag(key="app.a"), FeatureFlag(key="app.b"), FeatureFlag(key="x"))
    flags = await manager.get_all_flags()
    flags["app.a"].enabled = True
    assert manager.get_flag("app.a").enabled is False  # type: ignore[union-attr]
    assert set(await manager.get_flags_by_prefix("app.")) == {"app.a", "app.b"}


async def test_load_failure_raises_provider_connection_error() -> None:
    provider = MagicMock()
    provider.get_flags = AsyncMock(side_effect=RuntimeError("down"))
    provider.subscribe = MagicMock(return_value=lambda: None)
    bus = EventBus()
    errors: list[Event] = []
    bus.subscribe(EventKind.ERROR, errors.append)
    manager = FeatureFlagManager(provider, clock=ManualClock(), bus=bus)

    with pytest.raises(ProviderConnectionError):
        await manager.load_flags()
    assert errors[0].payload["context"] == "load_flags"


async def test_load_retries_connection_errors() -> None:
    provider = MagicMock()
    provider.get_flags = AsyncMock(
        side_effect=[ConnectionError("flaky"), {"f": FeatureFlag(key="f", enabled=True)}]
    )
    provider.subscribe = MagicMock(return_value=lambda: None)
    manager = FeatureFlagManager(
        provider,
        clock=ManualClock(),
        load_retry=RetryConfig(max_attempts=3, initial_delay=0, jitter=False),
    )
    await manager.load_flags()
    assert manager.is_enabled("f") is True
    assert provider.get_flags.await_count == 2


async def test_periodic_refresh() -> None:
    clock = ManualClock()
    provider = InMemoryFeatureFlagProvider(now=clock.utcnow)
    manager = FeatureFlagManager(
        provider, FeatureFlagOptions(refresh_interval_seconds=60), clock=clock
    )
    await manager.start()
    manager.close()
    await provider.update_flag("late", FeatureFlag(key="late", enabled=True))
    await clock.advance(120)
    assert manager.get_flag("late") is None


async def test_refresh_timer_reloads_flags() -> None:
    clock = ManualClock()
    provider = MagicMock()
    provider.get_flags = AsyncMock(side_effect=[{}, {"f": FeatureFlag(key="f", enabled=True)}])
    provider.subscribe = MagicMock(return_value=lambda: None)
    manager = FeatureFlagManager(
        provider, FeatureFlagOptions(refresh_interval_seconds=60), clock=clock
    )
    await manager.start()
    assert manager.is_enabled("f") is False
    await clock.advance(60)
    assert manager.is_enabled("f") is True
    manager.close()
