"""Tests for the subscription manager facade."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from config.settings import Settings
from src.core.exceptions import ConfigurationError, NotFoundError, ValidationError
from src.core.types import isoformat, next_month_start, utcnow
from src.saas.alerts import analytics_collection
from src.saas.manager import SubscriptionManager
from src.saas.rules import build_rule
from src.store.memory import InMemoryDocumentStore

ALWAYS_BLOCKED = {"name": "maintenance", "type": "time_based", "config": {"blocked_hours": list(range(24))}}


class TestCanUseFeature:
    @pytest.mark.asyncio
    async def test_allowed_with_usage(self, manager: SubscriptionManager, store: InMemoryDocumentStore) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        await manager.record_usage("org-a", "interviews", 3)

        decision = await manager.can_use_feature("org-a", "interviews")

        assert decision.allowed is True
        assert decision.reason is None
        assert decision.degraded is False
        assert decision.usage.current == 3
        assert decision.usage.remaining == 7
        samples = await store.query(analytics_collection("org-a"))
        assert len(samples) == 1
        assert samples[0][1]["feature"] == "interviews"

    @pytest.mark.asyncio
    async def test_limit_reached_has_reason_and_suggestions(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        await manager.record_usage("org-a", "interviews", 10)

        decision = await manager.can_use_feature("org-a", "interviews")

        assert decision.allowed is False
        assert decision.reason == "Interviews limit (10) has been reached"
        assert decision.suggestions[0] == "Upgrade to Basic for more Interviews"
        assert decision.suggestions[-1] == f"Next reset: {next_month_start():%Y-%m-%d}"

    @pytest.mark.asyncio
    async def test_top_tier_gets_no_upgrade_suggestion(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="prod_enterprise")
        await manager.record_usage("org-a", "concurrent_interviews", 50)
        decision = await manager.can_use_feature("org-a", "concurrent_interviews", check_concurrent=True)
        assert decision.allowed is False
        assert len(decision.suggestions) == 1
        assert decision.suggestions[0].startswith("Next reset:")

    @pytest.mark.asyncio
    async def test_disabled_feature(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        decision = await manager.can_use_feature("org-a", "exports")
        assert decision.allowed is False
        assert decision.reason == "This feature is not available on your current plan"

    @pytest.mark.asyncio
    async def test_amount_larger_than_remaining(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        await manager.record_usage("org-a", "interviews", 8)

        assert (await manager.can_use_feature("org-a", "interviews", amount=2)).allowed is True
        decision = await manager.can_use_feature("org-a", "interviews", amount=3)
        assert decision.allowed is False
        assert decision.reason == "Not enough Interviews remaining (2 left, 3 requested)"

    @pytest.mark.asyncio
    async def test_unlimited_ignores_amount(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="prod_enterprise")
        assert (await manager.can_use_feature("org-a", "interviews", amount=10_000)).allowed is True

    @pytest.mark.asyncio
    async def test_no_org_is_allowed(self, manager: SubscriptionManager) -> None:
        decision = await manager.can_use_feature("", "interviews")
        assert decision.allowed is True
        assert decision.usage.limit == -1

    @pytest.mark.asyncio
    async def test_unexpected_failure_fails_open(self, manager: SubscriptionManager) -> None:
        with patch.object(manager.limits, "can_use", AsyncMock(side_effect=RuntimeError("boom"))):
            decision = await manager.can_use_feature("org-a", "interviews")
        assert decision.allowed is True
        assert decision.degraded is True


class TestDecisionCaching:
    @pytest.mark.asyncio
    async def test_decision_is_cached_until_usage_recorded(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        assert (await manager.can_use_feature("org-a", "interviews")).allowed is True

        # Out-of-band writes are not seen while the entry is live
        await manager.usage.increment_usage("org-a", "interviews", 10)
        assert (await manager.can_use_feature("org-a", "interviews")).allowed is True

        await manager.record_usage("org-a", "interviews")
        assert (await manager.can_use_feature("org-a", "interviews")).allowed is False

    @pytest.mark.asyncio
    async def test_caller_edits_do_not_leak_into_cache(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        await manager.record_usage("org-a", "interviews", 10)

        first = await manager.can_use_feature("org-a", "interviews")
        first.allowed = True
        first.suggestions.clear()
        first.usage.remaining = 99

        second = await manager.can_use_feature("org-a", "interviews")
        assert second.allowed is False
        assert second.suggestions
        assert second.usage.remaining == 0

    @pytest.mark.asyncio
    async def test_amount_requests_bypass_cache(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        await manager.can_use_feature("org-a", "interviews")
        await manager.usage.increment_usage("org-a", "interviews", 9)
        assert (await manager.can_use_feature("org-a", "interviews", amount=2)).allowed is False

    @pytest.mark.asyncio
    async def test_plan_change_clears_cache(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        assert (await manager.can_use_feature("org-a", "exports")).allowed is False
        await manager.change_plan("org-a", "prod_basic")
        assert (await manager.can_use_feature("org-a", "exports")).allowed is True

    @pytest.mark.asyncio
    async def test_limit_update_clears_cache(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        assert (await manager.can_use_feature("org-a", "exports")).allowed is False
        await manager.update_plan_limits("free", {"exports": 5})
        decision = await manager.can_use_feature("org-a", "exports")
        assert decision.allowed is True
        assert decision.usage.limit == 5

    @pytest.mark.asyncio
    async def test_reset_clears_cache(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        await manager.record_usage("org-a", "interviews", 10)
        assert (await manager.can_use_feature("org-a", "interviews")).allowed is False
        await manager.reset_usage("org-a")
        assert (await manager.can_use_feature("org-a", "interviews")).allowed is True


class TestCustomRules:
    @pytest.mark.asyncio
    async def test_caller_rules_short_circuit_limits(self, manager: SubscriptionManager) -> None:
        rule = build_rule("r1", ALWAYS_BLOCKED)
        with patch.object(manager.limits, "can_use", AsyncMock()) as can_use:
            decision = await manager.can_use_feature("org-a", "interviews", custom_rules=[rule])
        assert decision.allowed is False
        assert decision.reason.startswith("This feature is unavailable during hour")
        can_use.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_caller_rules_replace_stored_rules(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        await manager.add_custom_rule("org-a", ALWAYS_BLOCKED)
        assert (await manager.can_use_feature("org-a", "interviews", custom_rules=[])).allowed is True

    @pytest.mark.asyncio
    async def test_stored_rule_applies_and_invalidates_cache(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        assert (await manager.can_use_feature("org-a", "interviews")).allowed is True

        rule = await manager.add_custom_rule("org-a", ALWAYS_BLOCKED, created_by="admin")
        assert (await manager.can_use_feature("org-a", "interviews")).allowed is False

        await manager.update_custom_rule("org-a", rule.rule_id, {"active": False})
        assert (await manager.can_use_feature("org-a", "interviews")).allowed is True

        await manager.update_custom_rule("org-a", rule.rule_id, {"active": True})
        await manager.delete_custom_rule("org-a", rule.rule_id)
        assert (await manager.can_use_feature("org-a", "interviews")).allowed is True
        assert await manager.list_custom_rules("org-a") == []

    @pytest.mark.asyncio
    async def test_user_rule(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        await manager.add_custom_rule(
            "org-a", {"name": "no mallory", "type": "user_based", "config": {"blocked_users": ["mallory"]}}
        )
        assert (await manager.can_use_feature("org-a", "interviews", user_id="mallory")).allowed is False
        assert (await manager.can_use_feature("org-a", "interviews", user_id="alice")).allowed is True


class TestMetering:
    @pytest.mark.asyncio
    async def test_record_usage_returns_counter(self, manager: SubscriptionManager) -> None:
        assert await manager.record_usage("org-a", "interviews") == 1
        assert await manager.record_usage("org-a", "interviews", 4) == 5

    @pytest.mark.asyncio
    async def test_invalid_amount(self, manager: SubscriptionManager) -> None:
        with pytest.raises(ValidationError):
            await manager.record_usage("org-a", "interviews", 0)

    @pytest.mark.asyncio
    async def test_metadata_is_kept(self, manager: SubscriptionManager, store: InMemoryDocumentStore) -> None:
        await manager.record_usage("org-a", "exports", metadata={"format": "csv"})
        rows = await store.query("organizations/org-a/usage_metadata")
        assert rows[0][1]["metadata"] == {"format": "csv"}

    @pytest.mark.asyncio
    async def test_concurrent_slots(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        await manager.record_usage("org-a", "concurrent_interviews")
        decision = await manager.can_use_feature("org-a", "concurrent_interviews", check_concurrent=True)
        assert decision.allowed is False

        assert await manager.release_usage("org-a", "concurrent_interviews") == 0
        decision = await manager.can_use_feature("org-a", "concurrent_interviews", check_concurrent=True)
        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_reset_concurrent(self, manager: SubscriptionManager) -> None:
        await manager.record_usage("org-a", "concurrent_interviews", 3)
        await manager.reset_concurrent("org-a", "concurrent_interviews")
        assert await manager.usage.get_concurrent("org-a", "concurrent_interviews") == 0

    @pytest.mark.asyncio
    async def test_notify_on_limit_creates_alert(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        await manager.record_usage("org-a", "interviews", 8)
        await manager.can_use_feature("org-a", "interviews", notify_on_limit=True)
        alerts = await manager.get_alerts("org-a")
        assert [a.threshold for a in alerts] == [80]


class TestChangePlan:
    @pytest.mark.asyncio
    async def test_immediate(self, manager: SubscriptionManager, store: InMemoryDocumentStore) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        result = await manager.change_plan("org-a", "prod_pro", changed_by="admin", reason="upsell")

        assert result.success is True
        assert result.previous_plan == "free"
        assert result.new_plan == "prod_pro"
        assert await manager.limits.resolve_plan("org-a") == "prod_pro"

        org = await manager.orgs.get_organization("org-a")
        assert org.previous_plan_id == "free"
        history = await store.query("organizations/org-a/plan_history")
        assert len(history) == 1
        assert history[0][1]["changed_by"] == "admin"
        assert history[0][1]["reason"] == "upsell"

    @pytest.mark.asyncio
    async def test_deferred_to_next_month(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="prod_pro")
        result = await manager.change_plan("org-a", "prod_basic", immediate=False)

        assert result.effective_date == next_month_start()
        assert await manager.limits.resolve_plan("org-a") == "prod_pro"
        org = await manager.orgs.get_organization("org-a")
        assert org.pending_plan_id == "prod_basic"
        assert org.effective_plan_id(result.effective_date + timedelta(seconds=1)) == "prod_basic"

    @pytest.mark.asyncio
    async def test_second_deferral_keeps_due_pending_plan(
        self, manager: SubscriptionManager, store: InMemoryDocumentStore
    ) -> None:
        due = utcnow() - timedelta(days=2)
        await manager.orgs.create_organization("org-a", plan_id="prod_basic")
        await store.set(
            "organizations",
            "org-a",
            {"pending_plan_id": "prod_pro", "plan_change_effective_date": isoformat(due)},
            merge=True,
        )
        assert await manager.limits.resolve_plan("org-a") == "prod_pro"

        result = await manager.change_plan("org-a", "prod_enterprise", immediate=False)

        assert result.previous_plan == "prod_pro"
        assert await manager.limits.resolve_plan("org-a") == "prod_pro"
        org = await manager.orgs.get_organization("org-a")
        assert org.plan_id == "prod_pro"
        assert org.previous_plan_id == "prod_basic"
        assert org.pending_plan_id == "prod_enterprise"
        assert org.effective_plan_id(result.effective_date) == "prod_enterprise"

    @pytest.mark.asyncio
    async def test_deferral_leaves_future_pending_untouched(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="prod_pro")
        await manager.change_plan("org-a", "prod_basic", immediate=False)
        await manager.change_plan("org-a", "free", immediate=False)

        org = await manager.orgs.get_organization("org-a")
        assert org.plan_id == "prod_pro"
        assert org.pending_plan_id == "free"

    @pytest.mark.asyncio
    async def test_reset_usage(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        await manager.record_usage("org-a", "interviews", 9)
        await manager.change_plan("org-a", "prod_basic", reset_usage=True)
        assert await manager.usage.get_usage("org-a", "interviews") == 0

    @pytest.mark.asyncio
    async def test_usage_carries_over_by_default(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        await manager.record_usage("org-a", "interviews", 9)
        await manager.change_plan("org-a", "prod_basic")
        decision = await manager.can_use_feature("org-a", "interviews")
        assert decision.usage.current == 9
        assert decision.usage.limit == 50

    @pytest.mark.asyncio
    async def test_notify_users(self, manager: SubscriptionManager, store: InMemoryDocumentStore) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        await manager.change_plan("org-a", "prod_basic", notify_users=True)
        rows = await store.query("organizations/org-a/notifications")
        assert rows[0][1]["event"] == "plan_change"

    @pytest.mark.asyncio
    async def test_unknown_plan(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        with pytest.raises(ConfigurationError):
            await manager.change_plan("org-a", "prod_platinum")

    @pytest.mark.asyncio
    async def test_unknown_org(self, manager: SubscriptionManager) -> None:
        with pytest.raises(NotFoundError):
            await manager.change_plan("ghost", "prod_basic")


class TestUsageStats:
    @pytest.mark.asyncio
    async def test_stats_view(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="prod_basic")
        await manager.record_usage("org-a", "interviews", 25)
        await manager.record_usage("org-a", "concurrent_interviews", 2)

        stats = await manager.get_usage_stats("org-a")

        assert stats.plan_id == "prod_basic"
        assert stats.plan_name == "Basic"
        assert stats.usage["interviews"].current == 25
        assert stats.usage["interviews"].percentage == 50.0
        assert stats.usage["concurrent_interviews"].current == 2
        assert stats.usage["exports"].limit == 20
        assert stats.history is None
        assert "history" not in stats.to_dict()
        assert stats.next_reset == next_month_start()
        assert stats.to_dict()["next_reset"] == isoformat(next_month_start())

    @pytest.mark.asyncio
    async def test_stats_cached_and_invalidated(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        first = await manager.get_usage_stats("org-a")
        await manager.usage.increment_usage("org-a", "themes")
        cached = await manager.get_usage_stats("org-a")
        assert cached == first
        assert cached is not first
        await manager.record_usage("org-a", "themes")
        second = await manager.get_usage_stats("org-a")
        assert second.usage["themes"].current == 2

    @pytest.mark.asyncio
    async def test_history(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        for _ in range(3):
            await manager.can_use_feature("org-a", "interviews", amount=2)

        stats = await manager.get_usage_stats("org-a", include_history=True)
        assert len(stats.history) == 3
        assert len(stats.to_dict()["history"]) == 3

        now = utcnow()
        ranged = await manager.get_usage_stats(
            "org-a", include_history=True, date_range=(now - timedelta(hours=1), now + timedelta(hours=1))
        )
        assert len(ranged.history) == 3
        empty = await manager.get_usage_stats(
            "org-a", include_history=True, date_range=(now - timedelta(days=2), now - timedelta(days=1))
        )
        assert empty.history == []

    @pytest.mark.asyncio
    async def test_organizations_overview(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("quiet", plan_id="prod_pro")
        await manager.orgs.create_organization("busy", plan_id="free")
        await manager.record_usage("busy", "interviews", 9)

        overview = await manager.list_organizations_overview()

        assert [o["organization_id"] for o in overview] == ["busy", "quiet"]
        assert overview[0]["max_usage_percentage"] == 90.0
        assert overview[1]["plan_name"] == "Pro"


class TestAlertPassThrough:
    @pytest.mark.asyncio
    async def test_acknowledge_and_delete(self, manager: SubscriptionManager) -> None:
        await manager.orgs.create_organization("org-a", plan_id="free")
        await manager.record_usage("org-a", "interviews", 9)
        await manager.can_use_feature("org-a", "interviews", notify_on_limit=True)
        alert = (await manager.get_alerts("org-a"))[0]

        acked = await manager.acknowledge_alert("org-a", alert.alert_id, "admin")
        assert acked.acknowledged_by == "admin"
        assert await manager.get_alerts("org-a") == []

        await manager.delete_alert("org-a", alert.alert_id)
        assert await manager.get_alerts("org-a", unacknowledged_only=False) == []

    @pytest.mark.asyncio
    async def test_update_notification_config(self, manager: SubscriptionManager) -> None:
        config = await manager.update_notification_config("org-a", {"thresholds": [50]})
        assert config.thresholds == [50]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_from_settings_memory_backend(self) -> None:
        settings = Settings(_env_file=None, store_backend="memory", concurrent_backend="store", locale="ja")
        manager = SubscriptionManager.from_settings(settings)
        await manager.start()
        try:
            await manager.orgs.create_organization("org-a", plan_id="free")
            decision = await manager.can_use_feature("org-a", "exports")
            assert decision.allowed is False
            assert decision.reason == "この機能は現在のプランでは利用できません"
        finally:
            await manager.aclose()
