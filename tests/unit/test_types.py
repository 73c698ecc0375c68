"""Tests for core type definitions."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.core.types import (
    Alert,
    AlertType,
    ChannelType,
    CustomRule,
    FeatureDecision,
    NotificationConfig,
    PlanDefinition,
    RuleType,
    Severity,
    UsageCheckResult,
    current_month,
    isoformat,
    next_month_start,
    parse_iso,
)


# ── Time helpers ─────────────────────────────────────────────────

class TestTimeHelpers:
    def test_isoformat_is_fixed_width(self) -> None:
        whole = isoformat(datetime(2026, 1, 1, tzinfo=timezone.utc))
        fractional = isoformat(datetime(2026, 1, 1, 0, 0, 0, 5, tzinfo=timezone.utc))
        assert whole == "2026-01-01T00:00:00.000000+00:00"
        assert len(whole) == len(fractional)
        assert whole < fractional

    def test_isoformat_normalizes_to_utc(self) -> None:
        tokyo = timezone(timedelta(hours=9))
        assert isoformat(datetime(2026, 1, 1, 9, tzinfo=tokyo)) == "2026-01-01T00:00:00.000000+00:00"

    def test_parse_iso_assumes_utc(self) -> None:
        assert parse_iso("2026-03-04T05:06:07") == datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
        assert parse_iso(None) is None
        assert parse_iso("") is None

    def test_current_month(self) -> None:
        assert current_month(datetime(2026, 7, 31, 23, 59, tzinfo=timezone.utc)) == "2026-07"

    @pytest.mark.parametrize(
        ("now", "expected"),
        [
            (datetime(2026, 1, 31, 12, tzinfo=timezone.utc), datetime(2026, 2, 1, tzinfo=timezone.utc)),
            (datetime(2026, 12, 15, tzinfo=timezone.utc), datetime(2027, 1, 1, tzinfo=timezone.utc)),
            (datetime(2028, 2, 29, tzinfo=timezone.utc), datetime(2028, 3, 1, tzinfo=timezone.utc)),
        ],
    )
    def test_next_month_start(self, now: datetime, expected: datetime) -> None:
        assert next_month_start(now) == expected


# ── Limit checks ─────────────────────────────────────────────────

class TestUsageCheckResult:
    def test_within_limit(self) -> None:
        result = UsageCheckResult.from_counts(current=4, limit=10, plan_name="Free")
        assert result.allowed is True
        assert result.remaining == 6
        assert result.percentage == 40.0
        assert result.plan_name == "Free"

    def test_at_limit(self) -> None:
        result = UsageCheckResult.from_counts(current=10, limit=10)
        assert result.allowed is False
        assert result.remaining == 0
        assert result.percentage == 100.0

    def test_over_limit_caps_percentage(self) -> None:
        result = UsageCheckResult.from_counts(current=15, limit=10)
        assert result.remaining == 0
        assert result.percentage == 100.0

    def test_unlimited(self) -> None:
        result = UsageCheckResult.from_counts(current=999, limit=-1)
        assert result.allowed is True
        assert result.remaining == -1
        assert result.current == 999

    def test_disabled(self) -> None:
        result = UsageCheckResult.from_counts(current=3, limit=0)
        assert result.allowed is False
        assert (result.current, result.limit, result.remaining) == (0, 0, 0)

    def test_decision_to_dict(self) -> None:
        decision = FeatureDecision(
            allowed=False,
            reason="limit",
            usage=UsageCheckResult.from_counts(10, 10),
            suggestions=["upgrade"],
        )
        data = decision.to_dict()
        assert data["usage"]["remaining"] == 0
        assert data["suggestions"] == ["upgrade"]
        assert data["degraded"] is False


class TestPlanDefinition:
    def test_unlisted_metric_is_disabled(self) -> None:
        plan = PlanDefinition(plan_id="free", name="Free", limits={"interviews": 10})
        assert plan.limit_for("interviews") == 10
        assert plan.limit_for("exports") == 0


# ── Documents ────────────────────────────────────────────────────

class TestAlertDocument:
    def test_from_document_restores_enums_and_dates(self) -> None:
        created = datetime(2026, 5, 1, 8, tzinfo=timezone.utc)
        alert = Alert(
            alert_id="a1",
            type=AlertType.USAGE_SPIKE,
            feature="interviews",
            severity=Severity.CRITICAL,
            message="spike",
            percentage=42.123,
            increase_rate=120.0,
            created_at=created,
        )
        restored = Alert.from_document("a1", alert.to_document())
        assert restored.type is AlertType.USAGE_SPIKE
        assert restored.severity is Severity.CRITICAL
        assert restored.percentage == 42.12
        assert restored.created_at == created
        assert restored.acknowledged_at is None

    def test_to_dict_carries_id(self) -> None:
        alert = Alert(alert_id="a9", type=AlertType.THRESHOLD, feature="f", severity=Severity.INFO, message="m")
        assert alert.to_dict()["id"] == "a9"

    def test_sparse_document_defaults(self) -> None:
        alert = Alert.from_document("x", {})
        assert alert.type is AlertType.THRESHOLD
        assert alert.severity is Severity.INFO
        assert alert.acknowledged is False


class TestNotificationConfig:
    def test_defaults(self) -> None:
        config = NotificationConfig.from_document({})
        assert config.enabled is True
        assert config.channels == [ChannelType.IN_APP]
        assert config.thresholds == [80, 90, 100]

    def test_thresholds_sorted(self) -> None:
        config = NotificationConfig.from_document({"thresholds": [100, 50], "channels": ["email", "webhook"]})
        assert config.thresholds == [50, 100]
        assert config.to_document()["channels"] == ["email", "webhook"]


class TestCustomRule:
    def test_applies_to_all_when_empty(self) -> None:
        rule = CustomRule(rule_id="r", name="n", type=RuleType.TIME_BASED)
        assert rule.applies("anything") is True

    def test_applies_to_listed_features(self) -> None:
        rule = CustomRule(rule_id="r", name="n", type=RuleType.USER_BASED, applies_to=["exports"])
        assert rule.applies("exports") is True
        assert rule.applies("interviews") is False

    def test_document_keeps_type_value(self) -> None:
        rule = CustomRule(rule_id="r", name="n", type=RuleType.CONDITIONAL, priority=3)
        doc = rule.to_document()
        assert doc["type"] == "conditional"
        assert CustomRule.from_document("r", doc).priority == 3
