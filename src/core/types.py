"""System-wide shared types — the single source of truth for all data structures."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    """Fixed-width ISO timestamp so stored strings sort chronologically."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def current_month(now: datetime | None = None) -> str:
    """Return the current billing period tag (YYYY-MM, UTC)."""
    return (now or utcnow()).strftime("%Y-%m")


def next_month_start(now: datetime | None = None) -> datetime:
    """First instant of the next calendar month (UTC)."""
    now = now or utcnow()
    first = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return (first + timedelta(days=32)).replace(day=1)


# ── Enums ────────────────────────────────────────────────────────

class AlertType(str, Enum):
    THRESHOLD = "threshold"
    USAGE_SPIKE = "usage_spike"
    USAGE_PROJECTION = "usage_projection"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ChannelType(str, Enum):
    EMAIL = "email"
    CHAT = "chat"
    WEBHOOK = "webhook"
    IN_APP = "in_app"


class RuleType(str, Enum):
    TIME_BASED = "time_based"
    USER_BASED = "user_based"
    CONDITIONAL = "conditional"


# ── Limit Checks ─────────────────────────────────────────────────

@dataclass
class UsageCheckResult:
    """Outcome of comparing current usage against a plan allowance."""

    allowed: bool
    current: int
    limit: int
    remaining: int
    plan_name: str = ""
    percentage: float = 0.0

    @classmethod
    def unlimited(cls, current: int = 0, plan_name: str = "") -> UsageCheckResult:
        return cls(allowed=True, current=current, limit=-1, remaining=-1, plan_name=plan_name)

    @classmethod
    def from_counts(cls, current: int, limit: int, plan_name: str = "") -> UsageCheckResult:
        if limit == -1:
            return cls.unlimited(current=current, plan_name=plan_name)
        if limit == 0:
            return cls(allowed=False, current=0, limit=0, remaining=0, plan_name=plan_name)
        remaining = max(0, limit - current)
        return cls(
            allowed=remaining > 0,
            current=current,
            limit=limit,
            remaining=remaining,
            plan_name=plan_name,
            percentage=min(100.0, current / limit * 100),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FeatureDecision:
    """Answer returned by the facade to a gating question."""

    allowed: bool
    reason: str | None = None
    usage: UsageCheckResult | None = None
    suggestions: list[str] = field(default_factory=list)
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "usage": self.usage.to_dict() if self.usage else None,
            "suggestions": list(self.suggestions),
            "degraded": self.degraded,
        }


# ── Plans ────────────────────────────────────────────────────────

@dataclass
class PlanDefinition:
    """Static plan bundle: per-metric limits, -1 unlimited, 0 disabled."""

    plan_id: str
    name: str
    tier: int = 0
    upgrade_to: str | None = None
    limits: dict[str, int] = field(default_factory=dict)

    def limit_for(self, metric: str) -> int:
        return int(self.limits.get(metric, 0))


@dataclass
class PlanChangeResult:
    success: bool
    previous_plan: str
    new_plan: str
    effective_date: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "previous_plan": self.previous_plan,
            "new_plan": self.new_plan,
            "effective_date": isoformat(self.effective_date),
        }


# ── Alerting ─────────────────────────────────────────────────────

@dataclass
class Alert:
    """A usage alert materialized by the alerting engine."""

    alert_id: str
    type: AlertType
    feature: str
    severity: Severity
    message: str
    threshold: int | None = None
    percentage: float = 0.0
    current: int | None = None
    limit: int | None = None
    increase_rate: float | None = None
    projected_hours: float | None = None
    created_at: datetime = field(default_factory=utcnow)
    acknowledged: bool = False
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "type": self.type.value,
            "feature": self.feature,
            "severity": self.severity.value,
            "message": self.message,
            "threshold": self.threshold,
            "percentage": round(self.percentage, 2),
            "current": self.current,
            "limit": self.limit,
            "increase_rate": self.increase_rate,
            "projected_hours": self.projected_hours,
            "created_at": isoformat(self.created_at),
            "acknowledged": self.acknowledged,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": isoformat(self.acknowledged_at) if self.acknowledged_at else None,
        }
        return doc

    @classmethod
    def from_document(cls, alert_id: str, doc: dict[str, Any]) -> Alert:
        return cls(
            alert_id=alert_id,
            type=AlertType(doc.get("type", AlertType.THRESHOLD.value)),
            feature=doc.get("feature", ""),
            severity=Severity(doc.get("severity", Severity.INFO.value)),
            message=doc.get("message", ""),
            threshold=doc.get("threshold"),
            percentage=float(doc.get("percentage") or 0.0),
            current=doc.get("current"),
            limit=doc.get("limit"),
            increase_rate=doc.get("increase_rate"),
            projected_hours=doc.get("projected_hours"),
            created_at=parse_iso(doc.get("created_at")) or utcnow(),
            acknowledged=bool(doc.get("acknowledged", False)),
            acknowledged_by=doc.get("acknowledged_by"),
            acknowledged_at=parse_iso(doc.get("acknowledged_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.alert_id, **self.to_document()}


@dataclass
class Recipient:
    email: str
    name: str = ""
    role: str = ""


@dataclass
class NotificationConfig:
    """Per-org alerting preferences."""

    enabled: bool = True
    channels: list[ChannelType] = field(default_factory=lambda: [ChannelType.IN_APP])
    thresholds: list[int] = field(default_factory=lambda: [80, 90, 100])
    recipients: list[Recipient] = field(default_factory=list)
    webhook_url: str | None = None
    chat_webhook_url: str | None = None

    def to_document(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "channels": [c.value for c in self.channels],
            "thresholds": sorted(self.thresholds),
            "recipients": [asdict(r) for r in self.recipients],
            "webhook_url": self.webhook_url,
            "chat_webhook_url": self.chat_webhook_url,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> NotificationConfig:
        default = cls()
        return cls(
            enabled=bool(doc.get("enabled", True)),
            channels=[ChannelType(c) for c in doc.get("channels", [c.value for c in default.channels])],
            thresholds=sorted(int(t) for t in doc.get("thresholds", default.thresholds)),
            recipients=[Recipient(**r) for r in doc.get("recipients", [])],
            webhook_url=doc.get("webhook_url"),
            chat_webhook_url=doc.get("chat_webhook_url"),
        )


# ── Custom Rules ─────────────────────────────────────────────────

@dataclass
class CustomRule:
    """Per-org override evaluated before plan limits."""

    rule_id: str
    name: str
    type: RuleType
    description: str = ""
    active: bool = True
    priority: int = 0
    config: dict[str, Any] = field(default_factory=dict)
    applies_to: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    created_by: str = "system"
    modified_at: datetime | None = None
    modified_by: str | None = None

    def applies(self, feature: str) -> bool:
        return not self.applies_to or feature in self.applies_to

    def to_document(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "type": self.type.value,
            "active": self.active,
            "priority": self.priority,
            "config": self.config,
            "applies_to": list(self.applies_to),
            "created_at": isoformat(self.created_at),
            "created_by": self.created_by,
            "modified_at": isoformat(self.modified_at) if self.modified_at else None,
            "modified_by": self.modified_by,
        }

    @classmethod
    def from_document(cls, rule_id: str, doc: dict[str, Any]) -> CustomRule:
        return cls(
            rule_id=rule_id,
            name=doc.get("name", ""),
            type=RuleType(doc["type"]),
            description=doc.get("description", ""),
            active=bool(doc.get("active", True)),
            priority=int(doc.get("priority", 0)),
            config=dict(doc.get("config", {})),
            applies_to=list(doc.get("applies_to", [])),
            created_at=parse_iso(doc.get("created_at")) or utcnow(),
            created_by=doc.get("created_by", "system"),
            modified_at=parse_iso(doc.get("modified_at")),
            modified_by=doc.get("modified_by"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.rule_id, **self.to_document()}


@dataclass
class RuleOutcome:
    """Verdict of a single custom rule. ``allowed=None`` means no opinion."""

    allowed: bool | None
    reason: str | None = None


# ── Analytics & Stats ────────────────────────────────────────────

@dataclass
class UsageSample:
    feature: str
    timestamp: datetime
    allowed: bool
    current: int
    limit: int
    percentage: float

    def to_document(self, org_id: str) -> dict[str, Any]:
        return {
            "organization_id": org_id,
            "feature": self.feature,
            "timestamp": isoformat(self.timestamp),
            "allowed": self.allowed,
            "current": self.current,
            "limit": self.limit,
            "percentage": round(self.percentage, 2),
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> UsageSample:
        return cls(
            feature=doc.get("feature", ""),
            timestamp=parse_iso(doc.get("timestamp")) or utcnow(),
            allowed=bool(doc.get("allowed", True)),
            current=int(doc.get("current", 0)),
            limit=int(doc.get("limit", 0)),
            percentage=float(doc.get("percentage", 0.0)),
        )


@dataclass
class MetricUsage:
    current: int
    limit: int
    percentage: float


@dataclass
class UsageStatsView:
    """Aggregated per-metric usage for one organization."""

    organization_id: str
    plan_id: str
    plan_name: str
    period: str
    next_reset: datetime
    usage: dict[str, MetricUsage] = field(default_factory=dict)
    history: list[UsageSample] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "organization_id": self.organization_id,
            "plan_id": self.plan_id,
            "plan_name": self.plan_name,
            "period": self.period,
            "next_reset": isoformat(self.next_reset),
            "usage": {k: asdict(v) for k, v in self.usage.items()},
        }
        if self.history is not None:
            data["history"] = [s.to_document(self.organization_id) for s in self.history]
        return data
