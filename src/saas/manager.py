"""Subscription manager — the single entry point for quota gating and admin.

Composes the usage store, plan catalog, limit resolver, custom rules,
alerting engine and decision cache. Gating decisions fail open; write
operations propagate their errors and invalidate cached decisions
synchronously after they succeed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from uuid_extensions import uuid7

from config.settings import Settings
from src.core.constants import (
    COLLECTION_ORGANIZATIONS,
    CONCURRENT_METRICS,
    DISABLED,
    HISTORY_DEFAULT_LIMIT,
    PLAN_FREE,
    STATS_METRICS,
    UNLIMITED,
)
from src.core.exceptions import ConfigurationError, NotFoundError, ValidationError
from src.core.logging import get_logger
from src.core.types import (
    Alert,
    CustomRule,
    FeatureDecision,
    MetricUsage,
    NotificationConfig,
    PlanChangeResult,
    PlanDefinition,
    UsageCheckResult,
    UsageSample,
    UsageStatsView,
    current_month,
    isoformat,
    next_month_start,
    utcnow,
)
from src.saas.alerts import AlertingEngine, analytics_collection
from src.saas.cache import STATS_KEY, DecisionCache
from src.saas.channels import ChatChannel, EmailChannel, InAppChannel, WebhookChannel
from src.saas.limits import LimitResolver
from src.saas.messages import Messages
from src.saas.plans import PlanCatalog
from src.saas.rules import RuleEngine
from src.saas.tenant import Organization, OrganizationRepository
from src.saas.usage import UsageStore
from src.store.base import DocumentStore, Transaction
from src.store.memory import InMemoryDocumentStore
from src.store.postgres import PostgresDocumentStore
from src.store.redis_gauge import RedisConcurrencyGauge

log = get_logger(__name__)


def _org_collection(org_id: str, name: str) -> str:
    return f"{COLLECTION_ORGANIZATIONS}/{org_id}/{name}"


class SubscriptionManager:
    """Facade over metering, limits, rules and alerting."""

    def __init__(
        self,
        store: DocumentStore,
        usage: UsageStore,
        catalog: PlanCatalog,
        alerts: AlertingEngine,
        rules: RuleEngine,
        cache: DecisionCache,
        messages: Messages | None = None,
        gauge: RedisConcurrencyGauge | None = None,
    ) -> None:
        self._store = store
        self.usage = usage
        self.catalog = catalog
        self.orgs = OrganizationRepository(store)
        self.limits = LimitResolver(usage, catalog, self.orgs)
        self.alerts = alerts
        self.rules = rules
        self.cache = cache
        self._messages = messages or Messages()
        self._gauge = gauge

    @classmethod
    def from_settings(cls, settings: Settings, store: DocumentStore | None = None) -> SubscriptionManager:
        """Wire every component from configuration."""
        if store is None:
            if settings.store_backend == "postgres":
                store = PostgresDocumentStore(
                    database_url=settings.database_url.get_secret_value(),
                    max_attempts=settings.transaction_max_attempts,
                )
            else:
                store = InMemoryDocumentStore(max_attempts=settings.transaction_max_attempts)

        gauge = None
        if settings.concurrent_backend == "redis":
            gauge = RedisConcurrencyGauge(redis_url=settings.redis_url.get_secret_value())

        messages = Messages(settings.locale)
        channels = [
            EmailChannel(
                smtp_host=settings.smtp_host,
                smtp_port=settings.smtp_port,
                smtp_user=settings.smtp_user,
                smtp_password=settings.smtp_password.get_secret_value(),
                from_email=settings.smtp_from,
                use_tls=settings.smtp_use_tls,
            ),
            ChatChannel(timeout=settings.webhook_timeout_seconds),
            WebhookChannel(timeout=settings.webhook_timeout_seconds),
            InAppChannel(store),
        ]
        alerts = AlertingEngine(
            store,
            channels,
            messages=messages,
            dedup_hours=settings.alert_dedup_hours,
            default_thresholds=settings.alert_thresholds,
            band_width=settings.alert_band_width,
            spike_window_minutes=settings.spike_window_minutes,
            spike_growth_percent=settings.spike_growth_percent,
            projection_horizon_hours=settings.projection_horizon_hours,
            anomaly_cooldown_minutes=settings.anomaly_cooldown_minutes,
            retry_interval_seconds=settings.notification_retry_interval_seconds,
            retry_attempts=settings.notification_retry_attempts,
            retry_delay_seconds=settings.notification_retry_delay_seconds,
        )
        return cls(
            store=store,
            usage=UsageStore(store, gauge=gauge),
            catalog=PlanCatalog(store, settings.plans_path, ttl_seconds=settings.plan_cache_ttl_seconds),
            alerts=alerts,
            rules=RuleEngine(store, messages),
            cache=DecisionCache(ttl_seconds=settings.cache_ttl_seconds, enabled=settings.cache_enabled),
            messages=messages,
            gauge=gauge,
        )

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        if isinstance(self._store, PostgresDocumentStore):
            await self._store.init_schema()
        await self.catalog.refresh()
        self.alerts.start()
        log.info("subscription_manager_started", plan_version=self.catalog.version)

    async def aclose(self) -> None:
        await self.alerts.stop()
        if self._gauge is not None:
            await self._gauge.close()
        await self._store.close()
        log.info("subscription_manager_closed")

    # ── Gating ───────────────────────────────────────────────────

    async def can_use_feature(
        self,
        org_id: str,
        feature: str,
        amount: int = 1,
        check_concurrent: bool = False,
        notify_on_limit: bool = False,
        custom_rules: list[CustomRule] | None = None,
        user_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> FeatureDecision:
        """Decide whether ``org_id`` may use ``feature`` right now.

        Any unexpected failure allows the request and flags the decision
        as ``degraded``.
        """
        if not org_id:
            return FeatureDecision(allowed=True, usage=UsageCheckResult.unlimited())

        # Caller-specific inputs make the answer per-request
        cacheable = amount == 1 and user_id is None and not context and custom_rules is None

        try:
            if cacheable:
                cached = self.cache.get(org_id, feature)
                if cached is not None:
                    return cached

            rules = custom_rules if custom_rules is not None else await self._stored_rules(org_id)
            if rules:
                outcome = self.rules.evaluate(rules, feature, user_id=user_id, context=context)
                if outcome.allowed is False:
                    decision = FeatureDecision(allowed=False, reason=outcome.reason)
                    if cacheable:
                        self.cache.set(org_id, feature, decision)
                    return decision

            if check_concurrent:
                usage = await self.limits.can_use_concurrent(org_id, feature)
            else:
                usage = await self.limits.can_use(org_id, feature)

            allowed = usage.allowed
            if allowed and amount > 1 and usage.remaining != UNLIMITED and usage.remaining < amount:
                allowed = False

            decision = FeatureDecision(allowed=allowed, usage=usage)
            if not allowed:
                decision.reason = self._limit_reason(feature, usage, amount)
                decision.suggestions = await self._upgrade_suggestions(org_id, feature)

            if cacheable:
                self.cache.set(org_id, feature, decision)

            if notify_on_limit:
                await self.alerts.check_and_notify(org_id, feature, usage)

            await self._record_sample(org_id, feature, usage)
            return decision
        except Exception as exc:
            log.warning("feature_check_failed_open", org_id=org_id, feature=feature, error=str(exc))
            return FeatureDecision(allowed=True, degraded=True)

    async def _stored_rules(self, org_id: str) -> list[CustomRule]:
        try:
            return await self.rules.list_rules(org_id, active_only=True)
        except Exception as exc:
            log.warning("custom_rules_read_failed", org_id=org_id, error=str(exc))
            return []

    def _limit_reason(self, feature: str, usage: UsageCheckResult, amount: int) -> str:
        if usage.limit == DISABLED:
            return self._messages.render("reason_disabled")
        if usage.current >= usage.limit:
            return self._messages.render("reason_limit_reached", feature=feature, limit=usage.limit)
        if usage.remaining < amount:
            return self._messages.render(
                "reason_insufficient", feature=feature, remaining=usage.remaining, amount=amount
            )
        return self._messages.render("reason_generic")

    async def _upgrade_suggestions(self, org_id: str, feature: str) -> list[str]:
        suggestions: list[str] = []
        plan_id = await self.limits.resolve_plan(org_id)
        target = self.catalog.upgrade_target(plan_id)
        if target is not None:
            suggestions.append(self._messages.render("suggest_upgrade", plan=target.name, feature=feature))
        suggestions.append(
            self._messages.render("suggest_reset", date=self._messages.format_date(next_month_start()))
        )
        return suggestions

    async def _record_sample(self, org_id: str, feature: str, usage: UsageCheckResult) -> None:
        sample = UsageSample(
            feature=feature,
            timestamp=utcnow(),
            allowed=usage.allowed,
            current=usage.current,
            limit=usage.limit,
            percentage=usage.current / usage.limit * 100 if usage.limit > 0 else 0.0,
        )
        try:
            await self._store.add(analytics_collection(org_id), sample.to_document(org_id))
        except Exception as exc:
            log.debug("usage_sample_failed", org_id=org_id, feature=feature, error=str(exc))

    # ── Metering ─────────────────────────────────────────────────

    async def record_usage(
        self,
        org_id: str,
        feature: str,
        amount: int = 1,
        concurrent: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Count ``amount`` uses of ``feature``. Returns the new counter value."""
        if amount < 1:
            raise ValidationError("amount must be >= 1", context={"amount": amount})

        if concurrent or feature in CONCURRENT_METRICS:
            value = 0
            for _ in range(amount):
                value = await self.usage.increment_concurrent(org_id, feature)
        else:
            value = await self.usage.increment_usage(org_id, feature, amount)
        self.cache.invalidate(org_id, feature)

        if metadata and org_id:
            try:
                await self._store.add(
                    _org_collection(org_id, "usage_metadata"),
                    {"feature": feature, "metadata": metadata, "timestamp": isoformat(utcnow())},
                )
            except Exception as exc:
                log.debug("usage_metadata_failed", org_id=org_id, feature=feature, error=str(exc))
        return value

    async def release_usage(self, org_id: str, feature: str) -> int:
        """Release one in-flight use of a concurrent feature."""
        value = await self.usage.decrement_concurrent(org_id, feature)
        self.cache.invalidate(org_id, feature)
        return value

    async def reset_usage(self, org_id: str, metrics: list[str] | None = None) -> None:
        await self.usage.reset_monthly_usage(org_id, metrics)
        self.cache.clear_org(org_id)

    async def reset_concurrent(self, org_id: str, metric: str) -> None:
        await self.usage.reset_concurrent(org_id, metric)
        self.cache.clear_org(org_id)

    # ── Plans ────────────────────────────────────────────────────

    async def change_plan(
        self,
        org_id: str,
        new_plan_id: str,
        immediate: bool = True,
        reset_usage: bool = False,
        notify_users: bool = False,
        changed_by: str = "system",
        reason: str | None = None,
    ) -> PlanChangeResult:
        if not self.catalog.has_plan(new_plan_id):
            raise ConfigurationError(f"Unknown plan: {new_plan_id}", context={"plan_id": new_plan_id})

        now = utcnow()
        effective = now if immediate else next_month_start(now)

        async def _txn(tx: Transaction) -> str:
            doc = await tx.get(COLLECTION_ORGANIZATIONS, org_id)
            if doc is None:
                raise NotFoundError(f"Organization not found: {org_id}", context={"org_id": org_id})
            org = Organization.from_document(org_id, doc)
            previous = org.effective_plan_id(now) or PLAN_FREE
            pending_due = org.pending_plan_id is not None and previous == org.pending_plan_id != org.plan_id

            if immediate:
                fields: dict[str, Any] = {
                    "plan_id": new_plan_id,
                    "previous_plan_id": previous,
                    "plan_changed_at": isoformat(now),
                    "pending_plan_id": None,
                    "plan_change_effective_date": None,
                }
            else:
                fields = {
                    "pending_plan_id": new_plan_id,
                    "plan_change_effective_date": isoformat(effective),
                }
                if pending_due and org.plan_change_effective_date is not None:
                    # Settle the earlier change before the new one replaces it
                    fields.update({
                        "plan_id": previous,
                        "previous_plan_id": org.plan_id,
                        "plan_changed_at": isoformat(org.plan_change_effective_date),
                    })
            tx.update(COLLECTION_ORGANIZATIONS, org_id, fields)
            tx.set(
                _org_collection(org_id, "plan_history"),
                str(uuid7()),
                {
                    "from": previous,
                    "to": new_plan_id,
                    "changed_at": isoformat(now),
                    "changed_by": changed_by,
                    "immediate": immediate,
                    "effective_date": isoformat(effective),
                    "reason": reason,
                },
            )
            return previous

        previous = await self._store.run_transaction(_txn)

        if reset_usage:
            await self.usage.reset_monthly_usage(org_id)
        self.cache.clear_org(org_id)

        log.info(
            "plan_changed",
            org_id=org_id,
            previous=previous,
            new=new_plan_id,
            immediate=immediate,
            changed_by=changed_by,
        )
        if notify_users:
            await self.alerts.notify_plan_change(org_id, previous, new_plan_id, effective)

        return PlanChangeResult(success=True, previous_plan=previous, new_plan=new_plan_id, effective_date=effective)

    async def update_plan_limits(
        self,
        plan_id: str,
        limits: dict[str, Any],
        updated_by: str = "system",
    ) -> PlanDefinition:
        plan = await self.catalog.update_limits(plan_id, limits, updated_by=updated_by)
        self.cache.clear()
        return plan

    # ── Stats ────────────────────────────────────────────────────

    async def get_usage_stats(
        self,
        org_id: str,
        include_history: bool = False,
        date_range: tuple[datetime, datetime] | None = None,
    ) -> UsageStatsView:
        if not include_history:
            cached = self.cache.get(org_id, STATS_KEY)
            if cached is not None:
                return cached

        plan = await self.limits.resolve_plan_definition(org_id)
        counters = await self.usage.get_all_usage(org_id)

        view = UsageStatsView(
            organization_id=org_id,
            plan_id=plan.plan_id,
            plan_name=plan.name,
            period=current_month(),
            next_reset=next_month_start(),
        )
        for metric in STATS_METRICS:
            if metric in CONCURRENT_METRICS:
                current = await self.usage.get_concurrent(org_id, metric)
            else:
                current = int(counters.get(metric, 0))
            limit = plan.limit_for(metric)
            percentage = round(current / limit * 100, 2) if limit > 0 else 0.0
            view.usage[metric] = MetricUsage(current=current, limit=limit, percentage=percentage)

        if include_history:
            view.history = await self._usage_history(org_id, date_range)
        else:
            self.cache.set(org_id, STATS_KEY, view)
        return view

    async def _usage_history(
        self,
        org_id: str,
        date_range: tuple[datetime, datetime] | None,
    ) -> list[UsageSample]:
        if date_range is not None:
            start, end = date_range
            rows = await self._store.query(
                analytics_collection(org_id),
                filters=[("timestamp", ">=", isoformat(start)), ("timestamp", "<=", isoformat(end))],
                order_by="timestamp",
            )
        else:
            rows = await self._store.query(
                analytics_collection(org_id),
                order_by="timestamp",
                descending=True,
                limit=HISTORY_DEFAULT_LIMIT,
            )
        return [UsageSample.from_document(doc) for _, doc in rows]

    async def list_organizations_overview(self) -> list[dict[str, Any]]:
        """Per-org plan and peak usage percentage, busiest first."""
        overview: list[dict[str, Any]] = []
        for org_id in await self.orgs.list_organization_ids():
            stats = await self.get_usage_stats(org_id)
            peak = max((m.percentage for m in stats.usage.values()), default=0.0)
            overview.append({
                "organization_id": org_id,
                "plan_id": stats.plan_id,
                "plan_name": stats.plan_name,
                "max_usage_percentage": peak,
            })
        overview.sort(key=lambda o: o["max_usage_percentage"], reverse=True)
        return overview

    # ── Custom Rules ─────────────────────────────────────────────

    async def add_custom_rule(self, org_id: str, rule: dict[str, Any], created_by: str = "system") -> CustomRule:
        created = await self.rules.add_rule(org_id, rule, created_by=created_by)
        self.cache.clear_org(org_id)
        return created

    async def update_custom_rule(
        self,
        org_id: str,
        rule_id: str,
        updates: dict[str, Any],
        modified_by: str = "system",
    ) -> CustomRule:
        updated = await self.rules.update_rule(org_id, rule_id, updates, modified_by=modified_by)
        self.cache.clear_org(org_id)
        return updated

    async def delete_custom_rule(self, org_id: str, rule_id: str) -> None:
        await self.rules.delete_rule(org_id, rule_id)
        self.cache.clear_org(org_id)

    async def list_custom_rules(self, org_id: str) -> list[CustomRule]:
        return await self.rules.list_rules(org_id)

    # ── Alerts ───────────────────────────────────────────────────

    async def get_alerts(self, org_id: str, unacknowledged_only: bool = True) -> list[Alert]:
        return await self.alerts.get_alerts(org_id, unacknowledged_only=unacknowledged_only)

    async def acknowledge_alert(self, org_id: str, alert_id: str, user_id: str) -> Alert:
        return await self.alerts.acknowledge_alert(org_id, alert_id, user_id)

    async def delete_alert(self, org_id: str, alert_id: str) -> None:
        await self.alerts.delete_alert(org_id, alert_id)

    async def update_notification_config(self, org_id: str, updates: dict[str, Any]) -> NotificationConfig:
        return await self.alerts.update_notification_config(org_id, updates)
