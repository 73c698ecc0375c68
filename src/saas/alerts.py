"""Usage alerting — threshold detection, dedup, spike/projection, dispatch, retry.

``check_and_notify`` is observational: it never raises. Threshold alerts
are deduplicated per (org, feature, threshold) through a marker document
updated in the same transaction that creates the alert. Spike and
projection alerts use the same marker scheme keyed by alert type, with a
shorter cooldown. Failed channel sends go onto an in-memory retry queue
drained by a background task.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from uuid_extensions import uuid7

from src.core.constants import (
    ALERT_DEDUP_HOURS,
    ALERT_LIST_LIMIT,
    ANOMALY_COOLDOWN_MINUTES,
    COLLECTION_ORGANIZATIONS,
    DEFAULT_THRESHOLDS,
    DOC_NOTIFICATION_SETTINGS,
    PROJECTION_CRITICAL_HOURS,
    PROJECTION_HORIZON_HOURS,
    RETRY_DELAY_SECONDS,
    RETRY_INTERVAL_SECONDS,
    RETRY_MAX_ATTEMPTS,
    SEVERITY_CRITICAL_PCT,
    SEVERITY_WARNING_PCT,
    SPIKE_CRITICAL_PCT,
    SPIKE_GROWTH_PCT,
    SPIKE_WINDOW_MINUTES,
    THRESHOLD_BAND_WIDTH,
)
from src.core.exceptions import NotFoundError, NotificationDeliveryError, ValidationError
from src.core.logging import get_logger
from src.core.types import (
    Alert,
    AlertType,
    ChannelType,
    NotificationConfig,
    Severity,
    UsageCheckResult,
    UsageSample,
    isoformat,
    parse_iso,
    utcnow,
)
from src.saas.channels import NotificationChannel, NotificationPayload
from src.saas.messages import Messages
from src.store.base import DocumentStore, Transaction

log = get_logger(__name__)


def alerts_collection(org_id: str) -> str:
    return f"{COLLECTION_ORGANIZATIONS}/{org_id}/alerts"


def marks_collection(org_id: str) -> str:
    return f"{COLLECTION_ORGANIZATIONS}/{org_id}/alert_marks"


def settings_collection(org_id: str) -> str:
    return f"{COLLECTION_ORGANIZATIONS}/{org_id}/settings"


def analytics_collection(org_id: str) -> str:
    return f"analytics/usage/{org_id}"


def severity_for(percentage: float) -> Severity:
    if percentage >= SEVERITY_CRITICAL_PCT:
        return Severity.CRITICAL
    if percentage >= SEVERITY_WARNING_PCT:
        return Severity.WARNING
    return Severity.INFO


@dataclass
class RetryItem:
    channel: NotificationChannel
    payload: NotificationPayload
    attempts: int = 0
    next_attempt_at: float = 0.0


class AlertingEngine:
    """Detects usage alerts and fans them out to notification channels."""

    def __init__(
        self,
        store: DocumentStore,
        channels: list[NotificationChannel],
        messages: Messages | None = None,
        dedup_hours: float = ALERT_DEDUP_HOURS,
        default_thresholds: list[int] | tuple[int, ...] = DEFAULT_THRESHOLDS,
        band_width: float = THRESHOLD_BAND_WIDTH,
        spike_window_minutes: int = SPIKE_WINDOW_MINUTES,
        spike_growth_percent: float = SPIKE_GROWTH_PCT,
        projection_horizon_hours: float = PROJECTION_HORIZON_HOURS,
        anomaly_cooldown_minutes: float = ANOMALY_COOLDOWN_MINUTES,
        retry_interval_seconds: float = RETRY_INTERVAL_SECONDS,
        retry_attempts: int = RETRY_MAX_ATTEMPTS,
        retry_delay_seconds: float = RETRY_DELAY_SECONDS,
    ) -> None:
        self._store = store
        self._channels: dict[ChannelType, NotificationChannel] = {c.channel_type: c for c in channels}
        self._messages = messages or Messages()
        self._dedup_window = timedelta(hours=dedup_hours)
        self._default_thresholds = sorted(default_thresholds)
        self._band = band_width
        self._spike_window = timedelta(minutes=spike_window_minutes)
        self._spike_growth = spike_growth_percent
        self._projection_horizon = projection_horizon_hours
        self._anomaly_cooldown = timedelta(minutes=anomaly_cooldown_minutes)
        self._retry_interval = retry_interval_seconds
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay_seconds
        self._retry_queue: list[RetryItem] = []
        self._retry_task: asyncio.Task[None] | None = None

    # ── Detection ────────────────────────────────────────────────

    async def check_and_notify(self, org_id: str, feature: str, usage: UsageCheckResult) -> None:
        """Best-effort threshold and anomaly check. Never raises."""
        try:
            config = await self.get_notification_config(org_id)
            if not config.enabled or usage.limit <= 0:
                return
            alert = await self._check_threshold(org_id, feature, usage, config)
            if alert is not None:
                await self._dispatch(org_id, config, self._alert_payload(org_id, alert, config))
            await self.detect_anomalies(org_id, feature, usage)
        except Exception as exc:
            log.warning("alert_check_failed", org_id=org_id, feature=feature, error=str(exc))

    def _threshold_message(self, feature: str, percentage: float, usage: UsageCheckResult) -> str:
        if percentage >= 100:
            return self._messages.render("threshold_exceeded", feature=feature, current=usage.current, limit=usage.limit)
        if percentage >= 90:
            return self._messages.render("threshold_90", feature=feature, remaining=usage.remaining)
        if percentage >= 80:
            return self._messages.render("threshold_80", feature=feature, current=usage.current, limit=usage.limit)
        return self._messages.render("threshold_other", feature=feature, percentage=round(percentage))

    async def _check_threshold(
        self,
        org_id: str,
        feature: str,
        usage: UsageCheckResult,
        config: NotificationConfig,
    ) -> Alert | None:
        percentage = usage.current / usage.limit * 100
        matched = next(
            (t for t in sorted(config.thresholds) if t <= percentage < t + self._band),
            None,
        )
        if matched is None:
            return None

        now = utcnow()
        alert = Alert(
            alert_id=str(uuid7()),
            type=AlertType.THRESHOLD,
            feature=feature,
            severity=severity_for(percentage),
            message=self._threshold_message(feature, percentage, usage),
            threshold=matched,
            percentage=percentage,
            current=usage.current,
            limit=usage.limit,
            created_at=now,
        )
        created = await self._persist_once(
            org_id, f"{feature}:{matched}", alert, self._dedup_window, {"feature": feature, "threshold": matched}
        )
        if created is None:
            log.debug("alert_deduplicated", org_id=org_id, feature=feature, threshold=matched)
        else:
            log.info(
                "threshold_alert_created",
                org_id=org_id,
                feature=feature,
                threshold=matched,
                percentage=round(percentage, 2),
                severity=alert.severity.value,
            )
        return created

    async def _persist_once(
        self,
        org_id: str,
        mark_id: str,
        alert: Alert,
        window: timedelta,
        mark_fields: dict[str, Any],
    ) -> Alert | None:
        """Store ``alert`` unless the marker shows one inside ``window``."""

        async def _txn(tx: Transaction) -> Alert | None:
            mark = await tx.get(marks_collection(org_id), mark_id)
            last = parse_iso(mark.get("last_alert_at")) if mark else None
            if last is not None and alert.created_at - last < window:
                return None
            tx.set(
                marks_collection(org_id),
                mark_id,
                {**mark_fields, "last_alert_at": isoformat(alert.created_at), "alert_id": alert.alert_id},
            )
            tx.set(alerts_collection(org_id), alert.alert_id, alert.to_document())
            return alert

        return await self._store.run_transaction(_txn)

    async def _recent_samples(self, org_id: str, feature: str, since: datetime) -> list[UsageSample]:
        rows = await self._store.query(
            analytics_collection(org_id),
            filters=[("feature", "==", feature), ("timestamp", ">=", isoformat(since))],
            order_by="timestamp",
        )
        return [UsageSample.from_document(doc) for _, doc in rows]

    async def detect_anomalies(self, org_id: str, feature: str, usage: UsageCheckResult) -> list[Alert]:
        """Spike and exhaustion-projection alerts from the recent sample window.

        Each type is stored at most once per feature within the anomaly
        cooldown. They are persisted only, never dispatched.
        """
        now = utcnow()
        samples = await self._recent_samples(org_id, feature, now - self._spike_window)
        if len(samples) < 2:
            return []

        first = samples[0].current
        increase = usage.current - first
        created: list[Alert] = []

        if first > 0:
            rate = increase / first * 100
            if rate > self._spike_growth:
                created.append(Alert(
                    alert_id=str(uuid7()),
                    type=AlertType.USAGE_SPIKE,
                    feature=feature,
                    severity=Severity.CRITICAL if rate > SPIKE_CRITICAL_PCT else Severity.WARNING,
                    message=self._messages.render("spike", feature=feature, rate=round(rate)),
                    percentage=usage.current / usage.limit * 100 if usage.limit > 0 else 0.0,
                    current=usage.current,
                    limit=usage.limit,
                    increase_rate=round(rate, 2),
                    created_at=now,
                ))

        remaining = usage.limit - usage.current
        if increase > 0 and usage.limit > 0 and remaining > 0:
            hours = remaining / increase
            if hours < self._projection_horizon:
                created.append(Alert(
                    alert_id=str(uuid7()),
                    type=AlertType.USAGE_PROJECTION,
                    feature=feature,
                    severity=Severity.CRITICAL if hours < PROJECTION_CRITICAL_HOURS else Severity.WARNING,
                    message=self._messages.render("projection", feature=feature, hours=round(hours)),
                    percentage=usage.current / usage.limit * 100,
                    current=usage.current,
                    limit=usage.limit,
                    projected_hours=round(hours, 2),
                    created_at=now,
                ))

        stored: list[Alert] = []
        for alert in created:
            mark = {"feature": feature, "type": alert.type.value}
            if await self._persist_once(org_id, f"{feature}:{alert.type.value}", alert, self._anomaly_cooldown, mark):
                stored.append(alert)
                log.info("usage_anomaly_detected", org_id=org_id, feature=feature, type=alert.type.value)
            else:
                log.debug("usage_anomaly_suppressed", org_id=org_id, feature=feature, type=alert.type.value)
        return stored

    # ── Dispatch ─────────────────────────────────────────────────

    def _alert_payload(self, org_id: str, alert: Alert, config: NotificationConfig) -> NotificationPayload:
        label = self._messages.severity_label(alert.severity.value)
        heading = self._messages.render("alert_subject", feature=alert.feature, percentage=round(alert.percentage))
        return NotificationPayload(
            org_id=org_id,
            event="usage_alert",
            subject=f"[{label}] {heading}",
            message=alert.message,
            severity=alert.severity.value,
            data=alert.to_dict(),
            recipients=list(config.recipients),
            webhook_url=config.webhook_url,
            chat_webhook_url=config.chat_webhook_url,
        )

    async def _dispatch(self, org_id: str, config: NotificationConfig, payload: NotificationPayload) -> None:
        """Send on every enabled channel independently; queue failures for retry."""
        for channel_type in config.channels:
            channel = self._channels.get(channel_type)
            if channel is None:
                log.debug("channel_not_registered", org_id=org_id, channel=channel_type.value)
                continue
            try:
                await channel.send(payload)
            except NotificationDeliveryError as exc:
                log.warning(
                    "notification_send_failed",
                    org_id=org_id,
                    channel=channel_type.value,
                    error=str(exc),
                )
                self._retry_queue.append(RetryItem(channel=channel, payload=payload, next_attempt_at=time.monotonic()))

    async def notify_plan_change(
        self,
        org_id: str,
        from_plan: str,
        to_plan: str,
        effective_date: datetime,
    ) -> None:
        """Best-effort plan change notice. Never raises."""
        try:
            config = await self.get_notification_config(org_id)
            if not config.enabled:
                return
            message = self._messages.render(
                "plan_changed",
                from_plan=from_plan,
                to_plan=to_plan,
                date=self._messages.format_date(effective_date),
            )
            payload = NotificationPayload(
                org_id=org_id,
                event="plan_change",
                subject=message,
                message=message,
                severity=Severity.INFO.value,
                data={"from": from_plan, "to": to_plan, "effective_date": isoformat(effective_date)},
                recipients=list(config.recipients),
                webhook_url=config.webhook_url,
                chat_webhook_url=config.chat_webhook_url,
            )
            await self._dispatch(org_id, config, payload)
        except Exception as exc:
            log.warning("plan_change_notify_failed", org_id=org_id, error=str(exc))

    # ── Retry Queue ──────────────────────────────────────────────

    @property
    def retry_queue_size(self) -> int:
        return len(self._retry_queue)

    async def drain_retry_queue(self) -> int:
        """Run one retry pass over due items. Returns the number delivered."""
        pending, self._retry_queue = self._retry_queue, []
        keep: list[RetryItem] = []
        delivered = 0
        now = time.monotonic()

        for item in pending:
            if item.next_attempt_at > now:
                keep.append(item)
                continue
            try:
                await item.channel.send(item.payload)
                delivered += 1
                log.info("notification_retry_succeeded", org_id=item.payload.org_id, attempts=item.attempts + 1)
            except NotificationDeliveryError as exc:
                item.attempts += 1
                if item.attempts >= self._retry_attempts:
                    log.error(
                        "notification_retry_exhausted",
                        org_id=item.payload.org_id,
                        channel=item.channel.channel_type.value,
                        attempts=item.attempts,
                        error=str(exc),
                    )
                    continue
                item.next_attempt_at = time.monotonic() + self._retry_delay * item.attempts
                keep.append(item)

        self._retry_queue = keep + self._retry_queue
        return delivered

    async def _retry_loop(self) -> None:
        while True:
            await asyncio.sleep(self._retry_interval)
            if not self._retry_queue:
                continue
            try:
                await self.drain_retry_queue()
            except Exception as exc:
                log.error("notification_retry_pass_failed", error=str(exc))

    def start(self) -> None:
        if self._retry_task is None or self._retry_task.done():
            self._retry_task = asyncio.create_task(self._retry_loop())
            log.info("alert_retry_worker_started", interval=self._retry_interval)

    async def stop(self) -> None:
        if self._retry_task is not None:
            self._retry_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._retry_task
            self._retry_task = None
            log.info("alert_retry_worker_stopped", pending=len(self._retry_queue))

    # ── Alert Records ────────────────────────────────────────────

    async def get_alerts(
        self,
        org_id: str,
        unacknowledged_only: bool = True,
        limit: int = ALERT_LIST_LIMIT,
    ) -> list[Alert]:
        filters = [("acknowledged", "==", False)] if unacknowledged_only else []
        rows = await self._store.query(
            alerts_collection(org_id),
            filters=filters,
            order_by="created_at",
            descending=True,
            limit=limit,
        )
        return [Alert.from_document(alert_id, doc) for alert_id, doc in rows]

    async def acknowledge_alert(self, org_id: str, alert_id: str, user_id: str) -> Alert:
        async def _txn(tx: Transaction) -> Alert:
            doc = await tx.get(alerts_collection(org_id), alert_id)
            if doc is None:
                raise NotFoundError(f"Alert not found: {alert_id}", context={"alert_id": alert_id})
            now = utcnow()
            fields = {"acknowledged": True, "acknowledged_by": user_id, "acknowledged_at": isoformat(now)}
            tx.update(alerts_collection(org_id), alert_id, fields)
            return Alert.from_document(alert_id, {**doc, **fields})

        alert = await self._store.run_transaction(_txn)
        log.info("alert_acknowledged", org_id=org_id, alert_id=alert_id, user_id=user_id)
        return alert

    async def delete_alert(self, org_id: str, alert_id: str) -> None:
        if await self._store.get(alerts_collection(org_id), alert_id) is None:
            raise NotFoundError(f"Alert not found: {alert_id}", context={"alert_id": alert_id})
        await self._store.delete(alerts_collection(org_id), alert_id)
        log.info("alert_deleted", org_id=org_id, alert_id=alert_id)

    # ── Notification Config ──────────────────────────────────────

    def default_config(self) -> NotificationConfig:
        return NotificationConfig(thresholds=list(self._default_thresholds))

    async def get_notification_config(self, org_id: str) -> NotificationConfig:
        try:
            doc = await self._store.get(settings_collection(org_id), DOC_NOTIFICATION_SETTINGS)
        except Exception as exc:
            log.warning("notification_config_read_failed", org_id=org_id, error=str(exc))
            return self.default_config()
        if doc is None:
            return self.default_config()
        return NotificationConfig.from_document(doc)

    async def update_notification_config(self, org_id: str, updates: dict[str, Any]) -> NotificationConfig:
        current = (await self.get_notification_config(org_id)).to_document()
        current.update(updates)
        try:
            config = NotificationConfig.from_document(current)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Invalid notification config", context={"org_id": org_id}) from exc
        if any(t <= 0 for t in config.thresholds):
            raise ValidationError("Thresholds must be positive percentages", context={"org_id": org_id})

        await self._store.set(settings_collection(org_id), DOC_NOTIFICATION_SETTINGS, config.to_document())
        log.info("notification_config_updated", org_id=org_id, channels=[c.value for c in config.channels])
        return config
