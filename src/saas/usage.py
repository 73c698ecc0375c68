"""Usage metering for SaaS tenants.

Two counting disciplines:
- Monthly counters (``organizations/{org}/usage/current``) that roll over
  lazily on the first access after a month boundary.
- Concurrency gauges (``organizations/{org}/usage/concurrent``) tracking
  in-flight work, clamped at zero.

Writes propagate store failures. Reads fail safe and return 0.
"""

from __future__ import annotations

from typing import Any

from src.core.constants import (
    COLLECTION_ORGANIZATIONS,
    DOC_USAGE_CONCURRENT,
    DOC_USAGE_CURRENT,
    MONTHLY_METRICS,
)
from src.core.exceptions import ValidationError
from src.core.logging import get_logger
from src.core.types import current_month, isoformat, utcnow
from src.store.base import DocumentStore, Transaction
from src.store.redis_gauge import RedisConcurrencyGauge

log = get_logger(__name__)


def usage_collection(org_id: str) -> str:
    return f"{COLLECTION_ORGANIZATIONS}/{org_id}/usage"


def fresh_usage_record(month: str | None = None) -> dict[str, Any]:
    """A zeroed monthly record for the given (default: current) period."""
    record: dict[str, Any] = {metric: 0 for metric in MONTHLY_METRICS}
    record["month"] = month or current_month()
    record["last_updated"] = isoformat(utcnow())
    return record


class UsageStore:
    """Atomic per-tenant counters and gauges over a document store."""

    def __init__(self, store: DocumentStore, gauge: RedisConcurrencyGauge | None = None) -> None:
        self._store = store
        self._gauge = gauge

    async def _current_record(self, tx: Transaction, org_id: str) -> dict[str, Any]:
        """Read the monthly record inside ``tx``, rolling it over if stale."""
        record = await tx.get(usage_collection(org_id), DOC_USAGE_CURRENT)
        month = current_month()
        if record is None or record.get("month") != month:
            if record is not None:
                log.info("usage_period_rolled_over", org_id=org_id, stale_month=record.get("month"), month=month)
            record = fresh_usage_record(month)
            tx.set(usage_collection(org_id), DOC_USAGE_CURRENT, record)
        return record

    # ── Monthly Counters ─────────────────────────────────────────

    async def increment_usage(self, org_id: str, metric: str, amount: int = 1) -> int:
        """Atomically add ``amount`` to the current period's counter.

        Returns the new counter value.
        """
        if not org_id:
            log.warning("usage_increment_without_org", metric=metric)
            return 0
        if amount < 1:
            raise ValidationError("amount must be >= 1", context={"amount": amount})

        async def _txn(tx: Transaction) -> int:
            record = await self._current_record(tx, org_id)
            new_value = int(record.get(metric, 0)) + amount
            tx.update(
                usage_collection(org_id),
                DOC_USAGE_CURRENT,
                {metric: new_value, "last_updated": isoformat(utcnow())},
            )
            return new_value

        value = await self._store.run_transaction(_txn)
        log.debug("usage_incremented", org_id=org_id, metric=metric, amount=amount, value=value)
        return value

    async def get_usage(self, org_id: str, metric: str) -> int:
        """Current period value for ``metric``. A stale record reads as 0 and is reset."""
        if not org_id:
            return 0
        try:
            record = await self._store.get(usage_collection(org_id), DOC_USAGE_CURRENT)
            if record is None:
                return 0
            if record.get("month") != current_month():
                await self._rollover(org_id)
                return 0
            return int(record.get(metric, 0))
        except Exception as exc:
            log.warning("usage_read_failed", org_id=org_id, metric=metric, error=str(exc))
            return 0

    async def get_all_usage(self, org_id: str) -> dict[str, int]:
        """The whole current-period record, created or rolled over as needed."""
        if not org_id:
            return {}
        try:
            record = await self._store.run_transaction(lambda tx: self._current_record(tx, org_id))
        except Exception as exc:
            log.warning("usage_read_failed", org_id=org_id, error=str(exc))
            return {}
        return {k: int(v) for k, v in record.items() if k not in ("month", "last_updated")}

    async def _rollover(self, org_id: str) -> None:
        async def _txn(tx: Transaction) -> None:
            await self._current_record(tx, org_id)

        await self._store.run_transaction(_txn)

    async def reset_monthly_usage(self, org_id: str, metrics: list[str] | None = None) -> None:
        """Zero all counters, or only ``metrics`` when given."""
        if not org_id:
            log.warning("usage_reset_without_org")
            return

        async def _txn(tx: Transaction) -> None:
            if metrics is None:
                tx.set(usage_collection(org_id), DOC_USAGE_CURRENT, fresh_usage_record())
                return
            await self._current_record(tx, org_id)
            fields: dict[str, Any] = {m: 0 for m in metrics}
            fields["last_updated"] = isoformat(utcnow())
            tx.update(usage_collection(org_id), DOC_USAGE_CURRENT, fields)

        await self._store.run_transaction(_txn)
        log.info("usage_reset", org_id=org_id, metrics=metrics or "all")

    # ── Concurrency Gauges ───────────────────────────────────────

    async def _adjust_concurrent(self, org_id: str, metric: str, delta: int) -> int:
        async def _txn(tx: Transaction) -> int:
            doc = await tx.get(usage_collection(org_id), DOC_USAGE_CONCURRENT) or {}
            new_value = max(0, int(doc.get(metric, 0)) + delta)
            tx.set(
                usage_collection(org_id),
                DOC_USAGE_CONCURRENT,
                {metric: new_value, "last_updated": isoformat(utcnow())},
                merge=True,
            )
            return new_value

        return await self._store.run_transaction(_txn)

    async def increment_concurrent(self, org_id: str, metric: str) -> int:
        if not org_id:
            log.warning("concurrent_increment_without_org", metric=metric)
            return 0
        if self._gauge is not None:
            value = await self._gauge.increment(org_id, metric)
        else:
            value = await self._adjust_concurrent(org_id, metric, 1)
        log.debug("concurrent_incremented", org_id=org_id, metric=metric, value=value)
        return value

    async def decrement_concurrent(self, org_id: str, metric: str) -> int:
        if not org_id:
            log.warning("concurrent_decrement_without_org", metric=metric)
            return 0
        if self._gauge is not None:
            value = await self._gauge.decrement(org_id, metric)
        else:
            value = await self._adjust_concurrent(org_id, metric, -1)
        log.debug("concurrent_decremented", org_id=org_id, metric=metric, value=value)
        return value

    async def get_concurrent(self, org_id: str, metric: str) -> int:
        if not org_id:
            return 0
        try:
            if self._gauge is not None:
                return await self._gauge.get(org_id, metric)
            doc = await self._store.get(usage_collection(org_id), DOC_USAGE_CONCURRENT) or {}
            return max(0, int(doc.get(metric, 0)))
        except Exception as exc:
            log.warning("concurrent_read_failed", org_id=org_id, metric=metric, error=str(exc))
            return 0

    async def reset_concurrent(self, org_id: str, metric: str) -> None:
        """Administrative crash-recovery reset of a gauge to 0."""
        if not org_id:
            log.warning("concurrent_reset_without_org", metric=metric)
            return
        if self._gauge is not None:
            await self._gauge.reset(org_id, metric)
        else:
            await self._store.set(
                usage_collection(org_id),
                DOC_USAGE_CONCURRENT,
                {metric: 0, "last_updated": isoformat(utcnow())},
                merge=True,
            )
        log.info("concurrent_reset", org_id=org_id, metric=metric)
