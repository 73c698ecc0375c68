"""Limit resolution — tenant → plan → per-metric allowance → decision.

Every resolution error degrades to an unlimited, allowed result: a broken
plan lookup must never block the tenant's own work.
"""

from __future__ import annotations

import asyncio
from typing import Any

from src.core.constants import (
    METRIC_DATA_RETENTION,
    METRIC_INTERVIEW_DURATION,
    DISABLED,
    PLAN_FREE,
    UNLIMITED,
)
from src.core.logging import get_logger
from src.core.types import PlanDefinition, UsageCheckResult
from src.saas.plans import PlanCatalog
from src.saas.tenant import OrganizationRepository
from src.saas.usage import UsageStore

log = get_logger(__name__)


class LimitResolver:
    """Compares current usage against the org's plan allowance."""

    def __init__(self, usage: UsageStore, catalog: PlanCatalog, orgs: OrganizationRepository) -> None:
        self._usage = usage
        self._catalog = catalog
        self._orgs = orgs

    async def resolve_plan(self, org_id: str) -> str:
        """Assigned plan id, falling back to the free plan when unset or unknown."""
        try:
            org = await self._orgs.get_organization(org_id)
        except Exception as exc:
            log.warning("plan_lookup_failed", org_id=org_id, error=str(exc))
            return PLAN_FREE

        plan_id = org.effective_plan_id() if org else None
        if not plan_id:
            log.info("plan_fallback_free", org_id=org_id, reason="unset")
            return PLAN_FREE
        if not self._catalog.has_plan(plan_id):
            log.warning("plan_fallback_free", org_id=org_id, reason="unknown_plan", plan_id=plan_id)
            return PLAN_FREE
        return plan_id

    async def resolve_plan_definition(self, org_id: str) -> PlanDefinition:
        plan_id = await self.resolve_plan(org_id)
        plan = await self._catalog.get_plan(plan_id)
        if plan is None:
            plan = await self._catalog.get_plan(PLAN_FREE)
        assert plan is not None
        return plan

    async def get_plan_limit(self, org_id: str, metric: str) -> int:
        """Plan limit for ``metric``; a metric absent from the plan is disabled (0)."""
        plan = await self.resolve_plan_definition(org_id)
        return plan.limit_for(metric)

    async def can_use(self, org_id: str, metric: str) -> UsageCheckResult:
        if not org_id:
            return UsageCheckResult.unlimited()
        try:
            plan = await self.resolve_plan_definition(org_id)
            limit = plan.limit_for(metric)
            if limit == DISABLED:
                return UsageCheckResult.from_counts(0, 0, plan.name)
            current = await self._usage.get_usage(org_id, metric)
            return UsageCheckResult.from_counts(current, limit, plan.name)
        except Exception as exc:
            log.warning("limit_check_failed", org_id=org_id, metric=metric, error=str(exc))
            return UsageCheckResult.unlimited()

    async def can_use_concurrent(self, org_id: str, metric: str) -> UsageCheckResult:
        if not org_id:
            return UsageCheckResult.unlimited()
        try:
            plan = await self.resolve_plan_definition(org_id)
            limit = plan.limit_for(metric)
            if limit == DISABLED:
                return UsageCheckResult.from_counts(0, 0, plan.name)
            current = await self._usage.get_concurrent(org_id, metric)
            return UsageCheckResult.from_counts(current, limit, plan.name)
        except Exception as exc:
            log.warning("concurrent_limit_check_failed", org_id=org_id, metric=metric, error=str(exc))
            return UsageCheckResult.unlimited()

    async def check_multiple(self, org_id: str, metrics: list[str]) -> dict[str, UsageCheckResult]:
        results = await asyncio.gather(*(self.can_use(org_id, m) for m in metrics))
        return dict(zip(metrics, results))

    # ── Plan Info ────────────────────────────────────────────────

    async def get_plan_info(self, org_id: str) -> dict[str, Any]:
        plan = await self.resolve_plan_definition(org_id)
        return {"plan_id": plan.plan_id, "name": plan.name, "limits": dict(plan.limits)}

    async def _scalar_limit(self, org_id: str, metric: str) -> int:
        if not org_id:
            return UNLIMITED
        try:
            return await self.get_plan_limit(org_id, metric)
        except Exception as exc:
            log.warning("plan_limit_lookup_failed", org_id=org_id, metric=metric, error=str(exc))
            return UNLIMITED

    async def get_interview_duration_limit(self, org_id: str) -> int:
        """Max interview length in seconds, -1 when unlimited."""
        return await self._scalar_limit(org_id, METRIC_INTERVIEW_DURATION)

    async def get_data_retention_days(self, org_id: str) -> int:
        return await self._scalar_limit(org_id, METRIC_DATA_RETENTION)
