"""Plan catalog — versioned plan table from YAML, overlaid with store overrides.

``config/plans.yaml`` is the base definition. Administrative limit updates
are persisted to ``plans/{plan_id}`` and win over the file. The merged table
is cached process-wide for ``ttl_seconds``.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any

import yaml

from src.core.constants import COLLECTION_PLANS, PLAN_CACHE_TTL_SECONDS, PLAN_FREE
from src.core.exceptions import ConfigurationError
from src.core.logging import get_logger
from src.core.types import PlanDefinition, isoformat, utcnow
from src.store.base import DocumentStore

log = get_logger(__name__)


def load_plan_file(path: Path) -> tuple[int, dict[str, PlanDefinition]]:
    """Parse the plan YAML. Returns (version, plans)."""
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Cannot load plan file {path}", context={"path": str(path)}) from exc

    if not isinstance(raw, dict) or not isinstance(raw.get("plans"), dict):
        raise ConfigurationError("Plan file must define a 'plans' mapping", context={"path": str(path)})

    plans: dict[str, PlanDefinition] = {}
    for plan_id, body in raw["plans"].items():
        body = body or {}
        limits = body.get("limits") or {}
        try:
            plans[plan_id] = PlanDefinition(
                plan_id=plan_id,
                name=str(body.get("name", plan_id)),
                tier=int(body.get("tier", 0)),
                upgrade_to=body.get("upgrade_to"),
                limits={metric: int(value) for metric, value in limits.items()},
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Malformed plan {plan_id!r}", context={"plan_id": plan_id}) from exc

    if PLAN_FREE not in plans:
        raise ConfigurationError(f"Plan file must define the '{PLAN_FREE}' plan")
    return int(raw.get("version", 1)), plans


def validate_limits(limits: dict[str, Any]) -> dict[str, int]:
    """Limits must be integers >= -1."""
    clean: dict[str, int] = {}
    for metric, value in limits.items():
        if isinstance(value, bool) or not isinstance(value, int) or value < -1:
            raise ConfigurationError(
                f"Invalid limit for {metric!r}: {value!r} (expected integer >= -1)",
                context={"metric": metric},
            )
        clean[metric] = value
    return clean


class PlanCatalog:
    """Process-wide view of plan definitions."""

    def __init__(
        self,
        store: DocumentStore,
        plans_path: Path,
        ttl_seconds: int = PLAN_CACHE_TTL_SECONDS,
    ) -> None:
        self._store = store
        self._path = plans_path
        self._ttl = ttl_seconds
        self.version, self._base = load_plan_file(plans_path)
        self._plans: dict[str, PlanDefinition] = dict(self._base)
        self._loaded_at: float | None = None

    async def refresh(self) -> None:
        """Re-merge store overrides over the file definitions."""
        merged: dict[str, PlanDefinition] = {}
        for plan_id, base in self._base.items():
            limits = dict(base.limits)
            try:
                override = await self._store.get(COLLECTION_PLANS, plan_id)
            except Exception as exc:
                log.warning("plan_override_read_failed", plan_id=plan_id, error=str(exc))
                override = None
            if override:
                limits.update({k: int(v) for k, v in (override.get("limits") or {}).items()})
            merged[plan_id] = PlanDefinition(
                plan_id=plan_id,
                name=base.name,
                tier=base.tier,
                upgrade_to=base.upgrade_to,
                limits=limits,
            )
        self._plans = merged
        self._loaded_at = time.monotonic()
        log.debug("plan_catalog_refreshed", version=self.version, plans=len(merged))

    async def _ensure_fresh(self) -> None:
        if self._loaded_at is None or time.monotonic() - self._loaded_at > self._ttl:
            await self.refresh()

    async def get_plan(self, plan_id: str) -> PlanDefinition | None:
        await self._ensure_fresh()
        return self._plans.get(plan_id)

    def has_plan(self, plan_id: str) -> bool:
        return plan_id in self._base

    def upgrade_target(self, plan_id: str) -> PlanDefinition | None:
        """Next tier up, or None at the top."""
        plan = self._plans.get(plan_id)
        if plan is None or not plan.upgrade_to:
            return None
        return self._plans.get(plan.upgrade_to)

    async def update_limits(self, plan_id: str, limits: dict[str, Any], updated_by: str = "system") -> PlanDefinition:
        """Persist a limit override and refresh the catalog."""
        if not self.has_plan(plan_id):
            raise ConfigurationError(f"Unknown plan: {plan_id}", context={"plan_id": plan_id})
        clean = validate_limits(limits)

        existing = await self._store.get(COLLECTION_PLANS, plan_id) or {}
        merged_limits = {**(existing.get("limits") or {}), **clean}
        await self._store.set(
            COLLECTION_PLANS,
            plan_id,
            {
                "limits": merged_limits,
                "version": self.version,
                "updated_at": isoformat(utcnow()),
                "updated_by": updated_by,
            },
        )
        await self.refresh()
        log.info("plan_limits_updated", plan_id=plan_id, metrics=sorted(clean), updated_by=updated_by)
        return self._plans[plan_id]
