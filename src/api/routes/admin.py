"""Subscription administration — one path, dispatched on ``action``.

GET    stats | alerts | all-organizations
POST   change-plan | add-custom-rule | reset-usage | reset-concurrent
PUT    update-plan-limits | update-notification-config | acknowledge-alert | update-custom-rule
DELETE delete-custom-rule | delete-alert
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, TypeVar

import pydantic
from fastapi import APIRouter, Body, Depends, Query

from src.api.deps import (
    ensure_admin,
    ensure_org_access,
    ensure_super_admin,
    get_manager,
    require_identity,
)
from src.api.models.schemas import (
    AcknowledgeAlertRequest,
    AddCustomRuleRequest,
    ChangePlanRequest,
    ResetConcurrentRequest,
    ResetUsageRequest,
    SuccessResponse,
    UpdateCustomRuleRequest,
    UpdateNotificationConfigRequest,
    UpdatePlanLimitsRequest,
)
from src.core.exceptions import ValidationError
from src.core.logging import get_logger
from src.saas.manager import SubscriptionManager
from src.saas.tenant import Identity

log = get_logger(__name__)

router = APIRouter(prefix="/admin/subscription", tags=["admin"])

M = TypeVar("M", bound=pydantic.BaseModel)


def _parse(model: type[M], body: dict[str, Any] | None) -> M:
    try:
        return model.model_validate(body or {})
    except pydantic.ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise ValidationError(f"Invalid request: {', '.join(fields)}") from exc


def _require_org(org_id: str | None) -> str:
    if not org_id:
        raise ValidationError("organizationId is required")
    return org_id


def _utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _unknown(action: str) -> ValidationError:
    return ValidationError(f"Unknown action: {action}")


# ── GET ──────────────────────────────────────────────────────────

@router.get("", response_model=SuccessResponse)
async def admin_get(
    action: str = Query(...),
    organization_id: str | None = Query(default=None, alias="organizationId"),
    include_history: bool = Query(default=False, alias="includeHistory"),
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    identity: Identity = Depends(require_identity),
    manager: SubscriptionManager = Depends(get_manager),
) -> SuccessResponse:
    if action == "stats":
        org_id = _require_org(organization_id)
        ensure_org_access(identity, org_id)
        date_range = (_utc(start_date), _utc(end_date)) if start_date and end_date else None
        stats = await manager.get_usage_stats(org_id, include_history=include_history, date_range=date_range)
        return SuccessResponse(data=stats.to_dict())

    if action == "alerts":
        org_id = _require_org(organization_id)
        ensure_org_access(identity, org_id)
        alerts = await manager.get_alerts(org_id, unacknowledged_only=True)
        return SuccessResponse(data=[a.to_dict() for a in alerts])

    if action == "all-organizations":
        ensure_super_admin(identity)
        return SuccessResponse(data=await manager.list_organizations_overview())

    raise _unknown(action)


# ── POST ─────────────────────────────────────────────────────────

@router.post("", response_model=SuccessResponse)
async def admin_post(
    action: str = Query(...),
    body: dict[str, Any] | None = Body(default=None),
    identity: Identity = Depends(require_identity),
    manager: SubscriptionManager = Depends(get_manager),
) -> SuccessResponse:
    if action == "change-plan":
        req = _parse(ChangePlanRequest, body)
        ensure_org_access(identity, req.organization_id)
        result = await manager.change_plan(
            req.organization_id,
            req.plan_id,
            immediate=req.immediate,
            reset_usage=req.reset_usage,
            notify_users=req.notify_users,
            changed_by=identity.user_id,
            reason=req.reason,
        )
        return SuccessResponse(data=result.to_dict())

    if action == "add-custom-rule":
        req_rule = _parse(AddCustomRuleRequest, body)
        ensure_org_access(identity, req_rule.organization_id)
        rule = await manager.add_custom_rule(req_rule.organization_id, req_rule.rule, created_by=identity.user_id)
        return SuccessResponse(data=rule.to_dict())

    if action == "reset-usage":
        req_reset = _parse(ResetUsageRequest, body)
        ensure_org_access(identity, req_reset.organization_id)
        await manager.reset_usage(req_reset.organization_id, req_reset.metrics)
        log.info("admin_usage_reset", org_id=req_reset.organization_id, by=identity.user_id)
        return SuccessResponse(message="Usage reset")

    if action == "reset-concurrent":
        req_gauge = _parse(ResetConcurrentRequest, body)
        ensure_org_access(identity, req_gauge.organization_id)
        await manager.reset_concurrent(req_gauge.organization_id, req_gauge.metric)
        log.info("admin_concurrent_reset", org_id=req_gauge.organization_id, by=identity.user_id)
        return SuccessResponse(message="Concurrent usage reset")

    raise _unknown(action)


# ── PUT ──────────────────────────────────────────────────────────

@router.put("", response_model=SuccessResponse)
async def admin_put(
    action: str = Query(...),
    body: dict[str, Any] | None = Body(default=None),
    identity: Identity = Depends(require_identity),
    manager: SubscriptionManager = Depends(get_manager),
) -> SuccessResponse:
    if action == "update-plan-limits":
        ensure_super_admin(identity)
        req_limits = _parse(UpdatePlanLimitsRequest, body)
        plan = await manager.update_plan_limits(req_limits.plan_id, req_limits.limits, updated_by=identity.user_id)
        return SuccessResponse(data={"plan_id": plan.plan_id, "name": plan.name, "limits": plan.limits})

    ensure_admin(identity)

    if action == "update-notification-config":
        req_config = _parse(UpdateNotificationConfigRequest, body)
        config = await manager.update_notification_config(req_config.organization_id, req_config.config)
        return SuccessResponse(data=config.to_document())

    if action == "acknowledge-alert":
        req_ack = _parse(AcknowledgeAlertRequest, body)
        alert = await manager.acknowledge_alert(req_ack.organization_id, req_ack.alert_id, identity.user_id)
        return SuccessResponse(data=alert.to_dict())

    if action == "update-custom-rule":
        req_update = _parse(UpdateCustomRuleRequest, body)
        rule = await manager.update_custom_rule(
            req_update.organization_id,
            req_update.rule_id,
            req_update.updates,
            modified_by=identity.user_id,
        )
        return SuccessResponse(data=rule.to_dict())

    raise _unknown(action)


# ── DELETE ───────────────────────────────────────────────────────

@router.delete("", response_model=SuccessResponse)
async def admin_delete(
    action: str = Query(...),
    organization_id: str | None = Query(default=None, alias="organizationId"),
    rule_id: str | None = Query(default=None, alias="ruleId"),
    alert_id: str | None = Query(default=None, alias="alertId"),
    identity: Identity = Depends(require_identity),
    manager: SubscriptionManager = Depends(get_manager),
) -> SuccessResponse:
    ensure_admin(identity)
    org_id = _require_org(organization_id)

    if action == "delete-custom-rule":
        if not rule_id:
            raise ValidationError("ruleId is required")
        await manager.delete_custom_rule(org_id, rule_id)
        return SuccessResponse(message="Custom rule deleted")

    if action == "delete-alert":
        if not alert_id:
            raise ValidationError("alertId is required")
        await manager.delete_alert(org_id, alert_id)
        return SuccessResponse(message="Alert deleted")

    raise _unknown(action)
