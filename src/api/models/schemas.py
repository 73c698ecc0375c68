"""Pydantic V2 request/response schemas for the QuotaGate admin API.

Request bodies accept the camelCase field names used by the admin console
as well as snake_case.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _OrgRequest(_Request):
    organization_id: str = Field(..., min_length=1, alias="organizationId")


# ── Plans ────────────────────────────────────────────────────────

class ChangePlanRequest(_OrgRequest):
    plan_id: str = Field(..., min_length=1, alias="planId")
    immediate: bool = True
    reset_usage: bool = Field(default=False, alias="resetUsage")
    notify_users: bool = Field(default=False, alias="notifyUsers")
    reason: str | None = None


class UpdatePlanLimitsRequest(_Request):
    plan_id: str = Field(..., min_length=1, alias="planId")
    limits: dict[str, Any]


# ── Usage ────────────────────────────────────────────────────────

class ResetUsageRequest(_OrgRequest):
    metrics: list[str] | None = None


class ResetConcurrentRequest(_OrgRequest):
    metric: str = Field(..., min_length=1)


# ── Custom Rules ─────────────────────────────────────────────────

class AddCustomRuleRequest(_OrgRequest):
    rule: dict[str, Any]


class UpdateCustomRuleRequest(_OrgRequest):
    rule_id: str = Field(..., min_length=1, alias="ruleId")
    updates: dict[str, Any]


# ── Alerts & Notifications ───────────────────────────────────────

class AcknowledgeAlertRequest(_OrgRequest):
    alert_id: str = Field(..., min_length=1, alias="alertId")


class UpdateNotificationConfigRequest(_OrgRequest):
    config: dict[str, Any]


# ── Responses ────────────────────────────────────────────────────

class SuccessResponse(BaseModel):
    success: bool = True
    data: Any = None
    message: str | None = None


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    store_backend: str = "memory"
    concurrent_backend: str = "store"
    pending_notifications: int = 0


class ErrorResponse(BaseModel):
    error: str
