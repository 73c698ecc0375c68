"""Liveness check — unauthenticated, reports the wiring the process started with."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from config.settings import get_settings
from src.api.deps import get_manager
from src.api.models.schemas import HealthResponse
from src.saas.manager import SubscriptionManager

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(manager: SubscriptionManager = Depends(get_manager)) -> HealthResponse:
    settings = get_settings()
    return HealthResponse(
        status="ok",
        version="0.1.0",
        environment=settings.quotagate_env,
        store_backend=settings.store_backend,
        concurrent_backend=settings.concurrent_backend,
        pending_notifications=manager.alerts.retry_queue_size,
    )
