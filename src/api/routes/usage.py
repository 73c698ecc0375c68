"""Usage endpoint — the caller's own organization quota view."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from src.api.deps import get_manager, require_identity
from src.api.models.schemas import SuccessResponse
from src.saas.manager import SubscriptionManager
from src.saas.tenant import Identity

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("", response_model=SuccessResponse)
async def get_usage(
    identity: Identity = Depends(require_identity),
    manager: SubscriptionManager = Depends(get_manager),
) -> SuccessResponse:
    """Current usage and limits for the authenticated user's organization."""
    if not identity.organization_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No organization for user",
        )
    stats = await manager.get_usage_stats(identity.organization_id)
    return SuccessResponse(data=stats.to_dict())
