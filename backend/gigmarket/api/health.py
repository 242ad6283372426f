from fastapi import APIRouter

from gigmarket.core.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/config/public")
async def public_config() -> dict:
    """Public marketplace configuration (fees, limits and timeouts)."""
    return {
        "platform_fee_percentage": str(settings.platform_fee_percentage),
        "service_fee_flat": settings.service_fee_flat,
        "min_escrow_amount": settings.min_escrow_amount,
        "max_escrow_amount": settings.max_escrow_amount,
        "lamports_per_unit": settings.lamports_per_unit,
        "escrow_duration_days": settings.escrow_duration_days,
        "dispute_window_days": settings.dispute_window_days,
        "auto_release_days": settings.auto_release_days,
        "max_milestones": settings.max_milestones,
    }
