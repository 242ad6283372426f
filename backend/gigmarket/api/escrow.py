"""Escrow endpoints: escrow state for an order and fee quotes."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.api.schemas import EscrowResponse, FeeQuoteRequest, FeeQuoteResponse
from gigmarket.core.deps import get_db
from gigmarket.core.security import get_current_account
from gigmarket.services import escrow as escrow_svc
from gigmarket.services import order as order_svc
from gigmarket.services.fees import calculate_fees

router = APIRouter(prefix="/escrow", tags=["escrow"])


@router.post("/quote", response_model=FeeQuoteResponse)
async def quote_fees(body: FeeQuoteRequest):
    """Fee breakdown for a base amount, before any order exists."""
    return calculate_fees(body.base_amount)


@router.get("/orders/{order_id}", response_model=EscrowResponse)
async def get_order_escrow(
    order_id: int,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    order = await order_svc.get_order(db, order_id)
    order_svc.ensure_can_view(order, account)
    return await escrow_svc.get_escrow(db, order_id)
