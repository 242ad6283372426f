from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.api.schemas import (
    ApproveRequest,
    CancelRequest,
    DeliverRequest,
    DisputeCreate,
    DisputeResponse,
    FundRequest,
    MessageCreate,
    MessageResponse,
    MilestoneResponse,
    OrderCreate,
    OrderDetailResponse,
    OrderResponse,
    OrderStatsResponse,
    RevisionRequest,
    TimeRemainingResponse,
)
from gigmarket.core.config import settings
from gigmarket.core.deps import get_db, get_ledger
from gigmarket.core.rate_limit import limiter
from gigmarket.core.security import get_current_account
from gigmarket.models.order import Order
from gigmarket.services import dispute as dispute_svc
from gigmarket.services import milestones as milestone_svc
from gigmarket.services import order as order_svc
from gigmarket.services.ledger import LedgerGateway

router = APIRouter(prefix="/orders", tags=["orders"])


def _detail(order: Order, account: str) -> OrderDetailResponse:
    """Build OrderDetailResponse with the actions open to ``account``."""
    resp = OrderDetailResponse.model_validate(order)
    resp.milestones = sorted(resp.milestones, key=lambda m: m.position)
    resp.available_actions = order_svc.available_actions(order, account)
    return resp


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get("", response_model=list[OrderResponse])
async def list_orders(
    role: str | None = Query(default=None),
    status: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await order_svc.list_orders_by_party(
        db, account, role=role, status=status, offset=offset, limit=limit,
    )


@router.get("/stats", response_model=OrderStatsResponse)
async def order_stats(
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await order_svc.get_order_stats(db, account)


@router.get("/by-reference/{reference}", response_model=OrderDetailResponse)
async def get_order_by_reference(
    reference: str,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    order = await order_svc.get_order_by_reference(db, reference)
    order_svc.ensure_can_view(order, account)
    return _detail(order, account)


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: int,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    order = await order_svc.get_order(db, order_id)
    order_svc.ensure_can_view(order, account)
    return _detail(order, account)


@router.get("/{order_id}/time-remaining", response_model=TimeRemainingResponse)
async def time_remaining(
    order_id: int,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    order = await order_svc.get_order(db, order_id)
    order_svc.ensure_can_view(order, account)
    return await order_svc.get_time_remaining(db, order_id)


@router.get("/{order_id}/messages", response_model=list[MessageResponse])
async def list_messages(
    order_id: int,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    order = await order_svc.get_order(db, order_id)
    order_svc.ensure_can_view(order, account)
    return sorted(order.messages, key=lambda m: m.seq)


@router.post("/{order_id}/messages", response_model=MessageResponse, status_code=201)
async def post_message(
    order_id: int,
    body: MessageCreate,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await order_svc.add_message(db, order_id, account, body.body, body.attachments)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@router.post("", response_model=OrderDetailResponse, status_code=201)
async def create_order(
    body: OrderCreate,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    plans = None
    if body.milestones:
        plans = [
            milestone_svc.MilestonePlan(m.description, m.percentage, m.due_date)
            for m in body.milestones
        ]
    order = await order_svc.create_order(
        db, account, body.gig_id, body.requirements,
        milestones=plans, duration_days=body.duration_days,
    )
    return _detail(order, account)


@router.post("/{order_id}/fund", response_model=OrderDetailResponse)
@limiter.limit(settings.rate_limit_settlement)
async def fund_order(
    request: Request,
    order_id: int,
    body: FundRequest,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger),
):
    order = await order_svc.fund_order(db, ledger, order_id, account, tx_ref=body.tx_ref)
    return _detail(order, account)


@router.post("/{order_id}/accept", response_model=OrderDetailResponse)
async def accept_order(
    order_id: int,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    order = await order_svc.accept_order(db, order_id, account)
    return _detail(order, account)


@router.post("/{order_id}/deliver", response_model=OrderDetailResponse)
async def deliver_order(
    order_id: int,
    body: DeliverRequest,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    order = await order_svc.submit_deliverable(
        db, order_id, account, body.deliverable, body.attachments,
    )
    return _detail(order, account)


@router.post("/{order_id}/revision", response_model=OrderDetailResponse)
async def request_revision(
    order_id: int,
    body: RevisionRequest,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    order = await order_svc.request_revision(db, order_id, account, body.notes)
    return _detail(order, account)


@router.post("/{order_id}/approve", response_model=OrderDetailResponse)
@limiter.limit(settings.rate_limit_settlement)
async def approve_order(
    request: Request,
    order_id: int,
    body: ApproveRequest,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger),
):
    order = await order_svc.approve_work(db, ledger, order_id, account, body.rating, body.review)
    return _detail(order, account)


@router.post("/{order_id}/cancel", response_model=OrderDetailResponse)
@limiter.limit(settings.rate_limit_settlement)
async def cancel_order(
    request: Request,
    order_id: int,
    body: CancelRequest,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger),
):
    order = await order_svc.cancel_order(db, ledger, order_id, account, body.reason)
    return _detail(order, account)


@router.post("/{order_id}/dispute", response_model=DisputeResponse, status_code=201)
async def open_dispute(
    order_id: int,
    body: DisputeCreate,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await dispute_svc.open_dispute(db, order_id, account, body.reason)


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------


@router.post("/{order_id}/milestones/{position}/start", response_model=MilestoneResponse)
async def start_milestone(
    order_id: int,
    position: int,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await milestone_svc.start_milestone(db, order_id, position, account)


@router.post("/{order_id}/milestones/{position}/approve", response_model=MilestoneResponse)
@limiter.limit(settings.rate_limit_settlement)
async def approve_milestone(
    request: Request,
    order_id: int,
    position: int,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger),
):
    return await milestone_svc.approve_milestone(db, ledger, order_id, position, account)
