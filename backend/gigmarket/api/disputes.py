from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.api.schemas import DisputeResponse, EvidenceCreate, EvidenceResponse, ResolveRequest
from gigmarket.core.config import settings
from gigmarket.core.deps import get_db, get_ledger
from gigmarket.core.rate_limit import limiter
from gigmarket.core.security import get_current_account
from gigmarket.services import dispute as dispute_svc
from gigmarket.services.ledger import LedgerGateway
from gigmarket.services.order import ensure_can_view

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.get("/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(
    dispute_id: int,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    dispute = await dispute_svc.get_dispute(db, dispute_id)
    ensure_can_view(dispute.order, account)
    return dispute


@router.post("/{dispute_id}/evidence", response_model=EvidenceResponse, status_code=201)
async def submit_evidence(
    dispute_id: int,
    body: EvidenceCreate,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await dispute_svc.submit_evidence(db, dispute_id, account, body.content)


@router.post("/{dispute_id}/review", response_model=DisputeResponse)
async def start_review(
    dispute_id: int,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await dispute_svc.start_review(db, dispute_id, account)


@router.post("/{dispute_id}/resolve", response_model=DisputeResponse)
@limiter.limit(settings.rate_limit_settlement)
async def resolve_dispute(
    request: Request,
    dispute_id: int,
    body: ResolveRequest,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger),
):
    return await dispute_svc.resolve_dispute(
        db, ledger, dispute_id, account, body.buyer_refund_percent, body.reasoning,
    )


@router.post("/{dispute_id}/escalate", response_model=DisputeResponse)
async def escalate_dispute(
    dispute_id: int,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await dispute_svc.escalate_dispute(db, dispute_id, account)
