from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.api.schemas import GigCreate, GigResponse, GigStatusUpdate
from gigmarket.core.deps import get_db
from gigmarket.core.security import get_current_account
from gigmarket.services import gig as gig_svc

router = APIRouter(prefix="/gigs", tags=["gigs"])


@router.post("", response_model=GigResponse, status_code=201)
async def create_gig(
    body: GigCreate,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await gig_svc.create_gig(
        db,
        account,
        body.title,
        body.description,
        body.price,
        body.delivery_days,
        category=body.category,
        max_revisions=body.max_revisions,
    )


@router.get("", response_model=list[GigResponse])
async def list_gigs(
    seller: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    return await gig_svc.list_gigs(db, seller=seller, offset=offset, limit=limit)


@router.get("/{gig_id}", response_model=GigResponse)
async def get_gig(gig_id: int, db: AsyncSession = Depends(get_db)):
    return await gig_svc.get_gig(db, gig_id)


@router.patch("/{gig_id}", response_model=GigResponse)
async def update_gig_status(
    gig_id: int,
    body: GigStatusUpdate,
    account: str = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await gig_svc.set_gig_active(db, gig_id, account, body.is_active)
