from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Gigs
# ---------------------------------------------------------------------------


class GigCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=1000)
    category: str | None = Field(default=None, max_length=50)
    price: int = Field(..., gt=0, description="Price in lamports")
    delivery_days: int = Field(..., ge=1)
    max_revisions: int | None = Field(default=None, ge=0)


class GigStatusUpdate(BaseModel):
    is_active: bool


class GigResponse(BaseModel):
    id: int
    seller: str
    title: str
    description: str
    category: str | None
    price: int
    delivery_days: int
    max_revisions: int
    is_active: bool
    completed_orders: int
    average_rating: float | None
    created_at: datetime

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Fees
# ---------------------------------------------------------------------------


class FeeQuoteRequest(BaseModel):
    base_amount: int


class FeeQuoteResponse(BaseModel):
    base_amount: int
    platform_fee: int
    service_fee: int
    total_amount: int
    seller_receives: int
    platform_fee_percentage: Decimal

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class MilestoneCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    percentage: int = Field(..., gt=0, le=100)
    due_date: datetime


class OrderCreate(BaseModel):
    gig_id: int
    requirements: str
    duration_days: int | None = None
    milestones: list[MilestoneCreate] | None = None


class FundRequest(BaseModel):
    tx_ref: str | None = Field(
        default=None,
        max_length=128,
        description="Reference of a deposit already sent to the escrow address",
    )


class DeliverRequest(BaseModel):
    deliverable: str
    attachments: list[str] | None = None


class RevisionRequest(BaseModel):
    notes: str


class ApproveRequest(BaseModel):
    rating: int
    review: str | None = None


class CancelRequest(BaseModel):
    reason: str


class MessageCreate(BaseModel):
    body: str
    attachments: list[str] | None = None


class MessageResponse(BaseModel):
    id: int | None = None
    seq: int
    sender: str | None
    kind: str
    body: str
    attachments: list[str] | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class MilestoneResponse(BaseModel):
    position: int
    description: str
    percentage: int
    amount: int
    status: str
    due_date: datetime
    completed_at: datetime | None = None
    release_tx: str | None = None

    model_config = {"from_attributes": True}


class PayoutResponse(BaseModel):
    recipient: str
    destination: str
    amount: int
    tx_ref: str

    model_config = {"from_attributes": True}


class EscrowResponse(BaseModel):
    address: str
    buyer: str
    seller: str
    base_amount: int
    platform_fee: int
    service_fee: int
    total_amount: int
    status: str
    expires_at: datetime
    funded_at: datetime | None = None
    released_at: datetime | None = None
    refunded_at: datetime | None = None
    released_amount: int
    refunded_amount: int
    fee_collected: int
    funding_tx: str | None = None
    payouts: list[PayoutResponse] = []

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    id: int | None = None
    reference: str
    gig_id: int
    buyer: str
    seller: str
    price_base: int
    status: str
    requirements: str
    deadline: datetime
    revisions_used: int
    max_revisions: int
    rating: int | None = None
    review: str | None = None
    cancel_reason: str | None = None
    accepted_at: datetime | None = None
    delivered_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class OrderDetailResponse(OrderResponse):
    escrow: EscrowResponse | None = None
    milestones: list[MilestoneResponse] = []
    available_actions: list[str] = []


class TimeRemainingResponse(BaseModel):
    days: int
    hours: int
    minutes: int
    is_expired: bool

    model_config = {"from_attributes": True}


class OrderStatsResponse(BaseModel):
    total_orders: int
    active_orders: int
    completed_orders: int
    total_earnings: int
    total_spent: int
    average_rating: float | None
    completion_rate: float

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


class DisputeCreate(BaseModel):
    reason: str


class EvidenceCreate(BaseModel):
    content: str


class EvidenceResponse(BaseModel):
    seq: int
    submitter: str
    content: str
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class ResolveRequest(BaseModel):
    buyer_refund_percent: int
    reasoning: str


class DisputeResponse(BaseModel):
    id: int | None = None
    order_id: int | None = None
    initiator: str
    reason: str
    status: Literal["open", "under_review", "resolved", "escalated"]
    arbitrator: str | None = None
    buyer_refund_percent: int | None = None
    resolution_reasoning: str | None = None
    buyer_amount: int | None = None
    seller_amount: int | None = None
    resolved_at: datetime | None = None
    evidence: list[EvidenceResponse] = []
    created_at: datetime | None = None

    model_config = {"from_attributes": True}
