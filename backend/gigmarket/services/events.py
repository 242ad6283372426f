"""Typed registry of order and escrow events.

Each record kind is a pydantic model tagged by ``kind``; ``Event`` is the
closed union of all of them.  Audit entries store events in this encoded
form, and ``decode_event`` turns stored payloads back into the right type.
"""

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    order_id: int | None
    at: datetime


class OrderCreated(_EventBase):
    kind: Literal["order_created"] = "order_created"
    reference: str
    buyer: str
    seller: str
    price_base: int
    total_amount: int


class OrderTransitioned(_EventBase):
    kind: Literal["order_transitioned"] = "order_transitioned"
    action: str
    from_status: str
    to_status: str
    actor: str


class EscrowFunded(_EventBase):
    kind: Literal["escrow_funded"] = "escrow_funded"
    address: str
    amount: int
    tx_ref: str


class FundsReleased(_EventBase):
    kind: Literal["funds_released"] = "funds_released"
    address: str
    purpose: str
    recipient: str
    amount: int
    tx_ref: str


class EscrowLapsed(_EventBase):
    kind: Literal["escrow_expired"] = "escrow_expired"
    address: str


class DisputeOpened(_EventBase):
    kind: Literal["dispute_opened"] = "dispute_opened"
    dispute_id: int | None
    initiator: str
    reason: str


class DisputeResolved(_EventBase):
    kind: Literal["dispute_resolved"] = "dispute_resolved"
    dispute_id: int
    arbitrator: str
    buyer_refund_percent: int = Field(ge=0, le=100)
    buyer_amount: int
    seller_amount: int


class DisputeEscalated(_EventBase):
    kind: Literal["dispute_escalated"] = "dispute_escalated"
    dispute_id: int
    arbitrator: str


Event = Annotated[
    Union[
        OrderCreated,
        OrderTransitioned,
        EscrowFunded,
        FundsReleased,
        EscrowLapsed,
        DisputeOpened,
        DisputeResolved,
        DisputeEscalated,
    ],
    Field(discriminator="kind"),
]

_adapter: TypeAdapter[Event] = TypeAdapter(Event)


def encode_event(event: Event) -> dict:
    """JSON-safe dict for storage."""
    return event.model_dump(mode="json")


def decode_event(payload: dict | str | bytes) -> Event:
    """Parse a stored payload; unknown kinds raise ``pydantic.ValidationError``."""
    if isinstance(payload, (str, bytes)):
        return _adapter.validate_json(payload)
    return _adapter.validate_python(payload)
