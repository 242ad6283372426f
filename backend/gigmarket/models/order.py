from datetime import datetime

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gigmarket.db.base import Base, Lamports


class Order(Base):
    __tablename__ = "orders"

    reference: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    gig_id: Mapped[int] = mapped_column(
        ForeignKey("gigs.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    buyer: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    seller: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    price_base: Mapped[int] = mapped_column(Lamports, nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default="pending", server_default="pending"
    )
    requirements: Mapped[str] = mapped_column(Text, nullable=False)
    deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revisions_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    max_revisions: Mapped[int] = mapped_column(Integer, nullable=False)
    rating: Mapped[int | None] = mapped_column(SmallInteger, nullable=True)
    review: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    # Relationships
    gig = relationship("Gig", lazy="selectin")
    escrow = relationship(
        "Escrow", back_populates="order", uselist=False, lazy="selectin",
        cascade="all, delete-orphan",
    )
    milestones = relationship(
        "Milestone", back_populates="order", order_by="Milestone.position",
        lazy="selectin", cascade="all, delete-orphan",
    )
    messages = relationship(
        "OrderMessage", back_populates="order", order_by="OrderMessage.seq",
        lazy="selectin", cascade="all, delete-orphan",
    )
    disputes = relationship(
        "Dispute", back_populates="order", order_by="Dispute.id",
        lazy="selectin", cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
    )


class OrderMessage(Base):
    __tablename__ = "order_messages"

    order_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    sender: Mapped[str | None] = mapped_column(String(64), nullable=True)  # None for system messages
    kind: Mapped[str] = mapped_column(
        String(20), nullable=False, default="text", server_default="text"
    )  # text / deliverable / revision / system
    body: Mapped[str] = mapped_column(Text, nullable=False)
    attachments: Mapped[list | None] = mapped_column(JSON, nullable=True)

    order = relationship("Order", back_populates="messages", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("order_id", "seq", name="uq_order_messages_order_seq"),
    )
