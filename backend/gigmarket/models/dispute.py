from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, SmallInteger, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gigmarket.db.base import Base, Lamports


class Dispute(Base):
    __tablename__ = "disputes"

    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    escrow_id: Mapped[int] = mapped_column(
        ForeignKey("escrows.id", ondelete="CASCADE"), nullable=False, index=True
    )
    initiator: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="open", server_default="open"
    )  # open / under_review / resolved / escalated
    arbitrator: Mapped[str | None] = mapped_column(String(64), nullable=True)
    buyer_refund_percent: Mapped[int | None] = mapped_column(SmallInteger, nullable=True)
    resolution_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    buyer_amount: Mapped[int | None] = mapped_column(Lamports, nullable=True)
    seller_amount: Mapped[int | None] = mapped_column(Lamports, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    order = relationship("Order", back_populates="disputes", lazy="selectin")
    escrow = relationship("Escrow", lazy="selectin")
    evidence = relationship(
        "DisputeEvidence", back_populates="dispute", order_by="DisputeEvidence.seq",
        lazy="selectin", cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_disputes_status_created", "status", "created_at"),
    )


class DisputeEvidence(Base):
    __tablename__ = "dispute_evidence"

    dispute_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("disputes.id", ondelete="CASCADE"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    submitter: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)

    dispute = relationship("Dispute", back_populates="evidence", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("dispute_id", "seq", name="uq_dispute_evidence_dispute_seq"),
    )
