from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gigmarket.db.base import Base, Lamports


class Escrow(Base):
    __tablename__ = "escrows"

    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), unique=True, nullable=False, index=True
    )
    address: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    buyer: Mapped[str] = mapped_column(String(64), nullable=False)
    seller: Mapped[str] = mapped_column(String(64), nullable=False)
    base_amount: Mapped[int] = mapped_column(Lamports, nullable=False)
    platform_fee: Mapped[int] = mapped_column(Lamports, nullable=False)
    service_fee: Mapped[int] = mapped_column(Lamports, nullable=False)
    total_amount: Mapped[int] = mapped_column(Lamports, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", server_default="pending"
    )  # pending / active / disputed / completed / cancelled / expired
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_amount: Mapped[int] = mapped_column(Lamports, nullable=False, default=0, server_default="0")
    refunded_amount: Mapped[int] = mapped_column(Lamports, nullable=False, default=0, server_default="0")
    fee_collected: Mapped[int] = mapped_column(Lamports, nullable=False, default=0, server_default="0")
    funding_tx: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    order = relationship("Order", back_populates="escrow", lazy="selectin")
    payouts = relationship(
        "EscrowPayout", back_populates="escrow", order_by="EscrowPayout.id",
        lazy="selectin", cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}


class EscrowPayout(Base):
    """One confirmed transfer out of an escrow address."""

    __tablename__ = "escrow_payouts"

    escrow_id: Mapped[int] = mapped_column(
        ForeignKey("escrows.id", ondelete="CASCADE"), nullable=False, index=True
    )
    recipient: Mapped[str] = mapped_column(String(20), nullable=False)  # seller / buyer / platform
    destination: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Lamports, nullable=False)
    tx_ref: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)

    escrow = relationship("Escrow", back_populates="payouts", lazy="selectin")
