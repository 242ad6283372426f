from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, SmallInteger, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gigmarket.db.base import Base, Lamports


class Milestone(Base):
    __tablename__ = "milestones"

    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)  # 1-based
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    percentage: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    amount: Mapped[int] = mapped_column(Lamports, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", server_default="pending"
    )  # pending / in_progress / completed / disputed
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    release_tx: Mapped[str | None] = mapped_column(String(128), nullable=True)

    order = relationship("Order", back_populates="milestones", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("order_id", "position", name="uq_milestones_order_position"),
    )
