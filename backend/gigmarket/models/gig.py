from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from gigmarket.db.base import Base, Lamports


class Gig(Base):
    __tablename__ = "gigs"

    seller: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    price: Mapped[int] = mapped_column(Lamports, nullable=False)
    delivery_days: Mapped[int] = mapped_column(Integer, nullable=False)
    max_revisions: Mapped[int] = mapped_column(Integer, nullable=False, default=3, server_default="3")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    rating_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    rating_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    completed_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    __table_args__ = (
        Index("ix_gigs_active_created", "is_active", "created_at"),
    )

    @property
    def average_rating(self) -> float | None:
        if not self.rating_count:
            return None
        return round(self.rating_total / self.rating_count, 2)
