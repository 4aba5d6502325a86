from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.breakage.constants import STATUS_PENDING
from app.breakage.models import Base

if TYPE_CHECKING:
    from app.breakage.models import User
    from app.breakage.modules.products.models import Product


class Submission(Base):
    __tablename__ = "submissions"
    __table_args__ = (
        Index("idx_submissions_user", "user_id"),
        Index("idx_submissions_status", "status"),
        Index("idx_submissions_created_at", "created_at"),
        CheckConstraint("status IN ('pending', 'approved', 'rejected')", name="ck_submissions_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    title: Mapped[str | None] = mapped_column(String(255), nullable=True)  # e.g. "Batch A"
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_PENDING)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)  # reviewer comment

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    decided_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    owner: Mapped["User"] = relationship("User", foreign_keys=[user_id], lazy="selectin")
    decided_by: Mapped["User | None"] = relationship("User", foreign_keys=[decided_by_user_id], lazy="selectin")
    items: Mapped[list["Item"]] = relationship(
        "Item",
        back_populates="submission",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Item.position",
        lazy="selectin",
    )


class Item(Base):
    __tablename__ = "items"
    __table_args__ = (
        Index("idx_items_submission", "submission_id"),
        Index("idx_items_product", "product_id"),
        CheckConstraint("quantity > 0", name="ck_items_quantity_positive"),
        CheckConstraint("operation_type IN ('breakage', 'exchange')", name="ck_items_operation_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    submission_id: Mapped[int] = mapped_column(ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)

    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    operation_type: Mapped[str] = mapped_column(String(16), nullable=False)  # breakage | exchange

    # Ordered storage keys (or absolute URLs for imported rows)
    photos: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    submission: Mapped[Submission] = relationship("Submission", back_populates="items")
    product: Mapped["Product"] = relationship("Product", lazy="selectin")
