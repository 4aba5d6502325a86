from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.breakage.models import Base


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        Index("idx_products_name", "name"),
        CheckConstraint("capacity > 0", name="ck_products_capacity_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # stored upper-cased
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)  # millilitres

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
