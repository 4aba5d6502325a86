from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.breakage.constants import ROLE_ADMIN, ROLE_USER, USER_ACTIVE


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    # Profile
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    employee_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    role: Mapped[str] = mapped_column(String(16), nullable=False, default=ROLE_USER)  # admin | user
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=USER_ACTIVE)  # active | inactive

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == USER_ACTIVE

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class LogEntry(Base):
    """
    Append-only activity log.
    The actor's e-mail is snapshotted so entries survive a hard user delete.
    """

    __tablename__ = "activity_logs"
    __table_args__ = (
        Index("idx_activity_logs_actor", "actor_user_id"),
        Index("idx_activity_logs_action", "action"),
        Index("idx_activity_logs_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_user_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "submission.approve"
    target_type: Mapped[str | None] = mapped_column(String(64), nullable=True)  # e.g. "Submission"
    target_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    details_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.breakage.modules.products.models import Product  # noqa: E402,F401
from app.breakage.modules.submissions.models import Item, Submission  # noqa: E402,F401
