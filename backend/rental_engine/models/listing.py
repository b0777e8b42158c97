from __future__ import annotations
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, Boolean, ForeignKey, DateTime, text

from .base import Base


class Listing(Base):
    __tablename__ = 'listings'
    STATUS_ACTIVE = 'active'
    STATUS_INACTIVE = 'inactive'
    ALL_STATUSES = (STATUS_ACTIVE, STATUS_INACTIVE)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey('users.id'), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_ACTIVE)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Terms (snapshotted onto each transaction at request time)
    daily_rate_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deposit_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    late_fee_per_day_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    min_duration_days: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_duration_days: Mapped[int] = mapped_column(Integer, nullable=False, default=14)
    # Stats maintained by settlement
    times_borrowed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_earnings_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=text('CURRENT_TIMESTAMP'), server_onupdate=text('CURRENT_TIMESTAMP'))
