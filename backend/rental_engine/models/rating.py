from __future__ import annotations
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, Text, Boolean, ForeignKey, DateTime, UniqueConstraint
from typing import Optional
from datetime import datetime

from .base import Base
from rental_engine.utils.clock import utcnow


class Rating(Base):
    __tablename__ = 'ratings'
    MIN_RATING = 1
    MAX_RATING = 5
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[str] = mapped_column(String(36), ForeignKey('borrow_transactions.id', ondelete='CASCADE'), nullable=False, index=True)
    rater_id: Mapped[int] = mapped_column(ForeignKey('users.id'), nullable=False)
    ratee_id: Mapped[int] = mapped_column(ForeignKey('users.id'), nullable=False, index=True)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # True when the borrower rated the lender
    is_lender_rating: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint('transaction_id', 'rater_id', name='uq_rating_transaction_rater'),)
