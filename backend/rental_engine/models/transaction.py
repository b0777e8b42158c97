from __future__ import annotations
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, Text, ForeignKey, DateTime, JSON
from typing import Optional, List
from datetime import datetime
import uuid

from .base import Base
from rental_engine.utils.clock import utcnow


def new_transaction_id() -> str:
    return str(uuid.uuid4())


class BorrowTransaction(Base):
    __tablename__ = 'borrow_transactions'
    # Lifecycle status constants
    STATUS_REQUESTED = 'requested'
    STATUS_APPROVED_PAID = 'approved_paid'
    STATUS_PICKED_UP = 'picked_up'
    STATUS_RETURN_PENDING = 'return_pending'
    STATUS_RETURNED = 'returned'
    STATUS_DISPUTED = 'disputed'
    STATUS_CANCELLED = 'cancelled'
    STATUS_COMPLETED = 'completed'
    ALL_STATUSES = (
        STATUS_REQUESTED,
        STATUS_APPROVED_PAID,
        STATUS_PICKED_UP,
        STATUS_RETURN_PENDING,
        STATUS_RETURNED,
        STATUS_DISPUTED,
        STATUS_CANCELLED,
        STATUS_COMPLETED,
    )
    # Statuses during which the listing is out of the owner's hands
    OCCUPIED_STATUSES = (STATUS_APPROVED_PAID, STATUS_PICKED_UP, STATUS_RETURN_PENDING)

    # Payment status constants
    PAYMENT_NONE = 'none'
    PAYMENT_AUTHORIZED = 'authorized'
    PAYMENT_CAPTURED = 'captured'
    PAYMENT_REFUNDED = 'refunded'
    PAYMENT_CANCELLED = 'cancelled'
    PAYMENT_DAMAGE_CLAIMED = 'damage_claimed'
    PAYMENT_FAILED = 'failed'
    ALL_PAYMENT_STATUSES = (
        PAYMENT_NONE,
        PAYMENT_AUTHORIZED,
        PAYMENT_CAPTURED,
        PAYMENT_REFUNDED,
        PAYMENT_CANCELLED,
        PAYMENT_DAMAGE_CLAIMED,
        PAYMENT_FAILED,
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_transaction_id)
    listing_id: Mapped[int] = mapped_column(ForeignKey('listings.id'), nullable=False, index=True)
    borrower_id: Mapped[int] = mapped_column(ForeignKey('users.id'), nullable=False, index=True)
    lender_id: Mapped[int] = mapped_column(ForeignKey('users.id'), nullable=False, index=True)

    # Terms (pricing snapshot at request time)
    requested_start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    requested_end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    rental_days: Mapped[int] = mapped_column(Integer, nullable=False)
    daily_rate_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    rental_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    deposit_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    lender_payout_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    late_fee_per_day_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    borrower_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    lender_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default=STATUS_REQUESTED, index=True)
    payment_status: Mapped[str] = mapped_column(String(32), nullable=False, default=PAYMENT_NONE)

    condition_at_pickup: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    condition_at_return: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    condition_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Side flows
    late_fee_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    late_fee_days_charged: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    damage_claim_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    damage_claim_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    damage_evidence_urls: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # External processor references (reconciliation hook points)
    hold_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    transfer_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payout_transferred_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deposit_refund_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    deposit_refunded_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    late_fee_charge_refs: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    actual_pickup_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    actual_return_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def total_cents(self) -> int:
        return self.rental_fee_cents + self.deposit_cents

    def role_of(self, user_id: int) -> Optional[str]:
        if user_id == self.borrower_id:
            return 'borrower'
        if user_id == self.lender_id:
            return 'lender'
        return None
