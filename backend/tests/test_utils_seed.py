"""Test seeding utilities to reduce duplication.

The suite shares one in-memory database, so every helper creates fresh rows
with unique emails; tests never depend on rows seeded by another test.
"""
from datetime import timedelta
from typing import Optional
import uuid
from rental_engine import get_db
from rental_engine.models.user import User
from rental_engine.models.listing import Listing
from rental_engine.models.transaction import BorrowTransaction
from rental_engine.utils.clock import utcnow


def ensure_user(email: str, name: Optional[str] = None, customer_ref: Optional[str] = None, payout_account_ref: Optional[str] = None) -> User:
    session = get_db()
    u = session.query(User).filter_by(email=email).one_or_none()
    if not u:
        u = User(name=name or email.split('@')[0], email=email, processor_customer_ref=customer_ref, payout_account_ref=payout_account_ref)
        session.add(u); session.commit(); session.refresh(u)
    return u


def new_user(prefix: str = 'user', **kwargs) -> User:
    return ensure_user(f'{prefix}-{uuid.uuid4().hex[:10]}@example.com', name=prefix.title(), **kwargs)


def seed_parties(lender_payout: Optional[str] = 'acct_lender_test', borrower_customer: Optional[str] = 'cus_borrower_test'):
    """Lender (with payout account) and borrower (with processor customer)."""
    lender = new_user('lender', payout_account_ref=lender_payout)
    borrower = new_user('borrower', customer_ref=borrower_customer)
    return lender, borrower


def create_listing(
    owner: User,
    title: str = 'Cordless Drill',
    daily_rate_cents: int = 1000,
    deposit_cents: int = 2000,
    late_fee_per_day_cents: int = 0,
    min_duration_days: int = 1,
    max_duration_days: int = 14,
    status: str = Listing.STATUS_ACTIVE,
) -> Listing:
    session = get_db()
    listing = Listing(
        owner_id=owner.id,
        title=title,
        status=status,
        is_available=True,
        daily_rate_cents=daily_rate_cents,
        deposit_cents=deposit_cents,
        late_fee_per_day_cents=late_fee_per_day_cents,
        min_duration_days=min_duration_days,
        max_duration_days=max_duration_days,
    )
    session.add(listing); session.commit(); session.refresh(listing)
    return listing


def insert_transaction(listing: Listing, borrower: User, status: str = BorrowTransaction.STATUS_REQUESTED, **overrides) -> BorrowTransaction:
    """Insert a transaction row directly (bypassing the lifecycle) for store level tests."""
    session = get_db()
    start = utcnow()
    values = dict(
        listing_id=listing.id,
        borrower_id=borrower.id,
        lender_id=listing.owner_id,
        requested_start_date=start,
        requested_end_date=start + timedelta(days=3),
        rental_days=3,
        daily_rate_cents=listing.daily_rate_cents,
        rental_fee_cents=listing.daily_rate_cents * 3,
        deposit_cents=listing.deposit_cents,
        platform_fee_cents=60,
        lender_payout_cents=listing.daily_rate_cents * 3 - 60,
        late_fee_per_day_cents=listing.late_fee_per_day_cents,
        status=status,
        payment_status=BorrowTransaction.PAYMENT_NONE,
        damage_evidence_urls=[],
        late_fee_charge_refs=[],
    )
    values.update(overrides)
    txn = BorrowTransaction(**values)
    session.add(txn); session.commit(); session.refresh(txn)
    return txn


__all__ = ['ensure_user', 'new_user', 'seed_parties', 'create_listing', 'insert_transaction']
