from __future__ import annotations
"""Transaction store: reads and state-gated writes for borrow transactions.

Every mutation is a single ``UPDATE ... WHERE id = :id AND status IN (...)``.
Concurrent callers racing on the same pre-state are serialized by the
database: one write matches the row, the other sees zero affected rows and
gets ``NotFoundOrWrongState``. No in-process locks are taken.
"""
import logging
from typing import Any, Dict, Iterable, Optional, Sequence

from sqlalchemy import select, update

from rental_engine.errors import NotFoundOrWrongState, AuthorizationError
from rental_engine.models.transaction import BorrowTransaction
from rental_engine.models.listing import Listing
from rental_engine.models.rating import Rating
from rental_engine.models.user import User
from rental_engine.utils.clock import utcnow

logger = logging.getLogger(__name__)


def get_transaction(session, txn_id: str) -> BorrowTransaction:
    txn = session.execute(select(BorrowTransaction).where(BorrowTransaction.id == txn_id).execution_options(populate_existing=True)).scalar_one_or_none()
    if not txn:
        raise NotFoundOrWrongState('Transaction not found')
    return txn


def get_by_hold_ref(session, hold_ref: str) -> Optional[BorrowTransaction]:
    return session.execute(
        select(BorrowTransaction).where(BorrowTransaction.hold_ref == hold_ref).execution_options(populate_existing=True)
    ).scalar_one_or_none()


def get_for_participant(session, txn_id: str, user_id: int):
    """Load a transaction and the caller's role in it (borrower / lender)."""
    txn = get_transaction(session, txn_id)
    role = txn.role_of(user_id)
    if role is None:
        raise AuthorizationError('Not a participant in this transaction')
    return txn, role


def get_listing(session, listing_id: int) -> Optional[Listing]:
    return session.execute(select(Listing).where(Listing.id == listing_id).execution_options(populate_existing=True)).scalar_one_or_none()


def get_user(session, user_id: int) -> Optional[User]:
    return session.execute(select(User).where(User.id == user_id).execution_options(populate_existing=True)).scalar_one_or_none()


def set_customer_ref(session, user_id: int, customer_ref: str):
    session.execute(update(User).where(User.id == user_id).values(processor_customer_ref=customer_ref))
    session.commit()


def insert_transaction(session, txn: BorrowTransaction) -> BorrowTransaction:
    session.add(txn)
    session.commit()
    session.refresh(txn)
    return txn


def _gated_update(session, txn_id: str, expected: Iterable[str], values: Dict[str, Any], criteria: Sequence = ()):
    values = dict(values)
    values.setdefault('updated_at', utcnow())
    stmt = (
        update(BorrowTransaction)
        .where(BorrowTransaction.id == txn_id, BorrowTransaction.status.in_(tuple(expected)), *criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    if result.rowcount == 0:
        session.rollback()
        logger.info('state-gated write matched no rows', extra={'transaction_id': txn_id, 'expected': list(expected)})
        raise NotFoundOrWrongState()


def _reload(session, txn_id: str) -> BorrowTransaction:
    txn = session.get(BorrowTransaction, txn_id)
    session.refresh(txn)
    return txn


def conditional_update(session, txn_id: str, expected: Iterable[str], values: Dict[str, Any], *criteria) -> BorrowTransaction:
    """Apply ``values`` only while the row's status is one of ``expected``.

    Extra SQL ``criteria`` narrow the gate further (e.g. the number of
    late-fee days already billed). Returns the refreshed transaction.
    """
    expected = tuple(expected)
    _gated_update(session, txn_id, expected, values, criteria)
    session.commit()
    return _reload(session, txn_id)


def _occupied_clause(listing_id: int):
    return (
        select(BorrowTransaction.id)
        .where(
            BorrowTransaction.listing_id == listing_id,
            BorrowTransaction.status.in_(BorrowTransaction.OCCUPIED_STATUSES),
        )
        .exists()
    )


def listing_occupied(session, listing_id: int, exclude_txn_id: Optional[str] = None) -> bool:
    q = select(BorrowTransaction.id).where(
        BorrowTransaction.listing_id == listing_id,
        BorrowTransaction.status.in_(BorrowTransaction.OCCUPIED_STATUSES),
    )
    if exclude_txn_id:
        q = q.where(BorrowTransaction.id != exclude_txn_id)
    return session.execute(q.limit(1)).first() is not None


def _sync_availability_stmt(listing_id: int, **extra):
    # availability is derived from occupancy so it cannot drift from the transactions table
    return (
        update(Listing)
        .where(Listing.id == listing_id)
        .values(is_available=~_occupied_clause(listing_id), **extra)
        .execution_options(synchronize_session=False)
    )


def transition_and_sync(session, txn_id: str, expected: Iterable[str], values: Dict[str, Any], listing_id: int, *criteria) -> BorrowTransaction:
    """Gated status write plus listing availability recompute, committed together."""
    expected = tuple(expected)
    try:
        _gated_update(session, txn_id, expected, values, criteria)
        session.execute(_sync_availability_stmt(listing_id))
        session.commit()
    except NotFoundOrWrongState:
        raise
    except Exception:
        session.rollback()
        raise
    return _reload(session, txn_id)


def settle(session, txn_id: str, expected: Iterable[str], values: Dict[str, Any], listing_id: int, earnings_cents: int) -> BorrowTransaction:
    """Settlement write group: status, refs, listing availability and counters.

    Runs as one database transaction and is only entered after the processor
    calls of the settlement have succeeded.
    """
    expected = tuple(expected)
    try:
        _gated_update(session, txn_id, expected, values)
        session.execute(
            _sync_availability_stmt(
                listing_id,
                times_borrowed=Listing.times_borrowed + 1,
                total_earnings_cents=Listing.total_earnings_cents + earnings_cents,
            )
        )
        session.commit()
    except NotFoundOrWrongState:
        raise
    except Exception:
        session.rollback()
        raise
    listing = session.get(Listing, listing_id)
    if listing is not None:
        session.refresh(listing)
    return _reload(session, txn_id)


def upsert_rating(session, txn: BorrowTransaction, rater_id: int, ratee_id: int, rating: int, comment: Optional[str]) -> Rating:
    row = session.execute(
        select(Rating).where(Rating.transaction_id == txn.id, Rating.rater_id == rater_id)
    ).scalar_one_or_none()
    if row is None:
        row = Rating(
            transaction_id=txn.id,
            rater_id=rater_id,
            ratee_id=ratee_id,
            rating=rating,
            comment=comment,
            is_lender_rating=(rater_id == txn.borrower_id),
        )
        session.add(row)
    else:
        row.rating = rating
        row.comment = comment
    session.commit()
    session.refresh(row)
    return row


def rater_ids(session, txn_id: str) -> set:
    return set(session.execute(select(Rating.rater_id).where(Rating.transaction_id == txn_id)).scalars().all())


def query_for_user(session, user_id: int, role: Optional[str] = None, status: Optional[str] = None):
    q = session.query(BorrowTransaction)
    if role == 'borrower':
        q = q.filter(BorrowTransaction.borrower_id == user_id)
    elif role == 'lender':
        q = q.filter(BorrowTransaction.lender_id == user_id)
    else:
        q = q.filter((BorrowTransaction.borrower_id == user_id) | (BorrowTransaction.lender_id == user_id))
    if status:
        q = q.filter(BorrowTransaction.status == status)
    return q.order_by(BorrowTransaction.updated_at.desc(), BorrowTransaction.id.desc())


def open_with_holds(session, statuses: Iterable[str], limit: Optional[int] = None):
    """Transactions in ``statuses`` that carry a processor hold reference."""
    q = (
        select(BorrowTransaction)
        .where(
            BorrowTransaction.hold_ref.isnot(None),
            BorrowTransaction.status.in_(tuple(statuses)),
        )
        .order_by(BorrowTransaction.created_at)
    )
    if limit:
        q = q.limit(limit)
    return session.execute(q).scalars().all()


__all__ = [
    'get_transaction', 'get_by_hold_ref', 'get_for_participant', 'get_listing', 'get_user', 'set_customer_ref',
    'insert_transaction', 'conditional_update', 'listing_occupied',
    'transition_and_sync', 'settle', 'upsert_rating', 'rater_ids', 'query_for_user', 'open_with_holds',
]
