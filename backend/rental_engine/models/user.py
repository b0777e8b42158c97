from __future__ import annotations
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, DateTime, text
from typing import Optional

from .base import Base


class User(Base):
    """Slice of the marketplace user record the rental core depends on.

    Profiles, identity verification and authentication live elsewhere; only
    the processor references are read here.
    """
    __tablename__ = 'users'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    # Payer reference (processor customer) used for holds and late-fee charges
    processor_customer_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Connected payout account; transfers are deferred while this is empty
    payout_account_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=text('CURRENT_TIMESTAMP'), server_onupdate=text('CURRENT_TIMESTAMP'))
