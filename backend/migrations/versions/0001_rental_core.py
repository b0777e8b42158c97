"""rental core tables

Revision ID: 0001_rental_core
Revises: 
Create Date: 2026-10-18
"""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_rental_core'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table('users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('email', sa.String(length=128), nullable=False, unique=True),
        sa.Column('processor_customer_ref', sa.String(length=255), nullable=True),
        sa.Column('payout_account_ref', sa.String(length=255), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'))
    )
    op.create_index('ix_users_email', 'users', ['email'])

    op.create_table('listings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('owner_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('is_available', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('daily_rate_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deposit_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('late_fee_per_day_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('min_duration_days', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('max_duration_days', sa.Integer(), nullable=False, server_default='14'),
        sa.Column('times_borrowed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_earnings_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'))
    )
    op.create_index('ix_listings_owner_id', 'listings', ['owner_id'])

    op.create_table('borrow_transactions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('listing_id', sa.Integer(), sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('borrower_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('lender_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('requested_start_date', sa.DateTime(), nullable=False),
        sa.Column('requested_end_date', sa.DateTime(), nullable=False),
        sa.Column('rental_days', sa.Integer(), nullable=False),
        sa.Column('daily_rate_cents', sa.Integer(), nullable=False),
        sa.Column('rental_fee_cents', sa.Integer(), nullable=False),
        sa.Column('deposit_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('platform_fee_cents', sa.Integer(), nullable=False),
        sa.Column('lender_payout_cents', sa.Integer(), nullable=False),
        sa.Column('late_fee_per_day_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('borrower_message', sa.Text(), nullable=True),
        sa.Column('lender_response', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='requested'),
        sa.Column('payment_status', sa.String(length=32), nullable=False, server_default='none'),
        sa.Column('condition_at_pickup', sa.String(length=16), nullable=True),
        sa.Column('condition_at_return', sa.String(length=16), nullable=True),
        sa.Column('condition_notes', sa.Text(), nullable=True),
        sa.Column('late_fee_amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('late_fee_days_charged', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('damage_claim_amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('damage_claim_notes', sa.Text(), nullable=True),
        sa.Column('damage_evidence_urls', sa.JSON(), nullable=False),
        sa.Column('hold_ref', sa.String(length=255), nullable=True),
        sa.Column('transfer_ref', sa.String(length=255), nullable=True),
        sa.Column('payout_transferred_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deposit_refund_ref', sa.String(length=255), nullable=True),
        sa.Column('deposit_refunded_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('late_fee_charge_refs', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('actual_pickup_at', sa.DateTime(), nullable=True),
        sa.Column('actual_return_at', sa.DateTime(), nullable=True)
    )
    op.create_index('ix_borrow_transactions_listing_id', 'borrow_transactions', ['listing_id'])
    op.create_index('ix_borrow_transactions_borrower_id', 'borrow_transactions', ['borrower_id'])
    op.create_index('ix_borrow_transactions_lender_id', 'borrow_transactions', ['lender_id'])
    op.create_index('ix_borrow_transactions_status', 'borrow_transactions', ['status'])
    op.create_index('ix_borrow_transactions_requested_end_date', 'borrow_transactions', ['requested_end_date'])
    op.create_index('ix_borrow_transactions_hold_ref', 'borrow_transactions', ['hold_ref'])

    op.create_table('ratings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_id', sa.String(length=36), sa.ForeignKey('borrow_transactions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('rater_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('ratee_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('rating', sa.Integer(), nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        sa.Column('is_lender_rating', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('transaction_id', 'rater_id', name='uq_rating_transaction_rater')
    )
    op.create_index('ix_ratings_transaction_id', 'ratings', ['transaction_id'])
    op.create_index('ix_ratings_ratee_id', 'ratings', ['ratee_id'])

    op.create_table('notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=128), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('transaction_id', sa.String(length=36), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'))
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('ix_notifications_event_type', 'notifications', ['event_type'])
    op.create_index('ix_notifications_transaction_id', 'notifications', ['transaction_id'])

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor_user_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('entity', sa.String(length=64), nullable=True),
        sa.Column('entity_id', sa.String(length=64), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'))
    )
    op.create_index('ix_audit_logs_actor_user_id', 'audit_logs', ['actor_user_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_entity', 'audit_logs', ['entity', 'entity_id'])

def downgrade():
    op.drop_table('audit_logs')
    op.drop_table('notifications')
    op.drop_table('ratings')
    op.drop_table('borrow_transactions')
    op.drop_table('listings')
    op.drop_table('users')
