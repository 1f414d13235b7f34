"""create marketplace tables

Revision ID: 0001_create_marketplace_tables
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = '0001_create_marketplace_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

BOOKING_STATUSES = (
    'pending',
    'pending-buyer',
    'confirmed',
    'in-progress',
    'awaiting-review',
    'completed',
    'disputed',
    'declined',
    'cancelled',
    'refunded',
)


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing = set(insp.get_table_names())

    if 'users' not in existing:
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('email', sa.String(), nullable=False),
            sa.Column('password', sa.String(), nullable=False),
            sa.Column('first_name', sa.String(), nullable=False),
            sa.Column('last_name', sa.String(), nullable=False),
            sa.Column('user_type', sa.Enum('SERVICE_PROVIDER', 'CLIENT', name='usertype'), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=True),
            sa.Column('payout_account_id', sa.String(), nullable=True),
            sa.Column('refresh_token_hash', sa.String(), nullable=True),
            sa.Column('refresh_token_expires_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_users_id', 'users', ['id'])
        op.create_index('ix_users_email', 'users', ['email'], unique=True)

    if 'bookings' not in existing:
        op.create_table(
            'bookings',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('service_id', sa.String(), nullable=False),
            sa.Column('service_title', sa.String(), nullable=True),
            sa.Column('service_provider_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('client_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('hourly_rate', sa.Numeric(10, 2), nullable=False),
            sa.Column('estimated_hours', sa.Numeric(10, 2), nullable=False),
            sa.Column('total_estimate', sa.Numeric(10, 2), nullable=False),
            sa.Column('currency', sa.String(3), nullable=False, server_default='sgd'),
            sa.Column('preferred_start_date', sa.DateTime(), nullable=True),
            sa.Column('notes', sa.Text(), nullable=True),
            sa.Column('proposed_hours', sa.Numeric(10, 2), nullable=True),
            sa.Column('proposed_due_date', sa.DateTime(), nullable=True),
            sa.Column('proposed_total', sa.Numeric(10, 2), nullable=True),
            sa.Column('provider_notes', sa.Text(), nullable=True),
            sa.Column('status', sa.Enum(*BOOKING_STATUSES, name='bookingstatus'), nullable=False, server_default='pending'),
            sa.Column('payment_intent_id', sa.String(), nullable=True),
            sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('pending_transition', sa.String(), nullable=True),
            sa.Column('pending_since', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_bookings_id', 'bookings', ['id'])
        op.create_index('ix_bookings_service_id', 'bookings', ['service_id'])
        op.create_index('ix_bookings_service_provider_id', 'bookings', ['service_provider_id'])
        op.create_index('ix_bookings_client_id', 'bookings', ['client_id'])
        op.create_index('ix_bookings_status', 'bookings', ['status'])
        op.create_index('ix_bookings_payment_intent_id', 'bookings', ['payment_intent_id'], unique=True)

    if 'booking_actions' not in existing:
        op.create_table(
            'booking_actions',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
            sa.Column('actor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('target_status', sa.String(), nullable=False),
            sa.Column('fingerprint', sa.String(64), nullable=False),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_booking_actions_id', 'booking_actions', ['id'])
        op.create_index(
            'ix_booking_actions_lookup',
            'booking_actions',
            ['booking_id', 'actor_id', 'target_status', 'fingerprint'],
        )

    if 'reviews' not in existing:
        op.create_table(
            'reviews',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('service_id', sa.String(), nullable=False),
            sa.Column('transaction_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False),
            sa.Column('reviewer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('service_provider_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('rating', sa.Integer(), nullable=False),
            sa.Column('comment', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
            sa.UniqueConstraint('service_id', 'transaction_id', name='uq_reviews_service_transaction'),
        )
        op.create_index('ix_reviews_id', 'reviews', ['id'])
        op.create_index('ix_reviews_service_id', 'reviews', ['service_id'])
        op.create_index('ix_reviews_transaction_id', 'reviews', ['transaction_id'])
        op.create_index('ix_reviews_service_provider_id', 'reviews', ['service_provider_id'])

    if 'conversations' not in existing:
        op.create_table(
            'conversations',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('participant1_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('participant2_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('service_id', sa.String(), nullable=True),
            sa.Column('service_title', sa.String(), nullable=True),
            sa.Column('last_message', sa.Text(), nullable=True),
            sa.Column('last_message_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_conversations_id', 'conversations', ['id'])
        op.create_index('ix_conversations_participant1_id', 'conversations', ['participant1_id'])
        op.create_index('ix_conversations_participant2_id', 'conversations', ['participant2_id'])
        op.create_index('ix_conversations_service_id', 'conversations', ['service_id'])


def downgrade() -> None:
    op.drop_table('conversations')
    op.drop_table('reviews')
    op.drop_table('booking_actions')
    op.drop_table('bookings')
    op.drop_table('users')
    op.execute("DROP TYPE IF EXISTS bookingstatus")
    op.execute("DROP TYPE IF EXISTS usertype")
