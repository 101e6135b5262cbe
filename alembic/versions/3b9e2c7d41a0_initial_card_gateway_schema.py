"""Initial schema with tokenization_sessions, payment_cards, payments and webhook_events tables

Revision ID: 3b9e2c7d41a0
Revises:
Create Date: 2026-10-18 09:12:03.118240

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3b9e2c7d41a0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Create tokenization_sessions table
    op.create_table(
        'tokenization_sessions',
        sa.Column('session_id', sa.String(length=128), nullable=False, comment='tok_<hex> or provider-prefixed token'),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, comment='pending, completed or failed'),
        sa.Column('type', sa.String(length=16), nullable=False, comment='direct or redirect'),
        sa.Column('token_id', sa.String(length=64), nullable=True, comment='Card id, set only when completed'),
        sa.Column('set_as_default', sa.Boolean(), nullable=False),
        sa.Column('return_url', sa.Text(), nullable=True),
        sa.Column('finish_redirect_url', sa.Text(), nullable=True),
        sa.Column('alias', sa.String(length=128), nullable=True),
        sa.Column('provider_token', sa.String(length=255), nullable=True),
        sa.Column('customer_reference', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_attempt_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('claimed_until', sa.TIMESTAMP(timezone=True), nullable=True, comment='Lease of the in-flight completion'),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('error_code', sa.String(length=64), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, comment='Bumped by every completion claim'),
        sa.PrimaryKeyConstraint('session_id')
    )
    op.create_index(op.f('ix_tokenization_sessions_user_id'), 'tokenization_sessions', ['user_id'])

    # Create payment_cards table
    op.create_table(
        'payment_cards',
        sa.Column('card_id', sa.String(length=64), nullable=False, comment='card_<hex>'),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('payment_token', sa.String(length=255), nullable=False, comment='Provider-side reusable token'),
        sa.Column('card_last_four', sa.String(length=4), nullable=False),
        sa.Column('card_brand', sa.String(length=32), nullable=False),
        sa.Column('card_type', sa.String(length=16), nullable=False),
        sa.Column('card_holder_name', sa.String(length=255), nullable=True),
        sa.Column('alias', sa.String(length=128), nullable=True),
        sa.Column('expiration_month', sa.Integer(), nullable=True),
        sa.Column('expiration_year', sa.Integer(), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False),
        sa.Column('authorization_code', sa.String(length=64), nullable=True),
        sa.Column('token_expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('requires_cvv_for_payments', sa.Boolean(), nullable=False),
        sa.Column('customer_reference', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('card_id'),
        sa.UniqueConstraint(
            'user_id', 'provider', 'payment_token', 'card_last_four', 'card_brand',
            name='uq_payment_cards_identity'
        )
    )
    op.create_index('idx_payment_cards_user', 'payment_cards', ['user_id'])
    op.create_index('idx_payment_cards_payment_token', 'payment_cards', ['payment_token'])

    # Create payments table
    op.create_table(
        'payments',
        sa.Column('payment_id', sa.String(length=64), nullable=False, comment='pay_<hex>'),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('professional_id', sa.String(length=128), nullable=False),
        sa.Column('service_request_id', sa.String(length=128), nullable=False),
        sa.Column('amount', sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('card_id', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, comment='processing, completed, failed or refunded'),
        sa.Column('transaction_id', sa.String(length=255), nullable=True),
        sa.Column('provider_payment_id', sa.String(length=255), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('refund_metadata', sa.JSON(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('refunded_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('refund_claimed_until', sa.TIMESTAMP(timezone=True), nullable=True, comment='Lease of the in-flight refund'),
        sa.PrimaryKeyConstraint('payment_id')
    )
    op.create_index(op.f('ix_payments_user_id'), 'payments', ['user_id'])
    op.create_index(op.f('ix_payments_professional_id'), 'payments', ['professional_id'])
    op.create_index('idx_payments_provider_transaction', 'payments', ['provider', 'transaction_id'])

    # Create webhook_events table
    op.create_table(
        'webhook_events',
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False, comment='Provider event id used for deduplication'),
        sa.Column('event_type', sa.String(length=128), nullable=True),
        sa.Column('received_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('provider', 'event_id')
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('webhook_events')
    op.drop_index('idx_payments_provider_transaction', table_name='payments')
    op.drop_index(op.f('ix_payments_professional_id'), table_name='payments')
    op.drop_index(op.f('ix_payments_user_id'), table_name='payments')
    op.drop_table('payments')
    op.drop_index('idx_payment_cards_payment_token', table_name='payment_cards')
    op.drop_index('idx_payment_cards_user', table_name='payment_cards')
    op.drop_table('payment_cards')
    op.drop_index(op.f('ix_tokenization_sessions_user_id'), table_name='tokenization_sessions')
    op.drop_table('tokenization_sessions')
