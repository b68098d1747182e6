"""Mixer orders table.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'mixer_orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.String(64), nullable=False),
        sa.Column('token_mint', sa.String(64), nullable=False),
        # Base units as decimal text (u64 does not fit BIGINT)
        sa.Column('amount', sa.String(40), nullable=False),
        sa.Column('sender_address', sa.String(64), nullable=False),
        sa.Column('recipient_address', sa.String(64), nullable=False),
        sa.Column('deposit_address', sa.String(64), nullable=False),
        sa.Column('deposit_secret_encrypted', sa.Text(), nullable=True),
        sa.Column('key_id', sa.String(32), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('deposited_amount', sa.String(40), nullable=True),
        sa.Column('deposited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deposit_tx_signature', sa.String(128), nullable=True),
        sa.Column('payout_scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payout_executed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payout_tx_signature', sa.String(128), nullable=True),
        sa.Column('payout_submitted_signature', sa.String(128), nullable=True),
        sa.Column('payout_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payout_next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payout_lease_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payout_lease_owner', sa.String(32), nullable=True),
        sa.Column('payout_last_error', sa.Text(), nullable=True),
        sa.Column('payout_failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('session_id', sa.String(255), nullable=True),
        sa.Column('wallet_address', sa.String(64), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_mixer_orders_order_id', 'mixer_orders', ['order_id'], unique=True)
    op.create_index('ix_mixer_orders_deposit_address', 'mixer_orders', ['deposit_address'], unique=True)
    op.create_index('ix_mixer_orders_payout_tx_signature', 'mixer_orders', ['payout_tx_signature'])
    op.create_index('ix_mixer_orders_session_id', 'mixer_orders', ['session_id'])
    op.create_index('ix_mixer_orders_wallet_address', 'mixer_orders', ['wallet_address'])
    op.create_index('ix_mixer_orders_status_expires', 'mixer_orders', ['status', 'expires_at'])
    op.create_index('ix_mixer_orders_status_payout', 'mixer_orders', ['status', 'payout_scheduled_at'])


def downgrade() -> None:
    op.drop_index('ix_mixer_orders_status_payout', table_name='mixer_orders')
    op.drop_index('ix_mixer_orders_status_expires', table_name='mixer_orders')
    op.drop_index('ix_mixer_orders_wallet_address', table_name='mixer_orders')
    op.drop_index('ix_mixer_orders_session_id', table_name='mixer_orders')
    op.drop_index('ix_mixer_orders_payout_tx_signature', table_name='mixer_orders')
    op.drop_index('ix_mixer_orders_deposit_address', table_name='mixer_orders')
    op.drop_index('ix_mixer_orders_order_id', table_name='mixer_orders')
    op.drop_table('mixer_orders')
