"""Create launchpad tables

Revision ID: create_launchpad_tables
Revises:
Create Date: 2026-10-19

This migration adds:
- collections / supply_items: fixed supply per collection
- mint_phase_whitelists / whitelist_entries: per-wallet allocations
- mint_phases: time-boxed minting windows
- mint_attempts: commit/reveal lifecycle of each mint
- stuck_transactions: stalled broadcasts and their resolution
- mint_activity_log: append-only audit trail
- credit_balances / credit_transactions: optional mint credits
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'create_launchpad_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Collections table
    op.create_table(
        'collections',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('creator_wallet', sa.String(100), nullable=True, index=True),
        sa.Column('total_supply', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cap_supply', sa.Integer(), nullable=True),
        sa.Column('is_locked', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('launch_status', sa.String(20), nullable=False, server_default='draft', index=True),
        sa.Column('claim_version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('mint_ended_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    # Supply items table
    op.create_table(
        'supply_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('collection_id', sa.Integer(), sa.ForeignKey('collections.id'), nullable=False, index=True),
        sa.Column('item_number', sa.Integer(), nullable=False),
        sa.Column('is_minted', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('inscription_id', sa.String(100), nullable=True),
        sa.Column('minter_address', sa.String(100), nullable=True),
        sa.Column('mint_tx_id', sa.String(64), nullable=True),
        sa.Column('minted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('collection_id', 'item_number', name='uq_supply_items_collection_number'),
    )
    op.create_index('ix_supply_items_collection_minted', 'supply_items', ['collection_id', 'is_minted'])

    # Whitelists
    op.create_table(
        'mint_phase_whitelists',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('collection_id', sa.Integer(), sa.ForeignKey('collections.id'), nullable=False, index=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        'whitelist_entries',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('whitelist_id', sa.Integer(), sa.ForeignKey('mint_phase_whitelists.id'), nullable=False, index=True),
        sa.Column('wallet_address', sa.String(100), nullable=False, index=True),
        sa.Column('allocation', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('minted_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('added_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('whitelist_id', 'wallet_address', name='uq_whitelist_entries_wallet'),
    )

    # Mint phases table
    op.create_table(
        'mint_phases',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('collection_id', sa.Integer(), sa.ForeignKey('collections.id'), nullable=False, index=True),
        sa.Column('phase_name', sa.String(100), nullable=False),
        sa.Column('phase_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='false', index=True),
        sa.Column('is_completed', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('mint_price_sats', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('max_per_wallet', sa.Integer(), nullable=True),
        sa.Column('phase_allocation', sa.Integer(), nullable=True),
        sa.Column('whitelist_only', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('whitelist_id', sa.Integer(), sa.ForeignKey('mint_phase_whitelists.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    # Mint attempts table
    op.create_table(
        'mint_attempts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('collection_id', sa.Integer(), sa.ForeignKey('collections.id'), nullable=False, index=True),
        sa.Column('phase_id', sa.Integer(), sa.ForeignKey('mint_phases.id'), nullable=True, index=True),
        sa.Column('supply_item_id', sa.Integer(), sa.ForeignKey('supply_items.id'), nullable=True, index=True),
        sa.Column('minter_wallet', sa.String(100), nullable=False, index=True),
        sa.Column('receiving_wallet', sa.String(100), nullable=True),
        sa.Column('status', sa.String(30), nullable=False, server_default='pending', index=True),
        sa.Column('is_test_mint', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('mint_price_sats', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('credits_charged', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('commit_tx_id', sa.String(64), nullable=True, index=True),
        sa.Column('reveal_tx_id', sa.String(64), nullable=True, index=True),
        sa.Column('commit_broadcast_at', sa.DateTime(), nullable=True),
        sa.Column('reveal_broadcast_at', sa.DateTime(), nullable=True),
        sa.Column('commit_confirmations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reveal_confirmations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('commit_confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('reveal_confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('last_checked_at', sa.DateTime(), nullable=True),
        sa.Column('inscription_id', sa.String(100), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('stuck_since', sa.DateTime(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_retry_at', sa.DateTime(), nullable=True),
        sa.Column('flagged_for_review', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('refund_tx_id', sa.String(64), nullable=True),
        sa.Column('refund_amount_sats', sa.BigInteger(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index(
        'ix_mint_attempts_wallet_phase', 'mint_attempts', ['minter_wallet', 'collection_id', 'phase_id']
    )

    # Stuck transactions table
    op.create_table(
        'stuck_transactions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('mint_attempt_id', sa.Integer(), sa.ForeignKey('mint_attempts.id'), nullable=False, index=True),
        sa.Column('tx_type', sa.String(10), nullable=False),
        sa.Column('tx_id', sa.String(64), nullable=False),
        sa.Column('stuck_since', sa.DateTime(), nullable=False),
        sa.Column('stuck_duration_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_fee_rate', sa.Float(), nullable=True),
        sa.Column('recommended_fee_rate', sa.Float(), nullable=True),
        sa.Column('resolution_status', sa.String(20), nullable=False, server_default='detected', index=True),
        sa.Column('resolution_action', sa.String(50), nullable=True),
        sa.Column('resolution_tx_id', sa.String(64), nullable=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
        sa.Column('resolved_by', sa.String(100), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    # Activity log table
    op.create_table(
        'mint_activity_log',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('mint_attempt_id', sa.Integer(), sa.ForeignKey('mint_attempts.id'), nullable=True, index=True),
        sa.Column('collection_id', sa.Integer(), sa.ForeignKey('collections.id'), nullable=True, index=True),
        sa.Column('actor_wallet', sa.String(100), nullable=True),
        sa.Column('actor_type', sa.String(20), nullable=False),
        sa.Column('action_type', sa.String(50), nullable=False, index=True),
        sa.Column('previous_status', sa.String(30), nullable=True),
        sa.Column('new_status', sa.String(30), nullable=True),
        sa.Column('action_data', sa.JSON(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), index=True),
    )

    # Credits
    op.create_table(
        'credit_balances',
        sa.Column('wallet_address', sa.String(100), primary_key=True),
        sa.Column('credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('wallet_address', sa.String(100), nullable=False, index=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('transaction_type', sa.String(20), nullable=False),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )


def downgrade() -> None:
    # Drop tables in reverse order (due to foreign key constraints)
    op.drop_table('credit_transactions')
    op.drop_table('credit_balances')
    op.drop_table('mint_activity_log')
    op.drop_table('stuck_transactions')
    op.drop_index('ix_mint_attempts_wallet_phase', 'mint_attempts')
    op.drop_table('mint_attempts')
    op.drop_table('mint_phases')
    op.drop_table('whitelist_entries')
    op.drop_table('mint_phase_whitelists')
    op.drop_index('ix_supply_items_collection_minted', 'supply_items')
    op.drop_table('supply_items')
    op.drop_table('collections')
