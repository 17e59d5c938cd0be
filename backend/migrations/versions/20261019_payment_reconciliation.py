"""Payment reconciliation: orders, attempts, webhook events, inventory ledger

Revision ID: 20261019_payment_recon
Revises:
Create Date: 2026-10-19

This migration adds:
1. orders (payment status, restock marker, restock lease)
2. payment_attempts (one row per provider attempt, janitor lease)
3. payment_webhook_events (append-only event store, claim lease)
4. products and inventory_moves (reserve/release ledger)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_payment_recon'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. ORDERS TABLE
    # ==========================================================================
    op.create_table('orders',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='UAH'),
        sa.Column('total_amount_minor', sa.Integer(), nullable=False),
        sa.Column('payment_provider', sa.String(length=16), nullable=False, server_default='monobank'),
        sa.Column('payment_status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='CREATED'),
        sa.Column('inventory_status', sa.String(length=20), nullable=False, server_default='none'),
        sa.Column('psp_charge_id', sa.String(length=128), nullable=True),
        sa.Column('psp_status_reason', sa.String(length=64), nullable=True),
        sa.Column('psp_metadata', sa.JSON(), nullable=True),
        sa.Column('failure_code', sa.String(length=64), nullable=True),
        sa.Column('failure_message', sa.String(length=500), nullable=True),
        sa.Column('stock_restored', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('restocked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sweep_claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sweep_claim_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sweep_claimed_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_orders_payment_status'), ['payment_status'], unique=False)
        batch_op.create_index(batch_op.f('ix_orders_status'), ['status'], unique=False)
        batch_op.create_index('ix_orders_provider_payment_status', ['payment_provider', 'payment_status'], unique=False)

    # ==========================================================================
    # 2. PAYMENT ATTEMPTS TABLE
    # ==========================================================================
    op.create_table('payment_attempts',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('order_id', sa.String(length=36), nullable=False),
        sa.Column('provider', sa.String(length=16), nullable=False, server_default='monobank'),
        sa.Column('attempt_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='creating'),
        sa.Column('expected_amount_minor', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('idempotency_key', sa.String(length=128), nullable=False),
        sa.Column('provider_payment_intent_id', sa.String(length=128), nullable=True),
        sa.Column('provider_modified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error_code', sa.String(length=64), nullable=True),
        sa.Column('last_error_message', sa.String(length=500), nullable=True),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('janitor_claimed_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('janitor_claimed_by', sa.String(length=64), nullable=True),
        sa.Column('attempt_metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key'),
        sa.UniqueConstraint('order_id', 'provider', 'attempt_number', name='uq_payment_attempts_order_provider_num')
    )
    with op.batch_alter_table('payment_attempts', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payment_attempts_order_id'), ['order_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_attempts_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_attempts_provider_payment_intent_id'), ['provider_payment_intent_id'], unique=False)
        batch_op.create_index('ix_payment_attempts_provider_status_updated', ['provider', 'status', 'updated_at'], unique=False)

    # ==========================================================================
    # 3. WEBHOOK EVENTS TABLE
    # ==========================================================================
    op.create_table('payment_webhook_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('provider', sa.String(length=16), nullable=False, server_default='monobank'),
        sa.Column('event_key', sa.String(length=160), nullable=False),
        sa.Column('raw_sha256', sa.String(length=64), nullable=False),
        sa.Column('invoice_id', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('ccy', sa.Integer(), nullable=True),
        sa.Column('reference', sa.String(length=128), nullable=True),
        sa.Column('raw_payload', sa.JSON(), nullable=True),
        sa.Column('normalized_payload', sa.JSON(), nullable=True),
        sa.Column('provider_modified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('applied_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('applied_result', sa.String(length=32), nullable=True),
        sa.Column('applied_error_code', sa.String(length=64), nullable=True),
        sa.Column('applied_error_message', sa.String(length=500), nullable=True),
        sa.Column('attempt_id', sa.String(length=36), nullable=True),
        sa.Column('order_id', sa.String(length=36), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claim_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claimed_by', sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_key'),
        sa.UniqueConstraint('raw_sha256')
    )
    with op.batch_alter_table('payment_webhook_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payment_webhook_events_invoice_id'), ['invoice_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_webhook_events_attempt_id'), ['attempt_id'], unique=False)
        batch_op.create_index('ix_webhook_events_pending', ['applied_at', 'claim_expires_at'], unique=False)
        batch_op.create_index('ix_webhook_events_order_received', ['order_id', 'received_at'], unique=False)

    # ==========================================================================
    # 4. PRODUCTS AND INVENTORY MOVES
    # ==========================================================================
    op.create_table('products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sku'),
        sqlite_autoincrement=True
    )

    op.create_table('inventory_moves',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('move_key', sa.String(length=128), nullable=False),
        sa.Column('order_id', sa.String(length=36), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('move_key'),
        sa.UniqueConstraint('order_id', 'product_id', 'type', name='uq_inventory_moves_order_product_type'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('inventory_moves', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_inventory_moves_order_id'), ['order_id'], unique=False)


def downgrade():
    with op.batch_alter_table('inventory_moves', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_inventory_moves_order_id'))
    op.drop_table('inventory_moves')
    op.drop_table('products')

    with op.batch_alter_table('payment_webhook_events', schema=None) as batch_op:
        batch_op.drop_index('ix_webhook_events_order_received')
        batch_op.drop_index('ix_webhook_events_pending')
        batch_op.drop_index(batch_op.f('ix_payment_webhook_events_attempt_id'))
        batch_op.drop_index(batch_op.f('ix_payment_webhook_events_invoice_id'))
    op.drop_table('payment_webhook_events')

    with op.batch_alter_table('payment_attempts', schema=None) as batch_op:
        batch_op.drop_index('ix_payment_attempts_provider_status_updated')
        batch_op.drop_index(batch_op.f('ix_payment_attempts_provider_payment_intent_id'))
        batch_op.drop_index(batch_op.f('ix_payment_attempts_status'))
        batch_op.drop_index(batch_op.f('ix_payment_attempts_order_id'))
    op.drop_table('payment_attempts')

    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.drop_index('ix_orders_provider_payment_status')
        batch_op.drop_index(batch_op.f('ix_orders_status'))
        batch_op.drop_index(batch_op.f('ix_orders_payment_status'))
    op.drop_table('orders')
