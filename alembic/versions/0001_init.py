"""create order tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'addresses',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False, index=True),
        sa.Column('full_name', sa.String(200), nullable=False),
        sa.Column('address_line1', sa.String(255), nullable=False),
        sa.Column('address_line2', sa.String(255), nullable=True),
        sa.Column('city', sa.String(100), nullable=False),
        sa.Column('state', sa.String(100), nullable=False),
        sa.Column('postal_code', sa.String(20), nullable=False),
        sa.Column('country', sa.String(2), nullable=False),
        sa.Column('phone', sa.String(50), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('order_number', sa.String(50), nullable=False, unique=True, index=True),
        sa.Column('user_id', sa.String(64), nullable=False, index=True),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('payment_status', sa.String(30), nullable=False),
        sa.Column('fulfillment_status', sa.String(30), nullable=False),
        sa.Column('subtotal_cents', sa.Integer, nullable=False),
        sa.Column('tax_cents', sa.Integer, nullable=False),
        sa.Column('shipping_cents', sa.Integer, nullable=False),
        sa.Column('discount_cents', sa.Integer, nullable=False),
        sa.Column('total_cents', sa.Integer, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('payment_method', sa.String(30), nullable=False),
        sa.Column('payment_provider', sa.String(50), nullable=True),
        sa.Column('transaction_id', sa.String(100), nullable=True, index=True),
        sa.Column('authorization_code', sa.String(50), nullable=True),
        sa.Column('receipt_number', sa.String(150), nullable=True),
        sa.Column('card_last4', sa.String(4), nullable=True),
        sa.Column('checkout_key', sa.String(100), nullable=True),
        sa.Column('shipping_address_id', sa.String(32), sa.ForeignKey('addresses.id'), nullable=False),
        sa.Column('billing_address_id', sa.String(32), sa.ForeignKey('addresses.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shipped_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer, nullable=False),
        sa.UniqueConstraint('user_id', 'checkout_key', name='uq_orders_user_checkout_key'),
    )
    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.String(32), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('product_name_snapshot', sa.String(200), nullable=True),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('unit_price_cents', sa.Integer, nullable=False),
    )
    op.create_table(
        'order_timeline_entries',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.String(32), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('metadata', sa.JSON, nullable=True),
        sa.Column('author', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

def downgrade():
    op.drop_table('order_timeline_entries')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('addresses')
