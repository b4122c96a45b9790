"""initial rental schema

Revision ID: 5c1e7a9b2d40
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the complete rental booking schema:
- stores: booking configuration (tax, rules, delivery, payment mode)
- products / pricing_tiers / product_rates / product_units: catalog and stock
- customers: store-scoped, unique by email
- reservations / reservation_items / reservation_item_units: bookings
- reservation_activities: append-only audit trail
- payments: per-reservation ledger
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c1e7a9b2d40'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade():
    # ============================================================================
    # stores
    # ============================================================================
    op.create_table(
        'stores',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('slug', sa.String(length=120), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('timezone', sa.String(length=64), nullable=False, server_default='UTC'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='EUR'),
        sa.Column('tax_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('tax_rate_bps', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_display_mode', sa.String(length=16), nullable=False, server_default='inclusive'),
        sa.Column('pending_blocks_availability', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('advance_notice_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('min_rental_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_rental_minutes', sa.Integer(), nullable=True),
        sa.Column('business_hours', sa.JSON(), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('delivery_settings', sa.JSON(), nullable=True),
        sa.Column('reservation_mode', sa.String(length=16), nullable=False, server_default='request'),
        sa.Column('online_payment_percent', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('payment_account_id', sa.String(length=128), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug', name='uq_stores_slug'),
        sqlite_autoincrement=True
    )

    # ============================================================================
    # catalog
    # ============================================================================
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('images', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('base_price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deposit_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pricing_mode', sa.String(length=8), nullable=False, server_default='day'),
        sa.Column('base_period_minutes', sa.Integer(), nullable=True),
        sa.Column('enforce_strict_tiers', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('track_units', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('booking_attribute_axes', sa.JSON(), nullable=True),
        sa.Column('tax_inherit_from_store', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('tax_rate_bps', sa.Integer(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_store_id', 'products', ['store_id'])
    op.create_index('ix_products_store_active', 'products', ['store_id', 'is_active'])

    op.create_table(
        'pricing_tiers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('min_duration', sa.Integer(), nullable=False),
        sa.Column('discount_percent', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('display_order', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id', 'min_duration', name='uq_pricing_tiers_product_duration'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_pricing_tiers_product_id', 'pricing_tiers', ['product_id'])

    op.create_table(
        'product_rates',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('period_minutes', sa.Integer(), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('display_order', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_product_rates_product_id', 'product_rates', ['product_id'])

    op.create_table(
        'product_units',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('identifier', sa.String(length=128), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='available'),
        sa.Column('attributes', sa.JSON(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id', 'identifier', name='uq_product_units_product_identifier'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_product_units_product_id', 'product_units', ['product_id'])
    op.create_index('ix_product_units_status', 'product_units', ['status'])

    # ============================================================================
    # customers
    # ============================================================================
    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('first_name', sa.String(length=120), nullable=False),
        sa.Column('last_name', sa.String(length=120), nullable=False),
        sa.Column('customer_type', sa.String(length=16), nullable=False, server_default='individual'),
        sa.Column('company_name', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=64), nullable=True),
        sa.Column('address', sa.String(length=255), nullable=True),
        sa.Column('city', sa.String(length=120), nullable=True),
        sa.Column('postal_code', sa.String(length=32), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'email', name='uq_customers_store_email'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_customers_store_id', 'customers', ['store_id'])

    # ============================================================================
    # reservations
    # ============================================================================
    op.create_table(
        'reservations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('number', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('source', sa.String(length=16), nullable=False, server_default='online'),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deposit_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('delivery_fee_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_rate_bps', sa.Integer(), nullable=True),
        sa.Column('subtotal_excl_tax_cents', sa.Integer(), nullable=True),
        sa.Column('tax_cents', sa.Integer(), nullable=True),
        sa.Column('deposit_status', sa.String(length=16), nullable=False, server_default='none'),
        sa.Column('provider_customer_id', sa.String(length=128), nullable=True),
        sa.Column('provider_payment_method_id', sa.String(length=128), nullable=True),
        sa.Column('deposit_payment_intent_id', sa.String(length=128), nullable=True),
        sa.Column('deposit_authorization_expires_at', sa.DateTime(), nullable=True),
        sa.Column('delivery_option', sa.String(length=16), nullable=False, server_default='pickup'),
        sa.Column('delivery_address', sa.String(length=255), nullable=True),
        sa.Column('delivery_city', sa.String(length=120), nullable=True),
        sa.Column('delivery_postal_code', sa.String(length=32), nullable=True),
        sa.Column('delivery_country', sa.String(length=64), nullable=True),
        sa.Column('delivery_latitude', sa.Float(), nullable=True),
        sa.Column('delivery_longitude', sa.Float(), nullable=True),
        sa.Column('delivery_distance_km', sa.Numeric(10, 2), nullable=True),
        sa.Column('customer_notes', sa.Text(), nullable=True),
        sa.Column('internal_notes', sa.Text(), nullable=True),
        sa.Column('rejection_reason', sa.String(length=255), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=255), nullable=True),
        sa.Column('picked_up_at', sa.DateTime(), nullable=True),
        sa.Column('returned_at', sa.DateTime(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id']),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'number', name='uq_reservations_store_number'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_reservations_store_id', 'reservations', ['store_id'])
    op.create_index('ix_reservations_customer_id', 'reservations', ['customer_id'])
    op.create_index('ix_reservations_status', 'reservations', ['status'])
    op.create_index('ix_reservations_deposit_status', 'reservations', ['deposit_status'])
    op.create_index(
        'ix_reservations_store_status_window',
        'reservations',
        ['store_id', 'status', 'start_date', 'end_date'],
    )

    op.create_table(
        'reservation_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('reservation_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('is_custom_item', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('deposit_per_unit_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_price_cents', sa.Integer(), nullable=False),
        sa.Column('product_snapshot', sa.JSON(), nullable=False),
        sa.Column('pricing_breakdown', sa.JSON(), nullable=True),
        sa.Column('combination_key', sa.String(length=255), nullable=True),
        sa.Column('selected_attributes', sa.JSON(), nullable=True),
        sa.Column('combination_allocation', sa.JSON(), nullable=True),
        sa.Column('tax_rate_bps', sa.Integer(), nullable=True),
        sa.Column('tax_cents', sa.Integer(), nullable=True),
        sa.Column('price_excl_tax_cents', sa.Integer(), nullable=True),
        sa.Column('total_excl_tax_cents', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['reservation_id'], ['reservations.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_reservation_items_reservation_id', 'reservation_items', ['reservation_id'])
    op.create_index('ix_reservation_items_product_id', 'reservation_items', ['product_id'])

    op.create_table(
        'reservation_item_units',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('reservation_item_id', sa.Integer(), nullable=False),
        sa.Column('product_unit_id', sa.Integer(), nullable=False),
        sa.Column('identifier_snapshot', sa.String(length=128), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['reservation_item_id'], ['reservation_items.id']),
        sa.ForeignKeyConstraint(['product_unit_id'], ['product_units.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reservation_item_id', 'product_unit_id', name='uq_item_units_item_unit'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_reservation_item_units_reservation_item_id', 'reservation_item_units', ['reservation_item_id'])
    op.create_index('ix_reservation_item_units_product_unit_id', 'reservation_item_units', ['product_unit_id'])

    # ============================================================================
    # reservation_activities: append-only audit trail
    # ============================================================================
    op.create_table(
        'reservation_activities',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('reservation_id', sa.Integer(), nullable=False),
        sa.Column('activity_type', sa.String(length=32), nullable=False),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['reservation_id'], ['reservations.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_reservation_activities_reservation_id', 'reservation_activities', ['reservation_id'])
    op.create_index('ix_reservation_activities_activity_type', 'reservation_activities', ['activity_type'])
    op.create_index(
        'ix_reservation_activities_reservation_created',
        'reservation_activities',
        ['reservation_id', 'created_at'],
    )

    # ============================================================================
    # payments
    # ============================================================================
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('reservation_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('method', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='completed'),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='EUR'),
        sa.Column('captured_amount_cents', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('provider_payment_intent_id', sa.String(length=128), nullable=True),
        sa.Column('provider_charge_id', sa.String(length=128), nullable=True),
        sa.Column('provider_refund_id', sa.String(length=128), nullable=True),
        sa.Column('provider_checkout_session_id', sa.String(length=128), nullable=True),
        sa.Column('refunded_payment_id', sa.Integer(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('created_by_actor_id', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['reservation_id'], ['reservations.id']),
        sa.ForeignKeyConstraint(['refunded_payment_id'], ['payments.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_payments_reservation_id', 'payments', ['reservation_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_provider_payment_intent_id', 'payments', ['provider_payment_intent_id'])
    op.create_index('ix_payments_reservation_type_status', 'payments', ['reservation_id', 'type', 'status'])


def downgrade():
    """Drop all tables (destructive operation)."""
    op.drop_table('payments')
    op.drop_table('reservation_activities')
    op.drop_table('reservation_item_units')
    op.drop_table('reservation_items')
    op.drop_table('reservations')
    op.drop_table('customers')
    op.drop_table('product_units')
    op.drop_table('product_rates')
    op.drop_table('pricing_tiers')
    op.drop_table('products')
    op.drop_table('stores')
