"""initial order engine schema

Revision ID: k1a2b3c4d5e6
Revises:
Create Date: 2026-10-17 00:00:00.000000

Creates the storefront order engine schema:
- users / roles / user_roles: identities mirrored from the auth provider
- addresses: delivery destinations
- coupons / coupon_usage: discount codes and append-only redemptions
- loyalty_settings / loyalty_accounts / loyalty_transactions: points program
- wallets / wallet_transactions: prepaid balance and its ledger
- orders / order_items / order_notes / order_status_history: order documents
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'k1a2b3c4d5e6'
down_revision = None
branch_labels = None
depends_on = None


def _created_at():
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                     server_default=sa.text('CURRENT_TIMESTAMP'))


def _updated_at():
    return sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                     server_default=sa.text('CURRENT_TIMESTAMP'))


def upgrade():
    """
    Create all tables from scratch.

    Balances (wallets.balance_cents, loyalty_accounts.total_points,
    coupons.used_count) are projections of their append-only ledgers and are
    guarded by CHECK constraints so a bad write fails at the database too.
    """

    # ============================================================================
    # identities
    # ============================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username', name='uq_users_username'),
        sa.UniqueConstraint('email', name='uq_users_email'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_users_username', 'users', ['username'])

    op.create_table(
        'roles',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=32), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'user_roles',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('role_id', sa.Integer(), nullable=False),
        sa.Column('granted_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['role_id'], ['roles.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'role_id', name='uq_user_roles_user_role'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_user_roles_user_id', 'user_roles', ['user_id'])
    op.create_index('ix_user_roles_role_id', 'user_roles', ['role_id'])

    op.create_table(
        'addresses',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('label', sa.String(length=64), nullable=False),
        sa.Column('address', sa.Text(), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_addresses_user_id', 'addresses', ['user_id'])

    # ============================================================================
    # coupons
    # ============================================================================
    op.create_table(
        'coupons',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('discount_type', sa.String(length=16), nullable=False),
        sa.Column('discount_value', sa.Integer(), nullable=False),
        sa.Column('min_order_cents', sa.Integer(), nullable=True),
        sa.Column('max_discount_cents', sa.Integer(), nullable=True),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('per_user_limit', sa.Integer(), nullable=True),
        sa.Column('used_count', sa.Integer(), nullable=False),
        sa.Column('valid_from', sa.DateTime(timezone=True), nullable=True),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        _created_at(),
        _updated_at(),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_coupons_code'),
        sa.CheckConstraint('used_count >= 0', name='ck_coupons_used_count_nonneg'),
        sa.CheckConstraint('usage_limit IS NULL OR used_count <= usage_limit',
                           name='ck_coupons_usage_within_limit'),
        sa.CheckConstraint('discount_value >= 0', name='ck_coupons_discount_value_nonneg'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_coupons_code', 'coupons', ['code'])
    op.create_index('ix_coupons_is_active', 'coupons', ['is_active'])

    # ============================================================================
    # loyalty
    # ============================================================================
    op.create_table(
        'loyalty_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('point_value_cents', sa.Integer(), nullable=False),
        sa.Column('min_redeem_points', sa.Integer(), nullable=False),
        sa.Column('max_redeem_bps', sa.Integer(), nullable=False),
        sa.Column('points_per_rupee_bps', sa.Integer(), nullable=False),
        sa.Column('currency_per_point_cents', sa.Integer(), nullable=False),
        sa.Column('min_points_to_convert', sa.Integer(), nullable=False),
        sa.Column('return_window_minutes', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        _updated_at(),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'loyalty_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('total_points', sa.Integer(), nullable=False),
        sa.Column('lifetime_earned', sa.Integer(), nullable=False),
        sa.Column('lifetime_spent', sa.Integer(), nullable=False),
        sa.Column('tier', sa.String(length=16), nullable=False),
        _created_at(),
        _updated_at(),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', name='uq_loyalty_accounts_user'),
        sa.CheckConstraint('total_points >= 0', name='ck_loyalty_total_nonneg'),
        sa.CheckConstraint('total_points = lifetime_earned - lifetime_spent',
                           name='ck_loyalty_total_matches_lifetime'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_loyalty_accounts_user_id', 'loyalty_accounts', ['user_id'])

    # ============================================================================
    # wallets
    # ============================================================================
    op.create_table(
        'wallets',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('balance_cents', sa.Integer(), nullable=False),
        _created_at(),
        _updated_at(),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', name='uq_wallets_user'),
        sa.CheckConstraint('balance_cents >= 0', name='ck_wallets_balance_nonneg'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_wallets_user_id', 'wallets', ['user_id'])

    # ============================================================================
    # orders
    # ============================================================================
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('address_id', sa.Integer(), nullable=False),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False),
        sa.Column('delivery_fee_cents', sa.Integer(), nullable=False),
        sa.Column('coupon_id', sa.Integer(), nullable=True),
        sa.Column('coupon_discount_cents', sa.Integer(), nullable=False),
        sa.Column('points_used', sa.Integer(), nullable=False),
        sa.Column('points_discount_cents', sa.Integer(), nullable=False),
        sa.Column('total_price_cents', sa.Integer(), nullable=False),
        sa.Column('wallet_payment_cents', sa.Integer(), nullable=False),
        sa.Column('amount_due_cents', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(length=16), nullable=False),
        sa.Column('payment_status', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.Column('scheduled_delivery', sa.DateTime(timezone=True), nullable=True),
        sa.Column('assigned_delivery_boy', sa.Integer(), nullable=True),
        sa.Column('delivery_accepted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivery_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('points_earned', sa.Integer(), nullable=True),
        sa.Column('can_return_until', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['address_id'], ['addresses.id']),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id']),
        sa.ForeignKeyConstraint(['assigned_delivery_boy'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('total_price_cents >= 0', name='ck_orders_total_nonneg'),
        sa.CheckConstraint('wallet_payment_cents <= total_price_cents',
                           name='ck_orders_wallet_within_total'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_coupon_id', 'orders', ['coupon_id'])
    op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_assigned_delivery_boy', 'orders', ['assigned_delivery_boy'])
    op.create_index('ix_orders_user_created', 'orders', ['user_id', 'created_at'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('variant_id', sa.Integer(), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('line_total_cents', sa.Integer(), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('quantity >= 1', name='ck_order_items_quantity_positive'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'order_notes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('user_note', sa.Text(), nullable=True),
        sa.Column('admin_reply', sa.Text(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', name='uq_order_notes_order'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'order_status_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('changed_by', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['changed_by'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_status_history_order_id', 'order_status_history', ['order_id'])
    op.create_index('ix_order_status_history_order_created', 'order_status_history',
                    ['order_id', 'created_at'])

    # ============================================================================
    # append-only ledgers that reference orders
    # ============================================================================
    op.create_table(
        'coupon_usage',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('coupon_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('discount_cents', sa.Integer(), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', name='uq_coupon_usage_order'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_coupon_usage_coupon_id', 'coupon_usage', ['coupon_id'])
    op.create_index('ix_coupon_usage_user_id', 'coupon_usage', ['user_id'])
    op.create_index('ix_coupon_usage_coupon_user', 'coupon_usage', ['coupon_id', 'user_id'])

    op.create_table(
        'loyalty_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('points', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['account_id'], ['loyalty_accounts.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('points <> 0', name='ck_loyalty_txn_points_nonzero'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_loyalty_transactions_user_id', 'loyalty_transactions', ['user_id'])
    op.create_index('ix_loyalty_transactions_account_id', 'loyalty_transactions', ['account_id'])
    op.create_index('ix_loyalty_transactions_type', 'loyalty_transactions', ['type'])
    op.create_index('ix_loyalty_transactions_order_id', 'loyalty_transactions', ['order_id'])
    op.create_index('ix_loyalty_transactions_created_at', 'loyalty_transactions', ['created_at'])
    op.create_index('ix_loyalty_txns_user_created', 'loyalty_transactions', ['user_id', 'created_at'])

    op.create_table(
        'wallet_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('wallet_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=8), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('reference_type', sa.String(length=32), nullable=True),
        sa.Column('reference_id', sa.String(length=64), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['wallet_id'], ['wallets.id']),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('amount_cents > 0', name='ck_wallet_txn_amount_positive'),
        sa.CheckConstraint("type IN ('credit', 'debit')", name='ck_wallet_txn_type'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_wallet_transactions_user_id', 'wallet_transactions', ['user_id'])
    op.create_index('ix_wallet_transactions_wallet_id', 'wallet_transactions', ['wallet_id'])
    op.create_index('ix_wallet_transactions_reference_type', 'wallet_transactions', ['reference_type'])
    op.create_index('ix_wallet_transactions_created_at', 'wallet_transactions', ['created_at'])
    op.create_index('ix_wallet_txns_wallet_created', 'wallet_transactions', ['wallet_id', 'created_at'])


def downgrade():
    """Drop all tables (destructive operation)."""
    op.drop_table('wallet_transactions')
    op.drop_table('loyalty_transactions')
    op.drop_table('coupon_usage')
    op.drop_table('order_status_history')
    op.drop_table('order_notes')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('wallets')
    op.drop_table('loyalty_accounts')
    op.drop_table('loyalty_settings')
    op.drop_table('coupons')
    op.drop_table('addresses')
    op.drop_table('user_roles')
    op.drop_table('roles')
    op.drop_table('users')
