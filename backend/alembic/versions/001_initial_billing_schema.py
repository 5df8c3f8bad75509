"""Initial billing schema: users, tiers, discount codes, subscriptions, ledger, webhook outbox.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('uuid', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('phone_number', sa.String(20), nullable=True),
        sa.Column('status', sa.String(50), nullable=True),
        sa.Column('user_type', sa.String(50), nullable=True),
        sa.Column('razorpay_customer_id', sa.String(255), nullable=True),
        sa.Column('razorpay_account_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('idx_user_status', 'users', ['status'])
    op.create_index('idx_user_type', 'users', ['user_type'])

    op.create_table(
        'subscription_tiers',
        sa.Column('uuid', sa.String(36), primary_key=True),
        sa.Column('analyst_id', sa.String(36), sa.ForeignKey('users.uuid'), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Integer(), nullable=False),
        sa.Column('billing_cycle', sa.String(20), nullable=False),
        sa.Column('features', sa.JSON(), nullable=True),
        sa.Column('max_subscribers', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('razorpay_plan_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('price >= 0', name='ck_tier_price_non_negative'),
    )
    op.create_index('idx_tier_analyst_id', 'subscription_tiers', ['analyst_id'])

    op.create_table(
        'discount_codes',
        sa.Column('uuid', sa.String(36), primary_key=True),
        sa.Column('analyst_id', sa.String(36), sa.ForeignKey('users.uuid'), nullable=False),
        sa.Column('code', sa.String(50), nullable=False, unique=True),
        sa.Column('code_name', sa.String(100), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('discount_type', sa.String(20), nullable=False),
        sa.Column('discount_value', sa.Integer(), nullable=False),
        sa.Column('max_discount_amount', sa.Integer(), nullable=True),
        sa.Column('applicable_tiers', sa.JSON(), nullable=True),
        sa.Column('billing_cycle_restriction', sa.String(20), nullable=False),
        sa.Column('first_time_only', sa.Boolean(), nullable=False),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('usage_count', sa.Integer(), nullable=False),
        sa.Column('per_user_limit', sa.Integer(), nullable=False),
        sa.Column('valid_from', sa.DateTime(), nullable=True),
        sa.Column('valid_until', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_deleted', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('idx_discount_analyst_id', 'discount_codes', ['analyst_id'])

    op.create_table(
        'subscriptions',
        sa.Column('uuid', sa.String(36), primary_key=True),
        sa.Column('trader_id', sa.String(36), sa.ForeignKey('users.uuid'), nullable=False),
        sa.Column('analyst_id', sa.String(36), sa.ForeignKey('users.uuid'), nullable=False),
        sa.Column('tier_id', sa.String(36), sa.ForeignKey('subscription_tiers.uuid'), nullable=False),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('billing_cycle', sa.String(20), nullable=False),
        sa.Column('price_paid', sa.Integer(), nullable=False),
        sa.Column('discount_applied', sa.Integer(), nullable=False),
        sa.Column('final_price', sa.Integer(), nullable=False),
        sa.Column('discount_code_id', sa.String(36), sa.ForeignKey('discount_codes.uuid'), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('next_billing_date', sa.DateTime(), nullable=True),
        sa.Column('cycles_billed', sa.Integer(), nullable=False),
        sa.Column('auto_renewal', sa.Boolean(), nullable=False),
        sa.Column('payment_retry_count', sa.Integer(), nullable=False),
        sa.Column('last_payment_attempt', sa.DateTime(), nullable=True),
        sa.Column('grace_period_ends_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('suspended_at', sa.DateTime(), nullable=True),
        sa.Column('razorpay_subscription_id', sa.String(255), nullable=True, unique=True),
        sa.Column('razorpay_customer_id', sa.String(255), nullable=True),
        sa.Column('razorpay_plan_id', sa.String(255), nullable=True),
        sa.Column('is_deleted', sa.Boolean(), nullable=False),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('final_price >= 0', name='ck_subscription_final_price_non_negative'),
        sa.CheckConstraint(
            'payment_retry_count >= 0 AND payment_retry_count <= 3',
            name='ck_subscription_retry_count_range',
        ),
    )
    op.create_index('idx_subscription_trader_id', 'subscriptions', ['trader_id'])
    op.create_index('idx_subscription_analyst_id', 'subscriptions', ['analyst_id'])
    op.create_index('idx_subscription_tier_id', 'subscriptions', ['tier_id'])
    op.create_index('idx_subscription_status', 'subscriptions', ['status'])
    op.create_index('idx_subscription_expires_at', 'subscriptions', ['expires_at'])
    op.create_index('idx_subscription_trader_analyst', 'subscriptions', ['trader_id', 'analyst_id'])

    op.create_table(
        'payment_transactions',
        sa.Column('uuid', sa.String(36), primary_key=True),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('subscriptions.uuid'), nullable=True),
        sa.Column('trader_id', sa.String(36), sa.ForeignKey('users.uuid'), nullable=True),
        sa.Column('analyst_id', sa.String(36), sa.ForeignKey('users.uuid'), nullable=False),
        sa.Column('gateway_payment_id', sa.String(255), nullable=False, unique=True),
        sa.Column('gateway_order_id', sa.String(255), nullable=True),
        sa.Column('payout_reference', sa.String(255), nullable=True, unique=True),
        sa.Column('transaction_type', sa.String(50), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('payment_method', sa.String(50), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('failure_code', sa.String(100), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('refund_amount', sa.Integer(), nullable=True),
        sa.Column('refund_reason', sa.Text(), nullable=True),
        sa.Column('gateway_refund_id', sa.String(255), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('payout_amount', sa.Integer(), nullable=True),
        sa.Column('platform_commission', sa.Integer(), nullable=True),
        sa.Column('payout_status', sa.String(20), nullable=True),
        sa.Column('paid_out_at', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('idx_payment_subscription_id', 'payment_transactions', ['subscription_id'])
    op.create_index('idx_payment_trader_id', 'payment_transactions', ['trader_id'])
    op.create_index('idx_payment_analyst_id', 'payment_transactions', ['analyst_id'])
    op.create_index('idx_payment_status', 'payment_transactions', ['status'])
    op.create_index('idx_payment_type_created', 'payment_transactions', ['transaction_type', 'created_at'])

    op.create_table(
        'webhook_events',
        sa.Column('uuid', sa.String(36), primary_key=True),
        sa.Column('event_id', sa.String(255), nullable=True, unique=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
    )
    op.create_index('idx_webhook_event_status_next', 'webhook_events', ['status', 'next_attempt_at'])
    op.create_index('idx_webhook_event_type', 'webhook_events', ['event_type'])


def downgrade():
    op.drop_index('idx_webhook_event_type', table_name='webhook_events')
    op.drop_index('idx_webhook_event_status_next', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('idx_payment_type_created', table_name='payment_transactions')
    op.drop_index('idx_payment_status', table_name='payment_transactions')
    op.drop_index('idx_payment_analyst_id', table_name='payment_transactions')
    op.drop_index('idx_payment_trader_id', table_name='payment_transactions')
    op.drop_index('idx_payment_subscription_id', table_name='payment_transactions')
    op.drop_table('payment_transactions')
    op.drop_index('idx_subscription_trader_analyst', table_name='subscriptions')
    op.drop_index('idx_subscription_expires_at', table_name='subscriptions')
    op.drop_index('idx_subscription_status', table_name='subscriptions')
    op.drop_index('idx_subscription_tier_id', table_name='subscriptions')
    op.drop_index('idx_subscription_analyst_id', table_name='subscriptions')
    op.drop_index('idx_subscription_trader_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('idx_discount_analyst_id', table_name='discount_codes')
    op.drop_table('discount_codes')
    op.drop_index('idx_tier_analyst_id', table_name='subscription_tiers')
    op.drop_table('subscription_tiers')
    op.drop_index('idx_user_type', table_name='users')
    op.drop_index('idx_user_status', table_name='users')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
