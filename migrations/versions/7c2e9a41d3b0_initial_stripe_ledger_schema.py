"""Initial Stripe ledger schema

Revision ID: 7c2e9a41d3b0
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c2e9a41d3b0'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('payment_processors',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('secret_key', sa.String(length=255), nullable=False),
        sa.Column('publishable_key', sa.String(length=255), nullable=True),
        sa.Column('webhook_secret', sa.String(length=255), nullable=True),
        sa.Column('is_test', sa.Boolean(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('contacts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('customer_mappings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('contact_id', sa.Integer(), nullable=False),
        sa.Column('processor_id', sa.Integer(), nullable=False),
        sa.Column('gateway_customer_id', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['contact_id'], ['contacts.id'], ),
        sa.ForeignKeyConstraint(['processor_id'], ['payment_processors.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('contact_id', 'processor_id', name='uq_contact_processor')
    )
    op.create_table('recurring_contributions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('contact_id', sa.Integer(), nullable=False),
        sa.Column('processor_id', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Numeric(precision=20, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('frequency_unit', sa.String(length=10), nullable=False),
        sa.Column('frequency_interval', sa.Integer(), nullable=False),
        sa.Column('installments', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('failure_count', sa.Integer(), nullable=False),
        sa.Column('auto_renew', sa.Boolean(), nullable=False),
        sa.Column('subscription_reference', sa.String(length=255), nullable=True),
        sa.Column('latest_order_reference', sa.String(length=255), nullable=True),
        sa.Column('cycle_day', sa.Integer(), nullable=True),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_scheduled_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_test', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('modified_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['contact_id'], ['contacts.id'], ),
        sa.ForeignKeyConstraint(['processor_id'], ['payment_processors.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_recurring_contributions_subscription_reference', 'recurring_contributions', ['subscription_reference'], unique=False)
    op.create_table('contributions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('contact_id', sa.Integer(), nullable=False),
        sa.Column('recurring_contribution_id', sa.Integer(), nullable=True),
        sa.Column('original_contribution_id', sa.Integer(), nullable=True),
        sa.Column('processor_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('total_amount', sa.Numeric(precision=20, scale=2), nullable=False),
        sa.Column('fee_amount', sa.Numeric(precision=20, scale=2), nullable=True),
        sa.Column('net_amount', sa.Numeric(precision=20, scale=2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('trxn_id', sa.String(length=255), nullable=True),
        sa.Column('order_reference', sa.String(length=255), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('receive_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_test', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('modified_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['contact_id'], ['contacts.id'], ),
        sa.ForeignKeyConstraint(['recurring_contribution_id'], ['recurring_contributions.id'], ),
        sa.ForeignKeyConstraint(['original_contribution_id'], ['contributions.id'], ),
        sa.ForeignKeyConstraint(['processor_id'], ['payment_processors.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_contributions_trxn_id', 'contributions', ['trxn_id'], unique=False)
    op.create_index('ix_contributions_order_reference', 'contributions', ['order_reference'], unique=False)
    op.create_table('payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('contribution_id', sa.Integer(), nullable=False),
        sa.Column('trxn_id', sa.String(length=255), nullable=True),
        sa.Column('total_amount', sa.Numeric(precision=20, scale=2), nullable=False),
        sa.Column('fee_amount', sa.Numeric(precision=20, scale=2), nullable=True),
        sa.Column('order_reference', sa.String(length=255), nullable=True),
        sa.Column('trxn_result_code', sa.String(length=255), nullable=True),
        sa.Column('cancelled_payment_id', sa.Integer(), nullable=True),
        sa.Column('trxn_date', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['contribution_id'], ['contributions.id'], ),
        sa.ForeignKeyConstraint(['cancelled_payment_id'], ['payments.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_payments_trxn_id', 'payments', ['trxn_id'], unique=False)
    op.create_table('intent_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('gateway_intent_id', sa.String(length=255), nullable=True),
        sa.Column('processor_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('contribution_id', sa.Integer(), nullable=True),
        sa.Column('flags', sa.JSON(), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('referrer', sa.String(length=1024), nullable=True),
        sa.Column('extra_data', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['processor_id'], ['payment_processors.id'], ),
        sa.ForeignKeyConstraint(['contribution_id'], ['contributions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway_intent_id')
    )
    op.create_index('ix_intent_records_extra_data', 'intent_records', ['extra_data'], unique=False)
    op.create_table('webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('processor_id', sa.Integer(), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('trigger', sa.String(length=255), nullable=False),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('verified', sa.Boolean(), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['processor_id'], ['payment_processors.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_webhook_events_event_id', 'webhook_events', ['event_id'], unique=False)
    op.create_table('audit_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('contribution_id', sa.Integer(), nullable=True),
        sa.Column('recurring_contribution_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['contribution_id'], ['contributions.id'], ),
        sa.ForeignKeyConstraint(['recurring_contribution_id'], ['recurring_contributions.id'], ),
        sa.PrimaryKeyConstraint('id')
    )


def downgrade():
    op.drop_table('audit_events')
    op.drop_index('ix_webhook_events_event_id', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('ix_intent_records_extra_data', table_name='intent_records')
    op.drop_table('intent_records')
    op.drop_index('ix_payments_trxn_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_contributions_order_reference', table_name='contributions')
    op.drop_index('ix_contributions_trxn_id', table_name='contributions')
    op.drop_table('contributions')
    op.drop_index('ix_recurring_contributions_subscription_reference', table_name='recurring_contributions')
    op.drop_table('recurring_contributions')
    op.drop_table('customer_mappings')
    op.drop_table('contacts')
    op.drop_table('payment_processors')
