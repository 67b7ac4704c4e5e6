"""Initial schema: organizations, integrations, transactions, import jobs, webhook events

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None

integration_type = sa.Enum('SHOPIFY', 'SQUARE', name='integrationtype')
integration_status = sa.Enum('PENDING_USER_LINK', 'CONNECTED', 'DISCONNECTED', name='integrationstatus')
sync_status = sa.Enum('IDLE', 'SYNCING', 'ERROR', name='syncstatus')
transaction_type = sa.Enum('SALE', name='transactiontype')
transaction_status = sa.Enum('PENDING', 'COMPLETED', 'CANCELLED', 'FAILED', 'REFUNDED', name='transactionstatus')
import_job_status = sa.Enum('QUEUED', 'RUNNING', 'SUCCESS', 'FAILED', name='importjobstatus')
log_level = sa.Enum('INFO', 'ERROR', name='loglevel')


def upgrade() -> None:
    op.create_table('organizations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table('integrations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('organization_id', sa.String(), nullable=False),
        sa.Column('type', integration_type, nullable=False),
        sa.Column('status', integration_status, nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('shop_domain', sa.String(), nullable=False),
        sa.Column('access_token', sa.String(), nullable=True),
        sa.Column('scopes', sa.String(), nullable=True),
        sa.Column('shop_info', sa.JSON(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('sync_status', sync_status, nullable=False),
        sa.Column('sync_error', sa.String(), nullable=True),
        sa.Column('webhook_health', sa.JSON(), nullable=True),
        sa.Column('webhook_checked_at', sa.DateTime(), nullable=True),
        sa.Column('webhook_consecutive_failures', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('organization_id', 'type', 'shop_domain', name='integrations_org_type_shop_unique'),
    )
    op.create_index('ix_integrations_organization_id', 'integrations', ['organization_id'])
    op.create_index('ix_integrations_shop_domain', 'integrations', ['shop_domain'])

    op.create_table('transactions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('organization_id', sa.String(), nullable=False),
        sa.Column('integration_id', sa.String(), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('order_number', sa.String(), nullable=True),
        sa.Column('type', transaction_type, nullable=False),
        sa.Column('status', transaction_status, nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('total_amount', sa.Integer(), nullable=False),
        sa.Column('tax_amount', sa.Integer(), nullable=False),
        sa.Column('subtotal', sa.Integer(), nullable=False),
        sa.Column('discount_amount', sa.Integer(), nullable=False),
        sa.Column('shipping_amount', sa.Integer(), nullable=False),
        sa.Column('tax_details', sa.JSON(), nullable=True),
        sa.Column('items', sa.JSON(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('customer_email', sa.String(), nullable=True),
        sa.Column('customer_name', sa.String(), nullable=True),
        sa.Column('transaction_date', sa.DateTime(), nullable=True),
        sa.Column('source_updated_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['integration_id'], ['integrations.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('integration_id', 'external_id', name='transactions_integration_external_unique'),
    )
    op.create_index('ix_transactions_organization_id', 'transactions', ['organization_id'])
    op.create_index('ix_transactions_integration_id', 'transactions', ['integration_id'])

    op.create_table('import_jobs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('integration_id', sa.String(), nullable=False),
        sa.Column('status', import_job_status, nullable=False),
        sa.Column('days_back', sa.Integer(), nullable=False),
        sa.Column('window_start', sa.DateTime(), nullable=True),
        sa.Column('window_end', sa.DateTime(), nullable=True),
        sa.Column('total', sa.Integer(), nullable=True),
        sa.Column('records_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('records_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.String(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['integration_id'], ['integrations.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_import_jobs_integration_id', 'import_jobs', ['integration_id'])

    op.create_table('import_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('import_job_id', sa.String(), nullable=False),
        sa.Column('level', log_level, nullable=False),
        sa.Column('external_id', sa.String(), nullable=True),
        sa.Column('message', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['import_job_id'], ['import_jobs.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_import_logs_import_job_id', 'import_logs', ['import_job_id'])

    op.create_table('webhook_events',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('shop_domain', sa.String(), nullable=True),
        sa.Column('topic', sa.String(), nullable=False),
        sa.Column('webhook_id', sa.String(), nullable=True),
        sa.Column('payload_summary', sa.String(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('error', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_webhook_events_source', 'webhook_events', ['source'])
    op.create_index('ix_webhook_events_shop_domain', 'webhook_events', ['shop_domain'])
    op.create_index('ix_webhook_events_topic', 'webhook_events', ['topic'])
    op.create_index('ix_webhook_events_webhook_id', 'webhook_events', ['webhook_id'])


def downgrade() -> None:
    op.drop_table('webhook_events')
    op.drop_table('import_logs')
    op.drop_table('import_jobs')
    op.drop_table('transactions')
    op.drop_table('integrations')
    op.drop_table('organizations')
    bind = op.get_bind()
    for enum in (log_level, import_job_status, transaction_status, transaction_type,
                 sync_status, integration_status, integration_type):
        enum.drop(bind, checkfirst=True)
