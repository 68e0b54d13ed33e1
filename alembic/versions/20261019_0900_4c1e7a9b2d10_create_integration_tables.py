"""create_integration_tables

Revision ID: 4c1e7a9b2d10
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# Revision identifiers, used by Alembic
revision: str = '4c1e7a9b2d10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def _canonical_columns() -> list[sa.Column]:
    return [
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('org_id', sa.Uuid(), nullable=False),
        sa.Column('external_id', sa.String(length=255), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('raw', sa.JSON(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    """Apply migration: create_integration_tables"""
    # OAuth credentials, one row per (org, provider)
    op.create_table('provider_credentials',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('org_id', sa.Uuid(), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('external_tenant_id', sa.String(length=255), nullable=True, comment='Provider-side organization identifier'),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False, comment='When access_token expires'),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('last_refresh_error', sa.Text(), nullable=True),
        sa.Column('last_refreshed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('org_id', 'provider', name='uq_provider_credentials_org_provider')
    )
    op.create_index('ix_provider_credentials_expires_at', 'provider_credentials', ['expires_at'], unique=False)
    op.create_index('ix_provider_credentials_external_tenant', 'provider_credentials', ['provider', 'external_tenant_id'], unique=False)

    # Append-only audit trail
    op.create_table('audit_entries',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('org_id', sa.Uuid(), nullable=True),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('kind', sa.String(length=40), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('context', sa.JSON(), nullable=True, comment='Structured extras (error kind, external id, counts)'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_entries_org_provider', 'audit_entries', ['org_id', 'provider'], unique=False)
    op.create_index('ix_audit_entries_timestamp', 'audit_entries', ['timestamp'], unique=False)

    # Canonical records, unique on (external_id, source)
    op.create_table('canonical_invoices',
        *_canonical_columns(),
        sa.Column('number', sa.String(length=100), nullable=True),
        sa.Column('contact_external_id', sa.String(length=255), nullable=True),
        sa.Column('contact_name', sa.String(length=255), nullable=True),
        sa.Column('issue_date', sa.Date(), nullable=True),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('total', sa.Numeric(precision=19, scale=4), nullable=False),
        sa.Column('amount_due', sa.Numeric(precision=19, scale=4), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=True),
        sa.Column('reference', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_id', 'source', name='uq_canonical_invoices_external')
    )
    op.create_index('ix_canonical_invoices_org_id', 'canonical_invoices', ['org_id'], unique=False)

    op.create_table('canonical_payments',
        *_canonical_columns(),
        sa.Column('invoice_external_id', sa.String(length=255), nullable=True),
        sa.Column('contact_external_id', sa.String(length=255), nullable=True),
        sa.Column('payment_date', sa.Date(), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('amount', sa.Numeric(precision=19, scale=4), nullable=False),
        sa.Column('status', sa.String(length=30), nullable=True),
        sa.Column('reference', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_id', 'source', name='uq_canonical_payments_external')
    )
    op.create_index('ix_canonical_payments_org_id', 'canonical_payments', ['org_id'], unique=False)

    op.create_table('canonical_contacts',
        *_canonical_columns(),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=50), nullable=True),
        sa.Column('is_customer', sa.Boolean(), nullable=False),
        sa.Column('is_supplier', sa.Boolean(), nullable=False),
        sa.Column('status', sa.String(length=30), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_id', 'source', name='uq_canonical_contacts_external')
    )
    op.create_index('ix_canonical_contacts_org_id', 'canonical_contacts', ['org_id'], unique=False)

    # Incremental sync cursor
    op.create_table('sync_states',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('org_id', sa.Uuid(), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('entity_kind', sa.String(length=20), nullable=False),
        sa.Column('cursor', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_created', sa.Integer(), nullable=False),
        sa.Column('last_updated', sa.Integer(), nullable=False),
        sa.Column('last_failed', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('org_id', 'provider', 'entity_kind', name='uq_sync_states_scope')
    )


def downgrade() -> None:
    """Revert migration: create_integration_tables"""
    op.drop_table('sync_states')

    op.drop_index('ix_canonical_contacts_org_id', table_name='canonical_contacts')
    op.drop_table('canonical_contacts')
    op.drop_index('ix_canonical_payments_org_id', table_name='canonical_payments')
    op.drop_table('canonical_payments')
    op.drop_index('ix_canonical_invoices_org_id', table_name='canonical_invoices')
    op.drop_table('canonical_invoices')

    op.drop_index('ix_audit_entries_timestamp', table_name='audit_entries')
    op.drop_index('ix_audit_entries_org_provider', table_name='audit_entries')
    op.drop_table('audit_entries')

    op.drop_index('ix_provider_credentials_external_tenant', table_name='provider_credentials')
    op.drop_index('ix_provider_credentials_expires_at', table_name='provider_credentials')
    op.drop_table('provider_credentials')
