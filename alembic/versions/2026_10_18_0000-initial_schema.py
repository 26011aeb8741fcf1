"""initial schema

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PAYMENT_STATE_CHECK = "payment_state IN ('pending', 'received', 'refunded', 'revoked')"


def upgrade() -> None:
    """Create entitlement, audit and inbox tables."""

    # ========================================================================
    # Create entitlements table
    # ========================================================================
    op.create_table(
        'entitlements',
        sa.Column('subscriber_id', sa.String(255), primary_key=True),
        sa.Column('plan_id', sa.String(255), nullable=False),
        sa.Column('premium_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payment_state', sa.String(20), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('purchase_token', sa.String(4096), nullable=False),
        sa.Column('purchase_token_hash', sa.String(64), nullable=False),
        sa.Column('pending_purchase_token', sa.String(4096), nullable=True),
        sa.Column('pending_purchase_token_hash', sa.String(64), nullable=True),
        sa.Column('pending_product_id', sa.String(255), nullable=True),
        sa.Column('last_event_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_checksum', sa.String(64), nullable=False),
        sa.Column('revision', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('revision > 0', name='ck_entitlement_revision_positive'),
        sa.CheckConstraint(PAYMENT_STATE_CHECK, name='ck_entitlement_payment_state'),
    )
    op.create_index('idx_entitlements_purchase_token_hash', 'entitlements', ['purchase_token_hash'])
    op.create_index(
        'idx_entitlements_pending_token_hash',
        'entitlements',
        ['pending_purchase_token_hash'],
        postgresql_where=sa.text('pending_purchase_token_hash IS NOT NULL'),
    )
    op.create_index('idx_entitlements_expires_at', 'entitlements', ['expires_at'])

    # ========================================================================
    # Create entitlement_revisions table (audit trail)
    # ========================================================================
    op.create_table(
        'entitlement_revisions',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('subscriber_id', sa.String(255), nullable=False),
        sa.Column('revision', sa.BigInteger(), nullable=False),
        sa.Column('plan_id', sa.String(255), nullable=False),
        sa.Column('payment_state', sa.String(20), nullable=False),
        sa.Column('premium_active', sa.Boolean(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('event_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('checksum', sa.String(64), nullable=False),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.UniqueConstraint('subscriber_id', 'revision', name='uq_entitlement_revision'),
    )
    op.create_index('idx_entitlement_revisions_subscriber', 'entitlement_revisions', ['subscriber_id'])
    op.create_index('idx_entitlement_revisions_created_at', 'entitlement_revisions', ['created_at'])

    # ========================================================================
    # Create renewal_event_inbox table
    # ========================================================================
    op.create_table(
        'renewal_event_inbox',
        sa.Column('delivery_id', sa.String(255), primary_key=True),
        sa.Column('subscriber_id', sa.String(255), nullable=False),
        sa.Column('product_id', sa.String(255), nullable=False),
        sa.Column('purchase_token', sa.String(4096), nullable=False),
        sa.Column('payment_state', sa.String(20), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auto_renew', sa.Boolean(), nullable=False),
        sa.Column('event_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('checksum', sa.String(64), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('attempts >= 0', name='ck_inbox_attempts_non_negative'),
        sa.CheckConstraint("status IN ('pending', 'processed', 'failed')", name='ck_inbox_status'),
        sa.CheckConstraint(PAYMENT_STATE_CHECK, name='ck_inbox_payment_state'),
    )
    op.create_index(
        'idx_renewal_event_inbox_pending',
        'renewal_event_inbox',
        ['received_at'],
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index('idx_renewal_event_inbox_subscriber', 'renewal_event_inbox', ['subscriber_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index('idx_renewal_event_inbox_subscriber', table_name='renewal_event_inbox')
    op.drop_index('idx_renewal_event_inbox_pending', table_name='renewal_event_inbox')
    op.drop_table('renewal_event_inbox')

    op.drop_index('idx_entitlement_revisions_created_at', table_name='entitlement_revisions')
    op.drop_index('idx_entitlement_revisions_subscriber', table_name='entitlement_revisions')
    op.drop_table('entitlement_revisions')

    op.drop_index('idx_entitlements_expires_at', table_name='entitlements')
    op.drop_index('idx_entitlements_pending_token_hash', table_name='entitlements')
    op.drop_index('idx_entitlements_purchase_token_hash', table_name='entitlements')
    op.drop_table('entitlements')
