"""add_routine_checkout

Revision ID: 20261012_0900_routine_checkout
Revises: None
Create Date: 2026-10-12 09:00:00

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261012_0900_routine_checkout'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """
    Create catalog tables read by the checkout, the reservation table and cart stats.
    """
    op.create_table(
        'creators',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=50), server_default='active', nullable=False),
        sa.Column('discount_code', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_creators_slug', 'creators', ['slug'], unique=True)

    op.create_table(
        'routines',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('base_shopify_variant_ids', sa.JSON(), nullable=True),
        sa.Column('upsell_1_shopify_variant_ids', sa.JSON(), nullable=True),
        sa.Column('upsell_2_shopify_variant_ids', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_routines_slug', 'routines', ['slug'], unique=True)

    op.create_table(
        'creator_routines',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('creator_id', sa.String(length=36), nullable=False),
        sa.Column('routine_id', sa.String(length=36), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['creator_id'], ['creators.id']),
        sa.ForeignKeyConstraint(['routine_id'], ['routines.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_creator_routines_creator_active', 'creator_routines', ['creator_id', 'is_active'])

    op.create_table(
        'routine_checkouts',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('payload_hash', sa.String(length=64), nullable=False),
        sa.Column('routine_id', sa.String(length=36), nullable=False),
        sa.Column('creator_id', sa.String(length=36), nullable=True),
        sa.Column('variant', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), server_default='creating', nullable=False),
        sa.Column('lock_token', sa.String(length=36), nullable=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('attempts', sa.Integer(), server_default='1', nullable=False),
        sa.Column('cart_id', sa.String(length=255), nullable=True),
        sa.Column('checkout_url', sa.Text(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint("status IN ('creating', 'completed', 'failed')", name='ck_routine_checkouts_status'),
    )
    op.create_index('ix_routine_checkouts_idempotency_key', 'routine_checkouts', ['idempotency_key'], unique=True)
    op.create_index('ix_routine_checkouts_status_locked_at', 'routine_checkouts', ['status', 'locked_at'])
    op.create_index('ix_routine_checkouts_cart_id', 'routine_checkouts', ['cart_id'])

    op.create_table(
        'routine_cart_stats',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('routine_id', sa.String(length=36), nullable=False),
        sa.Column('creator_id', sa.String(length=36), server_default='organic', nullable=False),
        sa.Column('variant', sa.String(length=20), nullable=False),
        sa.Column('carts_created', sa.Integer(), server_default='0', nullable=False),
        sa.Column('last_cart_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('routine_id', 'creator_id', 'variant', name='uq_routine_cart_stats_scope'),
    )


def downgrade() -> None:
    """
    Drop checkout tables.
    """
    op.drop_table('routine_cart_stats')

    op.drop_index('ix_routine_checkouts_cart_id', table_name='routine_checkouts')
    op.drop_index('ix_routine_checkouts_status_locked_at', table_name='routine_checkouts')
    op.drop_index('ix_routine_checkouts_idempotency_key', table_name='routine_checkouts')
    op.drop_table('routine_checkouts')

    op.drop_index('ix_creator_routines_creator_active', table_name='creator_routines')
    op.drop_table('creator_routines')

    op.drop_index('ix_routines_slug', table_name='routines')
    op.drop_table('routines')

    op.drop_index('ix_creators_slug', table_name='creators')
    op.drop_table('creators')
