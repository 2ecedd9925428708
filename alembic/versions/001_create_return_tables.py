"""Create return lifecycle tables.

Revision ID: create_return_tables
Revises:
Create Date: 2026-10-18

Tables:
- return_requests: one row per return (RMA), versioned for optimistic locking
- return_items: order lines being returned
- return_events: append-only timeline
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


# revision identifiers, used by Alembic.
revision: str = 'create_return_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create return_requests, return_items and return_events."""

    conn = op.get_bind()
    inspector = sa.inspect(conn)
    if 'return_requests' in inspector.get_table_names():
        print("return_requests table already exists, skipping...")
        return

    op.create_table(
        'return_requests',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('return_number', sa.String(50), nullable=False),
        sa.Column('order_id', UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('order_number', sa.String(50), nullable=False),
        sa.Column('order_total', sa.Numeric(18, 2), nullable=False),
        sa.Column('customer_name', sa.String(200), nullable=True),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('reason_code', sa.String(50), nullable=False),
        sa.Column('reason_text', sa.Text, nullable=True),
        sa.Column('requested_action', sa.String(20), nullable=False, server_default='refund'),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('images', JSONB, nullable=True),
        sa.Column('pickup_address', JSONB, nullable=True),
        sa.Column('pickup_scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pickup_carrier', sa.String(100), nullable=True),
        sa.Column('pickup_ticket_id', sa.String(100), nullable=True),
        sa.Column('customer_ships', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('admin_notes', sa.Text, nullable=True),
        sa.Column('rejection_reason', sa.Text, nullable=True),
        sa.Column('refund_id', sa.String(100), nullable=True),
        sa.Column('refund_amount', sa.Numeric(18, 2), nullable=True),
        sa.Column('refund_method', sa.String(30), nullable=True),
        sa.Column('refund_status', sa.String(30), nullable=True),
        sa.Column('replacement_order_id', sa.String(100), nullable=True),
        sa.Column('replacement_status', sa.String(30), nullable=True),
        sa.Column('approved_by', sa.String(100), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        sa.UniqueConstraint('return_number', name='uq_return_requests_return_number'),
    )
    op.create_index('ix_return_requests_return_number', 'return_requests', ['return_number'])
    op.create_index('ix_return_requests_order_id', 'return_requests', ['order_id'])
    op.create_index('ix_return_requests_user_id', 'return_requests', ['user_id'])
    op.create_index('ix_return_requests_order_number', 'return_requests', ['order_number'])
    op.create_index('ix_return_requests_reason_code', 'return_requests', ['reason_code'])
    op.create_index('ix_return_requests_status', 'return_requests', ['status'])
    op.create_index('ix_return_requests_refund_id', 'return_requests', ['refund_id'])
    op.create_index('ix_return_requests_replacement_order_id', 'return_requests', ['replacement_order_id'])
    op.create_index('ix_return_requests_created_at', 'return_requests', ['created_at'])

    op.create_table(
        'return_items',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('return_id', UUID(as_uuid=True),
                  sa.ForeignKey('return_requests.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('order_item_id', UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', UUID(as_uuid=True), nullable=True),
        sa.Column('product_name', sa.String(255), nullable=False),
        sa.Column('sku', sa.String(100), nullable=True),
        sa.Column('quantity', sa.Integer, nullable=False, server_default='1'),
        sa.Column('unit_price', sa.Numeric(18, 2), nullable=False),
        sa.Column('condition', sa.String(30), nullable=False, server_default='unopened'),
        sa.Column('condition_notes', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_return_items_return_id', 'return_items', ['return_id'])

    op.create_table(
        'return_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('return_id', UUID(as_uuid=True),
                  sa.ForeignKey('return_requests.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('previous_status', sa.String(50), nullable=True),
        sa.Column('new_status', sa.String(50), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('actor_type', sa.String(30), nullable=False),
        sa.Column('actor_id', sa.String(100), nullable=True),
        sa.Column('actor_name', sa.String(200), nullable=True),
        sa.Column('details', JSONB, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_return_events_return_id', 'return_events', ['return_id'])
    op.create_index('ix_return_events_event_type', 'return_events', ['event_type'])
    op.create_index('ix_return_events_created_at', 'return_events', ['created_at'])

    # Timeline rows are write-once at the database level too
    op.execute("""
        CREATE OR REPLACE FUNCTION return_events_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'return_events rows are immutable';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER trg_return_events_immutable
        BEFORE UPDATE OR DELETE ON return_events
        FOR EACH ROW EXECUTE FUNCTION return_events_immutable();
    """)

    print("Created return lifecycle tables")


def downgrade() -> None:
    """Drop return lifecycle tables."""
    op.execute("DROP TRIGGER IF EXISTS trg_return_events_immutable ON return_events")
    op.execute("DROP FUNCTION IF EXISTS return_events_immutable()")
    op.drop_table('return_events')
    op.drop_table('return_items')
    op.drop_table('return_requests')
