"""Add reminder_dispatch_logs idempotency ledger

Revision ID: 001_add_reminder_dispatch_logs
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_add_reminder_dispatch_logs'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'reminder_dispatch_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('reminder_type', sa.String(50), nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('days_before_event', sa.Integer(), nullable=False),
        sa.Column('target_date', sa.Date(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'reminder_type', 'entity_type', 'entity_id', 'days_before_event', 'target_date',
            name='uq_reminder_dispatch_logs_key',
        ),
    )


def downgrade():
    op.drop_table('reminder_dispatch_logs')
