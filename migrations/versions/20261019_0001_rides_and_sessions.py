"""rides and driver sessions

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'rides',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('rider_id', sa.String(64), nullable=False),
        sa.Column('rider_name', sa.String(128), nullable=True),
        sa.Column('driver_id', sa.String(64), nullable=True),
        sa.Column('pickup', sa.String(512), nullable=False),
        sa.Column('destination', sa.String(512), nullable=False),
        sa.Column('vehicle_type', sa.String(32), nullable=False),
        sa.Column('fare', sa.Integer(), nullable=False),
        sa.Column('otp', sa.String(4), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('distance_km', sa.Float(), nullable=True),
        sa.Column('duration_mins', sa.Integer(), nullable=True),
        sa.Column('duration_text', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('accepted_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_rides_created', 'rides', ['created_at'])
    op.create_index('ix_rides_rider', 'rides', ['rider_id'])
    op.create_index('ix_rides_driver', 'rides', ['driver_id'])

    op.create_table(
        'driver_sessions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('driver_id', sa.String(64), nullable=False),
        sa.Column('login_time', sa.DateTime(), nullable=False),
        sa.Column('logout_time', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_index('ix_driver_sessions_driver_login', 'driver_sessions', ['driver_id', 'login_time'])
    op.create_index(
        'uq_driver_sessions_active',
        'driver_sessions',
        ['driver_id'],
        unique=True,
        postgresql_where=sa.text('is_active'),
        sqlite_where=sa.text('is_active = 1'),
    )


def downgrade() -> None:
    op.drop_index('uq_driver_sessions_active', table_name='driver_sessions')
    op.drop_index('ix_driver_sessions_driver_login', table_name='driver_sessions')
    op.drop_table('driver_sessions')
    op.drop_index('ix_rides_driver', table_name='rides')
    op.drop_index('ix_rides_rider', table_name='rides')
    op.drop_index('ix_rides_created', table_name='rides')
    op.drop_table('rides')
