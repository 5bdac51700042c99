"""add_fatigue_tables

Revision ID: a1c4e7f2b9d0
Revises:
Create Date: 2026-10-19 09:00:00.000000

Readings time-series, raw upstream audit (content-hash keyed) and
enriched per-shift history.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = 'a1c4e7f2b9d0'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'sensor_readings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_key', sa.String(255), nullable=False),
        sa.Column('sensor_id', sa.String(100), nullable=False),
        sa.Column('status', sa.String(40), nullable=False),
        sa.Column('value', sa.Float(), nullable=True),
        sa.Column('recorded_at', sa.DateTime(), nullable=False),
        sa.Column('received_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('meta', sa.Text(), nullable=True),
    )
    op.create_index('ix_sensor_readings_sensor_recorded', 'sensor_readings', ['sensor_id', 'recorded_at'])
    op.create_index('ix_sensor_readings_recorded', 'sensor_readings', ['recorded_at'])

    op.create_table(
        'fatigue_events_raw',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_hash', sa.String(64), nullable=False, unique=True),
        sa.Column('sensor_id', sa.String(100), nullable=True),
        sa.Column('event_time', sa.DateTime(), nullable=True),
        sa.Column('received_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('payload', sa.Text(), nullable=False),
    )
    op.create_index('ix_fatigue_events_raw_event_time', 'fatigue_events_raw', ['event_time'])

    op.create_table(
        'fatigue_event_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_key', sa.String(255), nullable=False),
        sa.Column('sensor_id', sa.String(100), nullable=False),
        sa.Column('status', sa.String(40), nullable=True),
        sa.Column('alert_status', sa.String(20), nullable=True),
        sa.Column('area', sa.String(40), nullable=True),
        sa.Column('location', sa.String(120), nullable=True),
        sa.Column('operator', sa.String(120), nullable=True),
        sa.Column('fatigue_type', sa.String(80), nullable=True),
        sa.Column('shift_label', sa.String(20), nullable=True),
        sa.Column('shift_start', sa.String(5), nullable=True),
        sa.Column('shift_end', sa.String(5), nullable=True),
        sa.Column('within_shift', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('event_time_utc', sa.DateTime(), nullable=False),
        sa.Column('event_time_local', sa.DateTime(), nullable=False),
        sa.Column('received_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('origin', sa.String(20), nullable=False),
        sa.Column('meta_json', sa.Text(), nullable=True),
    )
    op.create_index('ix_fatigue_event_history_sensor_time', 'fatigue_event_history', ['sensor_id', 'event_time_utc'])
    op.create_index('ix_fatigue_event_history_area_shift', 'fatigue_event_history', ['area', 'shift_label'])


def downgrade() -> None:
    op.drop_index('ix_fatigue_event_history_area_shift', table_name='fatigue_event_history')
    op.drop_index('ix_fatigue_event_history_sensor_time', table_name='fatigue_event_history')
    op.drop_table('fatigue_event_history')
    op.drop_index('ix_fatigue_events_raw_event_time', table_name='fatigue_events_raw')
    op.drop_table('fatigue_events_raw')
    op.drop_index('ix_sensor_readings_recorded', table_name='sensor_readings')
    op.drop_index('ix_sensor_readings_sensor_recorded', table_name='sensor_readings')
    op.drop_table('sensor_readings')
