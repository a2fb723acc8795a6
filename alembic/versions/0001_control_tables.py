"""control tables: schedule, run log, server info history, job activity

Snapshot, raw buffer and analysis tables are created on demand by their collectors.

Revision ID: 0001_control_tables
Revises:
Create Date: 2026-10-16
"""
from alembic import op
import sqlalchemy as sa

revision = '0001_control_tables'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'collection_schedule',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('collector_name', sa.String(length=100), nullable=False),
        sa.Column('enabled', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('frequency_minutes', sa.Integer(), nullable=False, server_default='15'),
        sa.Column('max_duration_minutes', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('retention_days', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('last_run_time', sa.DateTime(), nullable=True),
        sa.Column('next_run_time', sa.DateTime(), nullable=True),
        sa.Column('description', sa.String(length=500), nullable=True),
        sa.Column('created_date', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('modified_date', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_collection_schedule_collector_name', 'collection_schedule', ['collector_name'], unique=True)
    op.create_index('ix_collection_schedule_enabled', 'collection_schedule', ['enabled'])
    op.create_index('ix_collection_schedule_next_run_time', 'collection_schedule', ['next_run_time'])
    op.create_index('ix_collection_schedule_due', 'collection_schedule', ['enabled', 'next_run_time'])

    op.create_table(
        'collection_log',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('collection_time', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('collector_name', sa.String(length=100), nullable=False),
        sa.Column('collection_status', sa.String(length=20), nullable=False),
        sa.Column('rows_collected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('duration_ms', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.String(length=4000), nullable=True),
    )
    op.create_index('ix_collection_log_collection_time', 'collection_log', ['collection_time'])
    op.create_index('ix_collection_log_collector_name', 'collection_log', ['collector_name'])
    op.create_index('ix_collection_log_collection_status', 'collection_log', ['collection_status'])
    op.create_index('ix_collection_log_collector_status', 'collection_log', ['collector_name', 'collection_status', 'collection_time'])

    op.create_table(
        'server_info_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('collection_time', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('server_start_time', sa.DateTime(), nullable=False),
        sa.Column('server_name', sa.String(length=128), nullable=True),
        sa.Column('product_version', sa.String(length=64), nullable=True),
        sa.Column('edition', sa.String(length=128), nullable=True),
        sa.Column('cpu_count', sa.Integer(), nullable=True),
        sa.Column('physical_memory_mb', sa.BigInteger(), nullable=True),
        sa.Column('environment_type', sa.String(length=32), nullable=True),
    )
    op.create_index('ix_server_info_history_collection_time', 'server_info_history', ['collection_time'])
    op.create_index('ix_server_info_history_server_start_time', 'server_info_history', ['server_start_time'])

    op.create_table(
        'job_activity',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('job_identifier', sa.String(length=100), nullable=False),
        sa.Column('run_id', sa.String(length=155), nullable=True),
        sa.Column('hostname', sa.String(length=255), nullable=True),
        sa.Column('pid', sa.Integer(), nullable=True),
        sa.Column('start_execution_time', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('stop_execution_time', sa.DateTime(), nullable=True),
        sa.Column('outcome', sa.String(length=16), nullable=True),
    )
    op.create_index('ix_job_activity_job_identifier', 'job_activity', ['job_identifier'])
    op.create_index('ix_job_activity_run_id', 'job_activity', ['run_id'])
    op.create_index('ix_job_activity_start_execution_time', 'job_activity', ['start_execution_time'])
    op.create_index('ix_job_activity_active', 'job_activity', ['job_identifier', 'stop_execution_time'])

def downgrade():
    op.drop_index('ix_job_activity_active', table_name='job_activity')
    op.drop_index('ix_job_activity_start_execution_time', table_name='job_activity')
    op.drop_index('ix_job_activity_run_id', table_name='job_activity')
    op.drop_index('ix_job_activity_job_identifier', table_name='job_activity')
    op.drop_table('job_activity')
    op.drop_index('ix_server_info_history_server_start_time', table_name='server_info_history')
    op.drop_index('ix_server_info_history_collection_time', table_name='server_info_history')
    op.drop_table('server_info_history')
    op.drop_index('ix_collection_log_collector_status', table_name='collection_log')
    op.drop_index('ix_collection_log_collection_status', table_name='collection_log')
    op.drop_index('ix_collection_log_collector_name', table_name='collection_log')
    op.drop_index('ix_collection_log_collection_time', table_name='collection_log')
    op.drop_table('collection_log')
    op.drop_index('ix_collection_schedule_due', table_name='collection_schedule')
    op.drop_index('ix_collection_schedule_next_run_time', table_name='collection_schedule')
    op.drop_index('ix_collection_schedule_enabled', table_name='collection_schedule')
    op.drop_index('ix_collection_schedule_collector_name', table_name='collection_schedule')
    op.drop_table('collection_schedule')
