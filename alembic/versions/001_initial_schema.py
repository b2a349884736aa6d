"""Initial schema for workflows, anomalies, signals, runs and audit events

Revision ID: 001
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create workflows table
    op.create_table(
        'workflows',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('entry_node', sa.String(length=100), nullable=False),
        sa.Column('nodes', sa.JSON(), nullable=False),
        sa.Column('edges', sa.JSON(), nullable=False),
        sa.Column('variables', sa.JSON(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('tags', sa.JSON(), nullable=False),
        sa.Column('execution_count', sa.Integer(), nullable=False),
        sa.Column('last_executed', sa.DateTime(timezone=True), nullable=True),
        sa.Column('average_execution_time_ms', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Create anomalies table
    op.create_table(
        'anomalies',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('severity', sa.String(length=20), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('location', sa.JSON(), nullable=True),
        sa.Column('modalities', sa.JSON(), nullable=True),
        sa.Column('source_apis', sa.JSON(), nullable=True),
        sa.Column('ai_analysis', sa.JSON(), nullable=True),
        sa.Column('cross_verification', sa.JSON(), nullable=True),
        sa.Column('workflow_id', sa.UUID(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['workflow_id'], ['workflows.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_anomalies_status', 'anomalies', ['status'])
    op.create_index('ix_anomalies_timestamp', 'anomalies', ['timestamp'])

    # Create signal_data table
    op.create_table(
        'signal_data',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('anomaly_id', sa.UUID(), nullable=False),
        sa.Column('source_api', sa.String(length=100), nullable=False),
        sa.Column('judgment', sa.JSON(), nullable=False),
        sa.Column('raw_data', sa.JSON(), nullable=True),
        sa.Column('collected_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['anomaly_id'], ['anomalies.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_signal_data_anomaly_id', 'signal_data', ['anomaly_id'])

    # Create workflow_runs table (one checkpoint row per run)
    op.create_table(
        'workflow_runs',
        sa.Column('run_id', sa.String(length=100), nullable=False),
        sa.Column('workflow_id', sa.UUID(), nullable=False),
        sa.Column('anomaly_id', sa.UUID(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('current_node', sa.String(length=100), nullable=True),
        sa.Column('variables', sa.JSON(), nullable=False),
        sa.Column('node_states', sa.JSON(), nullable=False),
        sa.Column('awaiting_review', sa.String(length=100), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('run_id')
    )
    op.create_index('ix_workflow_runs_workflow_id', 'workflow_runs', ['workflow_id'])
    op.create_index('ix_workflow_runs_anomaly_id', 'workflow_runs', ['anomaly_id'])

    # Create audit_events table
    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('anomaly_id', sa.UUID(), nullable=False),
        sa.Column('action', sa.String(length=30), nullable=False),
        sa.Column('actor', sa.String(length=20), nullable=False),
        sa.Column('reasoning', sa.Text(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('changes', sa.JSON(), nullable=False),
        sa.Column('run_id', sa.String(length=100), nullable=True),
        sa.Column('node_id', sa.String(length=100), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_events_anomaly_id', 'audit_events', ['anomaly_id'])


def downgrade() -> None:
    op.drop_index('ix_audit_events_anomaly_id', table_name='audit_events')
    op.drop_table('audit_events')

    op.drop_index('ix_workflow_runs_anomaly_id', table_name='workflow_runs')
    op.drop_index('ix_workflow_runs_workflow_id', table_name='workflow_runs')
    op.drop_table('workflow_runs')

    op.drop_index('ix_signal_data_anomaly_id', table_name='signal_data')
    op.drop_table('signal_data')

    op.drop_index('ix_anomalies_timestamp', table_name='anomalies')
    op.drop_index('ix_anomalies_status', table_name='anomalies')
    op.drop_table('anomalies')

    op.drop_table('workflows')
