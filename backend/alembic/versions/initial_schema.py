"""Initial schema: organizations, jobs, job logs, cleanup records

Key points:
1. `jobs.organization_id` and `cleanup_records.organization_id` carry no
   foreign key so offboard jobs and cleanup ledgers outlive a purged organization
2. `job_logs.id` is an autoincrement integer used as the log paging cursor
3. Enum columns store lowercase values

Revision ID: initial_schema
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = 'initial_schema'
down_revision = None
branch_labels = None
depends_on = None

jobtype = postgresql.ENUM('extraction', 'analysis', 'connection_test', 'offboard', name='jobtype', create_type=False)
jobstatus = postgresql.ENUM('pending', 'running', 'completed', 'failed', 'cancelled', name='jobstatus', create_type=False)
jobpriority = postgresql.ENUM('low', 'medium', 'high', 'critical', name='jobpriority', create_type=False)
loglevel = postgresql.ENUM('info', 'warn', 'error', 'success', name='loglevel', create_type=False)
cleanupstatus = postgresql.ENUM('in_progress', 'completed', 'partial', name='cleanupstatus', create_type=False)
alertseverity = postgresql.ENUM('low', 'medium', 'high', 'critical', name='alertseverity', create_type=False)

ENUMS = (jobtype, jobstatus, jobpriority, loglevel, cleanupstatus, alertseverity)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        'organizations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('domain', sa.String(255), nullable=True),
        sa.Column('tenant_id', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('credentials_blob', sa.Text, nullable=True),
        sa.Column('credentials_updated_at', sa.DateTime, nullable=True),
        sa.Column('offboard_scheduled_at', sa.DateTime, nullable=True),
        sa.Column('offboard_reason', sa.Text, nullable=True),
        sa.Column('offboard_grace_period_days', sa.Integer, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table(
        'jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('job_type', jobtype, nullable=False),
        sa.Column('status', jobstatus, nullable=False, server_default='pending'),
        sa.Column('priority', jobpriority, nullable=False, server_default='medium'),
        sa.Column('progress', sa.Integer, nullable=False, server_default='0'),
        sa.Column('current_message', sa.Text, nullable=True),
        sa.Column('parameters', sa.JSON, nullable=False),
        sa.Column('result', sa.JSON, nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('status_flags', sa.JSON, nullable=False),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime, nullable=True),
        sa.Column('completed_at', sa.DateTime, nullable=True),
        sa.Column('duration', sa.Float, nullable=True),
        sa.Column('scheduled_for', sa.DateTime, nullable=True),
    )
    op.create_index('ix_jobs_organization_id', 'jobs', ['organization_id'])
    op.create_index('ix_jobs_status', 'jobs', ['status'])
    # Admission scan: pending jobs of one organization
    op.create_index('ix_jobs_org_status_created', 'jobs', ['organization_id', 'status', 'created_at'])

    op.create_table(
        'job_logs',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('job_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('jobs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('timestamp', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('level', loglevel, server_default='info'),
        sa.Column('message', sa.Text, nullable=False),
    )
    op.create_index('ix_job_logs_job_id', 'job_logs', ['job_id'])
    op.create_index('ix_job_logs_timestamp', 'job_logs', ['timestamp'])

    op.create_table(
        'cleanup_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('organization_name', sa.String(255), nullable=True),
        sa.Column('job_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('steps', sa.JSON, nullable=False),
        sa.Column('status', cleanupstatus, nullable=False, server_default='in_progress'),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('forced', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime, nullable=True),
    )
    op.create_index('ix_cleanup_records_organization_id', 'cleanup_records', ['organization_id'])

    op.create_table(
        'alerts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('job_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('severity', alertseverity, server_default='medium'),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('details', sa.JSON, nullable=False),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_alerts_organization_id', 'alerts', ['organization_id'])

    op.create_table(
        'reports',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('job_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('report_type', sa.String(50), nullable=False),
        sa.Column('file_path', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_reports_organization_id', 'reports', ['organization_id'])

    # Protected default organization
    op.execute(
        "INSERT INTO organizations (id, name, is_active) "
        "VALUES ('00000000-0000-0000-0000-000000000001', 'Default Organization', true)"
    )


def downgrade() -> None:
    op.drop_table('reports')
    op.drop_table('alerts')
    op.drop_table('cleanup_records')
    op.drop_table('job_logs')
    op.drop_table('jobs')
    op.drop_table('organizations')

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
