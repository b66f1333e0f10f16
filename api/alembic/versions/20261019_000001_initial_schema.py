"""Initial schema - Users, Audits, Monitoring targets and runs

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '20261019_000001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Enum columns store member names, matching sqlalchemy.Enum(PythonEnum)
ENUMS = {
    'plantype': ('FREE', 'PAID'),
    'tier': ('NONE', 'BASIC', 'PRO'),
    'auditkind': ('FREE', 'PAID'),
    'auditsource': ('MANUAL', 'MONITORING'),
    'monitoringprofile': ('WAD', 'EAA'),
    'cadencemode': ('WEEKLY', 'INTERVAL_DAYS', 'MONTHLY_RUNS'),
    'runtrigger': ('MANUAL', 'SCHEDULED'),
    'runstatus': ('RUNNING', 'SUCCESS', 'FAILED'),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    for name, values in ENUMS.items():
        quoted = ", ".join(f"'{value}'" for value in values)
        op.execute(f"CREATE TYPE {name} AS ENUM ({quoted})")

    # Accounts and their entitlements
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('plan', _enum('plantype'), nullable=False, server_default='FREE'),
        sa.Column('free_scan_used', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('paid_scan_completed', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('scan_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('scan_tier', _enum('tier'), nullable=False, server_default='NONE'),
        sa.Column('monitoring_active', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('monitoring_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('monitoring_tier', _enum('tier'), nullable=False, server_default='NONE'),
        sa.Column('monitoring_domains_limit', sa.Integer(), nullable=True),
        sa.Column('monitoring_monthly_runs', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.CheckConstraint('scan_credits >= 0', name='ck_users_scan_credits_non_negative'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # Audit results
    op.create_table(
        'audits',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('url', sa.String(2048), nullable=False),
        sa.Column('kind', _enum('auditkind'), nullable=False),
        sa.Column('source', _enum('auditsource'), nullable=False, server_default='MANUAL'),
        sa.Column('summary', sa.JSON(), nullable=False),
        sa.Column('top_issues', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_audits_user_id', 'audits', ['user_id'])
    op.create_index('ix_audits_user_created', 'audits', ['user_id', 'created_at'])

    op.create_table(
        'audit_details',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('audit_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('audits.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('url', sa.String(2048), nullable=False),
        sa.Column('issues', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_audit_details_audit_id', 'audit_details', ['audit_id'], unique=True)
    op.create_index('ix_audit_details_user_id', 'audit_details', ['user_id'])

    # Monitoring
    op.create_table(
        'monitoring_targets',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('default_url', sa.String(2048), nullable=False),
        sa.Column('normalized_url', sa.String(2048), nullable=False),
        sa.Column('profile', _enum('monitoringprofile'), nullable=False, server_default='WAD'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('cadence_mode', _enum('cadencemode'), nullable=False, server_default='WEEKLY'),
        sa.Column('cadence_value', sa.Integer(), nullable=True),
        sa.Column('anchor_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
    )
    op.create_index('ix_monitoring_targets_user_id', 'monitoring_targets', ['user_id'])
    op.create_index('ix_monitoring_targets_due', 'monitoring_targets', ['active', 'next_run_at'])
    op.create_index(
        'uq_monitoring_targets_user_url_live',
        'monitoring_targets',
        ['user_id', 'normalized_url'],
        unique=True,
        postgresql_where=sa.text('deleted_at IS NULL'),
    )

    op.create_table(
        'monitoring_runs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('target_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('monitoring_targets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('trigger', _enum('runtrigger'), nullable=False),
        sa.Column('run_url', sa.String(2048), nullable=False),
        sa.Column('status', _enum('runstatus'), nullable=False, server_default='RUNNING'),
        sa.Column('audit_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('audits.id', ondelete='SET NULL'), nullable=True),
        sa.Column('summary_json', sa.JSON(), nullable=True),
        sa.Column('diff_json', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_monitoring_runs_target_id', 'monitoring_runs', ['target_id'])
    op.create_index('ix_monitoring_runs_status', 'monitoring_runs', ['status'])
    op.create_index('ix_monitoring_runs_target_started', 'monitoring_runs', ['target_id', 'started_at'])


def downgrade() -> None:
    op.drop_table('monitoring_runs')
    op.drop_table('monitoring_targets')
    op.drop_table('audit_details')
    op.drop_table('audits')
    op.drop_table('users')

    for name in reversed(list(ENUMS)):
        op.execute(f"DROP TYPE {name}")
