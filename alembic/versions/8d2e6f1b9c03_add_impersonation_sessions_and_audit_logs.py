"""add_impersonation_sessions_and_audit_logs

Revision ID: 8d2e6f1b9c03
Revises: 3a9c51e07b42
Create Date: 2026-09-28 11:02:47.551204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8d2e6f1b9c03'
down_revision: Union[str, Sequence[str], None] = '3a9c51e07b42'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'impersonation_sessions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('impersonator_id', sa.String(length=36), nullable=False),
        sa.Column('target_user_id', sa.String(length=36), nullable=False),
        sa.Column('organization_id', sa.String(length=36), nullable=True),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('active_impersonator_id', sa.String(length=36), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=500), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['impersonator_id'], ['users.id'], name='fk_impersonation_sessions_impersonator_id', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['target_user_id'], ['users.id'], name='fk_impersonation_sessions_target_user_id', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], name='fk_impersonation_sessions_organization_id', ondelete='SET NULL'),
    )
    op.create_index('idx_impersonation_sessions_impersonator', 'impersonation_sessions', ['impersonator_id'])
    op.create_index('idx_impersonation_sessions_target', 'impersonation_sessions', ['target_user_id'])
    op.create_index('idx_impersonation_sessions_status', 'impersonation_sessions', ['status'])
    op.create_index('idx_impersonation_sessions_expires', 'impersonation_sessions', ['expires_at'])
    # active_impersonator_id is NULL once a session is terminal, and NULLs never collide,
    # so this allows at most one active session per impersonator
    op.create_index(
        'uq_impersonation_sessions_active_impersonator',
        'impersonation_sessions',
        ['active_impersonator_id'],
        unique=True,
    )

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('category', sa.String(length=50), nullable=False),
        sa.Column('action', sa.String(length=100), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=True),
        sa.Column('organization_id', sa.String(length=36), nullable=True),
        sa.Column('resource_type', sa.String(length=100), nullable=True),
        sa.Column('resource_id', sa.String(length=255), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('outcome', sa.String(length=20), nullable=False, server_default='success'),
        sa.Column('request_id', sa.String(length=64), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=500), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_audit_logs_user', 'audit_logs', ['user_id', 'created_at'])
    op.create_index('idx_audit_logs_category', 'audit_logs', ['category', 'created_at'])
    op.create_index('idx_audit_logs_action', 'audit_logs', ['action', 'created_at'])
    op.create_index('idx_audit_logs_resource', 'audit_logs', ['resource_type', 'resource_id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('idx_audit_logs_resource', table_name='audit_logs')
    op.drop_index('idx_audit_logs_action', table_name='audit_logs')
    op.drop_index('idx_audit_logs_category', table_name='audit_logs')
    op.drop_index('idx_audit_logs_user', table_name='audit_logs')
    op.drop_table('audit_logs')

    op.drop_index('uq_impersonation_sessions_active_impersonator', table_name='impersonation_sessions')
    op.drop_index('idx_impersonation_sessions_expires', table_name='impersonation_sessions')
    op.drop_index('idx_impersonation_sessions_status', table_name='impersonation_sessions')
    op.drop_index('idx_impersonation_sessions_target', table_name='impersonation_sessions')
    op.drop_index('idx_impersonation_sessions_impersonator', table_name='impersonation_sessions')
    op.drop_table('impersonation_sessions')
