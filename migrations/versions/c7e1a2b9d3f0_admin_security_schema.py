"""Admin security schema: roles, sessions, impersonation, bans and audit

Revision ID: c7e1a2b9d3f0
Revises:
Create Date: 2026-10-18 09:30:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = 'c7e1a2b9d3f0'
down_revision = None
branch_labels = None
depends_on = None


def _uuid(name, *args, **kwargs):
    return sa.Column(name, postgresql.UUID(as_uuid=True), *args, **kwargs)


def _uuid_pk():
    return _uuid('id', server_default=sa.text('gen_random_uuid()'), nullable=False)


def _timestamp(name, **kwargs):
    return sa.Column(name, sa.DateTime(timezone=True), **kwargs)


def upgrade():
    op.create_table(
        'roles',
        _uuid_pk(),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('description', sa.Text()),
        sa.PrimaryKeyConstraint('id', name='pk_roles'),
        sa.UniqueConstraint('name', name='uq_roles_name'),
    )
    op.create_table(
        'permissions',
        _uuid_pk(),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text()),
        sa.PrimaryKeyConstraint('id', name='pk_permissions'),
        sa.UniqueConstraint('name', name='uq_permissions_name'),
    )
    op.create_table(
        'role_permissions',
        _uuid('role_id', sa.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False),
        _uuid('permission_id', sa.ForeignKey('permissions.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('role_id', 'permission_id', name='pk_role_permissions'),
    )

    op.create_table(
        'users',
        _uuid_pk(),
        _uuid('role_id', sa.ForeignKey('roles.id'), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('password_hash', sa.Text(), nullable=False),
        sa.Column('failed_login_attempts', sa.Integer(), nullable=False, server_default='0'),
        _timestamp('locked_until'),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp('verified_at'),
        sa.Column('is_2fa_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('totp_secret', sa.Text()),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        _timestamp('last_active_at'),
        _timestamp('created_at', nullable=False, server_default=sa.text('NOW()')),
        _timestamp('updated_at', nullable=False, server_default=sa.text('NOW()')),
        _timestamp('deleted_at'),
        sa.PrimaryKeyConstraint('id', name='pk_users'),
        sa.UniqueConstraint('email', name='uq_users_email'),
    )
    op.create_table(
        'user_roles',
        _uuid('user_id', sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        _uuid('role_id', sa.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('user_id', 'role_id', name='pk_user_roles'),
    )

    op.create_table(
        'user_sessions',
        sa.Column('session_token', sa.Text(), nullable=False),
        sa.Column('session_hash', sa.String(length=64), nullable=False),
        _uuid('user_id', sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        _timestamp('expires_at', nullable=False),
        sa.Column('ip_address', sa.String(length=45)),
        sa.Column('user_agent', sa.Text()),
        sa.Column('impersonation', postgresql.JSONB()),
        sa.Column('integrity_signature', sa.String(length=64)),
        _timestamp('created_at', nullable=False, server_default=sa.text('NOW()')),
        _timestamp('last_activity_at', nullable=False, server_default=sa.text('NOW()')),
        sa.PrimaryKeyConstraint('session_token', name='pk_user_sessions'),
    )
    op.create_index('ix_user_sessions_session_hash', 'user_sessions', ['session_hash'], unique=True)
    op.create_index('ix_user_sessions_user_id', 'user_sessions', ['user_id'])

    op.create_table(
        'session_locks',
        _uuid('user_id', sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('session_hash', sa.String(length=64), nullable=False),
        _timestamp('expires_at', nullable=False),
        _timestamp('updated_at', nullable=False, server_default=sa.text('NOW()')),
        sa.PrimaryKeyConstraint('user_id', name='pk_session_locks'),
    )

    op.create_table(
        'impersonation_sessions',
        _uuid_pk(),
        _uuid('impersonator_id', sa.ForeignKey('users.id', ondelete='SET NULL')),
        _uuid('target_id', sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('token_hash', sa.String(length=64), nullable=False),
        sa.Column('session_hash', sa.String(length=64)),
        _timestamp('started_at', nullable=False, server_default=sa.text('NOW()')),
        _timestamp('expires_at', nullable=False),
        _timestamp('ended_at'),
        sa.Column('end_reason', sa.String(length=40)),
        sa.Column('ip_address', sa.String(length=45)),
        sa.Column('user_agent', sa.Text()),
        sa.PrimaryKeyConstraint('id', name='pk_impersonation_sessions'),
    )
    op.create_index('ix_impersonation_sessions_impersonator_id', 'impersonation_sessions', ['impersonator_id'])
    op.create_index('ix_impersonation_sessions_target_id', 'impersonation_sessions', ['target_id'])
    op.create_index('ix_impersonation_sessions_session_hash', 'impersonation_sessions', ['session_hash'])
    op.create_index('ix_impersonation_sessions_active', 'impersonation_sessions', ['ended_at', 'expires_at'])

    op.create_table(
        'user_bans',
        _uuid_pk(),
        _uuid('user_id', sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        _uuid('banned_by', sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('admin_notes', sa.Text()),
        sa.Column('is_irrevocable', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp('banned_at', nullable=False, server_default=sa.text('NOW()')),
        _timestamp('expires_at'),
        _timestamp('unbanned_at'),
        _uuid('unbanned_by', sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('unban_reason', sa.Text()),
        sa.PrimaryKeyConstraint('id', name='pk_user_bans'),
    )
    op.create_index('ix_user_bans_user_id', 'user_bans', ['user_id'])

    op.create_table(
        'ban_appeals',
        _uuid_pk(),
        _uuid('user_id', sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        _uuid('ban_id', sa.ForeignKey('user_bans.id', ondelete='CASCADE'), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=30), nullable=False, server_default='pending'),
        sa.Column('admin_response', sa.Text()),
        _uuid('reviewed_by', sa.ForeignKey('users.id', ondelete='SET NULL')),
        _timestamp('reviewed_at'),
        sa.Column('ip_address', sa.String(length=45)),
        sa.Column('user_agent', sa.String(length=500)),
        sa.Column('terms_accepted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('access_token_hash', sa.String(length=64), nullable=False),
        _timestamp('created_at', nullable=False, server_default=sa.text('NOW()')),
        _timestamp('updated_at', nullable=False, server_default=sa.text('NOW()')),
        sa.PrimaryKeyConstraint('id', name='pk_ban_appeals'),
        sa.UniqueConstraint('access_token_hash', name='uq_ban_appeals_access_token_hash'),
    )
    op.create_index('ix_ban_appeals_user_id', 'ban_appeals', ['user_id'])
    op.create_index('ix_ban_appeals_status', 'ban_appeals', ['status'])

    op.create_table(
        'audit_log',
        _uuid_pk(),
        _uuid('user_id', sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('action', sa.Text(), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('severity', sa.String(length=20), nullable=False, server_default='info'),
        sa.Column('target_entity_type', sa.Text()),
        _uuid('target_entity_id'),
        sa.Column('details', postgresql.JSONB()),
        sa.Column('ip_address', sa.String(length=45)),
        sa.Column('user_agent', sa.Text()),
        _timestamp('created_at', nullable=False, server_default=sa.text('NOW()')),
        sa.PrimaryKeyConstraint('id', name='pk_audit_log'),
    )
    op.create_index('ix_audit_log_user_id', 'audit_log', ['user_id'])
    op.create_index('ix_audit_log_action', 'audit_log', ['action'])
    op.create_index('ix_audit_log_created_at', 'audit_log', ['created_at'])

    op.create_table(
        'admin_settings',
        sa.Column('key', sa.String(length=100), nullable=False),
        sa.Column('value', postgresql.JSONB()),
        _uuid('updated_by', sa.ForeignKey('users.id', ondelete='SET NULL')),
        _timestamp('updated_at', nullable=False, server_default=sa.text('NOW()')),
        sa.PrimaryKeyConstraint('key', name='pk_admin_settings'),
    )

    op.create_table(
        'user_notifications',
        _uuid_pk(),
        _uuid('user_id', sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('category', sa.String(length=64), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('body', sa.Text()),
        sa.Column('payload', postgresql.JSONB()),
        _timestamp('read_at'),
        _timestamp('created_at', nullable=False, server_default=sa.text('NOW()')),
        sa.PrimaryKeyConstraint('id', name='pk_user_notifications'),
    )
    op.create_index('ix_user_notifications_user_id', 'user_notifications', ['user_id'])
    op.create_index('ix_user_notifications_category', 'user_notifications', ['category'])

    op.create_table(
        'user_backup_codes',
        _uuid_pk(),
        _uuid('user_id', sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('code_hash', sa.String(length=128), nullable=False),
        _timestamp('used_at'),
        _timestamp('created_at', nullable=False, server_default=sa.text('NOW()')),
        sa.PrimaryKeyConstraint('id', name='pk_user_backup_codes'),
    )
    op.create_index('ix_user_backup_codes_user_id', 'user_backup_codes', ['user_id'])


def downgrade():
    op.drop_index('ix_user_backup_codes_user_id', table_name='user_backup_codes')
    op.drop_table('user_backup_codes')
    op.drop_index('ix_user_notifications_category', table_name='user_notifications')
    op.drop_index('ix_user_notifications_user_id', table_name='user_notifications')
    op.drop_table('user_notifications')
    op.drop_table('admin_settings')
    op.drop_index('ix_audit_log_created_at', table_name='audit_log')
    op.drop_index('ix_audit_log_action', table_name='audit_log')
    op.drop_index('ix_audit_log_user_id', table_name='audit_log')
    op.drop_table('audit_log')
    op.drop_index('ix_ban_appeals_status', table_name='ban_appeals')
    op.drop_index('ix_ban_appeals_user_id', table_name='ban_appeals')
    op.drop_table('ban_appeals')
    op.drop_index('ix_user_bans_user_id', table_name='user_bans')
    op.drop_table('user_bans')
    op.drop_index('ix_impersonation_sessions_active', table_name='impersonation_sessions')
    op.drop_index('ix_impersonation_sessions_session_hash', table_name='impersonation_sessions')
    op.drop_index('ix_impersonation_sessions_target_id', table_name='impersonation_sessions')
    op.drop_index('ix_impersonation_sessions_impersonator_id', table_name='impersonation_sessions')
    op.drop_table('impersonation_sessions')
    op.drop_table('session_locks')
    op.drop_index('ix_user_sessions_user_id', table_name='user_sessions')
    op.drop_index('ix_user_sessions_session_hash', table_name='user_sessions')
    op.drop_table('user_sessions')
    op.drop_table('user_roles')
    op.drop_table('users')
    op.drop_table('role_permissions')
    op.drop_table('permissions')
    op.drop_table('roles')
