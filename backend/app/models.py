import logging
import uuid
from datetime import datetime, timezone
from sqlalchemy import event
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.sql import func
from sqlalchemy.types import JSON as SAJSON, TypeDecorator, CHAR
from sqlalchemy.orm import validates
from .extensions import db


class JSONColumn(TypeDecorator):
    """JSON column that degrades gracefully on non-PostgreSQL engines."""

    impl = SAJSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(SAJSON())


class GUID(TypeDecorator):
    """UUID column que usa CHAR(36) en SQLite."""

    impl = UUID
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(UUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            if isinstance(value, uuid.UUID):
                return value
            return uuid.UUID(str(value))
        if isinstance(value, uuid.UUID):
            return str(value)
        return str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Normaliza fechas leídas de SQLite (naive) a UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_uuid(value):
    """Convierte el valor a UUID o devuelve None si no es válido."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return None


logger = logging.getLogger(__name__)


user_roles_table = db.Table(
    'user_roles',
    db.metadata,
    db.Column('user_id', GUID(), db.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
    db.Column('role_id', GUID(), db.ForeignKey('roles.id', ondelete='CASCADE'), primary_key=True),
)

role_permissions_table = db.Table(
    'role_permissions',
    db.metadata,
    db.Column('role_id', GUID(), db.ForeignKey('roles.id', ondelete='CASCADE'), primary_key=True),
    db.Column('permission_id', GUID(), db.ForeignKey('permissions.id', ondelete='CASCADE'), primary_key=True),
)


# Modelo de Roles
class Roles(db.Model):
    __tablename__ = 'roles'

    id = db.Column(GUID(), primary_key=True, default=uuid.uuid4, server_default=func.gen_random_uuid())
    name = db.Column(db.Text, nullable=False, unique=True)
    description = db.Column(db.Text)

    users = db.relationship('Users', secondary=user_roles_table, back_populates='roles')
    primary_users = db.relationship('Users', back_populates='role', foreign_keys='Users.role_id')
    permissions = db.relationship('Permissions', secondary=role_permissions_table, back_populates='roles', lazy='selectin')


class Permissions(db.Model):
    __tablename__ = 'permissions'

    id = db.Column(GUID(), primary_key=True, default=uuid.uuid4, server_default=func.gen_random_uuid())
    name = db.Column(db.String(100), nullable=False, unique=True)
    description = db.Column(db.Text)

    roles = db.relationship('Roles', secondary=role_permissions_table, back_populates='permissions')


# Modelo de Usuarios
class Users(db.Model):
    __tablename__ = 'users'
    """Cuentas del panel y del sitio.

    Roles disponibles:
      - admin: administración completa, impersonación y revisión de baneos.
      - editor: gestión de contenido con sesión privilegiada.
      - moderator: moderación de usuarios y apelaciones.
      - user: cuenta estándar.

    ``status`` refleja el estado visible de la cuenta (``active`` o
    ``suspended``); la suspensión efectiva se decide con ``current_ban``.
    """

    id = db.Column(GUID(), primary_key=True, default=uuid.uuid4, server_default=func.gen_random_uuid())
    role_id = db.Column(GUID(), db.ForeignKey('roles.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False, default="Usuario")

    email = db.Column(db.String(255), nullable=False, unique=True)
    password_hash = db.Column(db.Text, nullable=False)
    failed_login_attempts = db.Column(db.Integer, nullable=False, default=0)
    locked_until = db.Column(db.DateTime(timezone=True))

    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    verified_at = db.Column(db.DateTime(timezone=True))

    is_2fa_enabled = db.Column(db.Boolean, nullable=False, default=False)
    totp_secret = db.Column(db.Text)

    status = db.Column(db.String(20), nullable=False, default='active')
    last_active_at = db.Column(db.DateTime(timezone=True))

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow)
    deleted_at = db.Column(db.DateTime(timezone=True))

    role = db.relationship('Roles', back_populates='primary_users', foreign_keys=[role_id], lazy='selectin')
    roles = db.relationship('Roles', secondary=user_roles_table, back_populates='users', lazy='selectin')
    sessions = db.relationship('UserSessions', back_populates='user', cascade="all, delete-orphan")
    audit_logs = db.relationship('AuditLog', back_populates='user', passive_deletes=True)
    bans = db.relationship('UserBan', back_populates='user', foreign_keys='UserBan.user_id', cascade="all, delete-orphan")
    backup_codes = db.relationship('TwoFactorBackupCode', back_populates='user', cascade="all, delete-orphan")
    notifications = db.relationship('UserNotification', back_populates='user', cascade="all, delete-orphan")

    @validates('email')
    def _normalize_email(self, key, value):
        return (value or '').strip().lower()

    def role_names(self):
        names = {(role.name or '').lower() for role in (self.roles or []) if role is not None}
        if self.role is not None and self.role.name:
            names.add(self.role.name.lower())
        return names

    def has_role(self, *names):
        wanted = {(name or '').lower() for name in names}
        return bool(self.role_names() & wanted)

    def permission_names(self):
        roles = list(self.roles or [])
        if self.role is not None and self.role not in roles:
            roles.append(self.role)
        return {perm.name for role in roles for perm in (role.permissions or [])}

    def has_permission(self, name):
        return name in self.permission_names()

    def current_ban(self):
        now = utcnow()
        bans = db.session.execute(
            db.select(UserBan)
            .where(UserBan.user_id == self.id, UserBan.is_active.is_(True))
            .order_by(UserBan.banned_at.desc())
        ).scalars()
        for ban in bans:
            expires_at = as_utc(ban.expires_at)
            if expires_at is None or expires_at > now:
                return ban
        return None

    def is_banned(self):
        return self.current_ban() is not None

    @property
    def is_deleted(self):
        return self.deleted_at is not None


# --- Modelo de Sesiones ---
class UserSessions(db.Model):
    __tablename__ = 'user_sessions'

    session_token = db.Column(db.Text, primary_key=True)
    # sha256 del token; identificador público de la sesión
    session_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)
    user_id = db.Column(GUID(), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)

    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.Text)
    impersonation = db.Column(JSONColumn())
    integrity_signature = db.Column(db.String(64))

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    last_activity_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    user = db.relationship('Users', back_populates='sessions')


class SessionLock(db.Model):
    """Sesión que ocupa el panel de administración para un usuario (con TTL)."""
    __tablename__ = 'session_locks'

    user_id = db.Column(GUID(), db.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True)
    session_hash = db.Column(db.String(64), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def is_expired(self, now=None):
        return as_utc(self.expires_at) <= (now or utcnow())


class ImpersonationSession(db.Model):
    __tablename__ = 'impersonation_sessions'

    END_MANUAL = 'manual'
    END_EXPIRED = 'expired'
    END_ADMIN_TERMINATED = 'admin_terminated'

    id = db.Column(GUID(), primary_key=True, default=uuid.uuid4, server_default=func.gen_random_uuid())
    impersonator_id = db.Column(GUID(), db.ForeignKey('users.id', ondelete='SET NULL'), index=True)
    target_id = db.Column(GUID(), db.ForeignKey('users.id', ondelete='SET NULL'), index=True)
    token_hash = db.Column(db.String(64), nullable=False)
    session_hash = db.Column(db.String(64), index=True)

    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    ended_at = db.Column(db.DateTime(timezone=True))
    end_reason = db.Column(db.String(40))

    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.Text)

    impersonator = db.relationship('Users', foreign_keys=[impersonator_id])
    target = db.relationship('Users', foreign_keys=[target_id])

    __table_args__ = (
        db.Index('ix_impersonation_sessions_active', 'ended_at', 'expires_at'),
    )

    def has_expired(self, now=None):
        return as_utc(self.expires_at) <= (now or utcnow())

    def is_active(self, now=None):
        return self.ended_at is None and not self.has_expired(now)

    def end(self, reason=None):
        if self.ended_at is not None:
            return False
        now = utcnow()
        self.ended_at = now
        self.end_reason = reason or (self.END_EXPIRED if self.has_expired(now) else self.END_MANUAL)
        return True


class UserBan(db.Model):
    __tablename__ = 'user_bans'

    id = db.Column(GUID(), primary_key=True, default=uuid.uuid4, server_default=func.gen_random_uuid())
    user_id = db.Column(GUID(), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    banned_by = db.Column(GUID(), db.ForeignKey('users.id', ondelete='SET NULL'))

    reason = db.Column(db.Text, nullable=False)
    admin_notes = db.Column(db.Text)
    is_irrevocable = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    banned_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime(timezone=True))
    unbanned_at = db.Column(db.DateTime(timezone=True))
    unbanned_by = db.Column(GUID(), db.ForeignKey('users.id', ondelete='SET NULL'))
    unban_reason = db.Column(db.Text)

    user = db.relationship('Users', foreign_keys=[user_id], back_populates='bans')
    banner = db.relationship('Users', foreign_keys=[banned_by])
    appeals = db.relationship('BanAppeal', back_populates='ban', cascade="all, delete-orphan")

    def is_permanent(self):
        return self.expires_at is None

    def is_current(self, now=None):
        if not self.is_active:
            return False
        expires_at = as_utc(self.expires_at)
        return expires_at is None or expires_at > (now or utcnow())


class BanAppeal(db.Model):
    __tablename__ = 'ban_appeals'

    STATUS_PENDING = 'pending'
    STATUS_MORE_INFO = 'more_info_requested'
    STATUS_APPROVED = 'approved'
    STATUS_REJECTED = 'rejected'
    STATUSES = (STATUS_PENDING, STATUS_MORE_INFO, STATUS_APPROVED, STATUS_REJECTED)

    id = db.Column(GUID(), primary_key=True, default=uuid.uuid4, server_default=func.gen_random_uuid())
    user_id = db.Column(GUID(), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    ban_id = db.Column(GUID(), db.ForeignKey('user_bans.id', ondelete='CASCADE'), nullable=False)

    reason = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(30), nullable=False, default=STATUS_PENDING, index=True)
    admin_response = db.Column(db.Text)
    reviewed_by = db.Column(GUID(), db.ForeignKey('users.id', ondelete='SET NULL'))
    reviewed_at = db.Column(db.DateTime(timezone=True))

    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.String(500))
    terms_accepted = db.Column(db.Boolean, nullable=False, default=False)
    access_token_hash = db.Column(db.String(64), nullable=False, unique=True)
    evidence_path = db.Column(db.String(255))

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow)

    user = db.relationship('Users', foreign_keys=[user_id])
    reviewer = db.relationship('Users', foreign_keys=[reviewed_by])
    ban = db.relationship('UserBan', back_populates='appeals')

    def can_be_reviewed(self):
        return self.status in (self.STATUS_PENDING, self.STATUS_MORE_INFO)


# Modelo de Auditoría
class AuditLog(db.Model):
    __tablename__ = 'audit_log'

    SEVERITIES = ('low', 'info', 'medium', 'warning', 'high', 'critical')

    id = db.Column(GUID(), primary_key=True, default=uuid.uuid4, server_default=func.gen_random_uuid())
    user_id = db.Column(GUID(), db.ForeignKey('users.id', ondelete='SET NULL'), nullable=True, index=True)

    action = db.Column(db.Text, nullable=False, index=True)
    description = db.Column(db.Text)
    severity = db.Column(db.String(20), nullable=False, default='info')
    target_entity_type = db.Column(db.Text)
    target_entity_id = db.Column(GUID())

    details = db.Column(JSONColumn())
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now(), index=True)

    user = db.relationship('Users', back_populates='audit_logs')


class AdminSetting(db.Model):
    __tablename__ = 'admin_settings'

    key = db.Column(db.String(100), primary_key=True)
    value = db.Column(JSONColumn())
    updated_by = db.Column(GUID(), db.ForeignKey('users.id', ondelete='SET NULL'))
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class UserNotification(db.Model):
    __tablename__ = 'user_notifications'

    id = db.Column(GUID(), primary_key=True, default=uuid.uuid4, server_default=func.gen_random_uuid())
    user_id = db.Column(GUID(), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    category = db.Column(db.String(64), nullable=False, index=True)
    title = db.Column(db.Text, nullable=False)
    body = db.Column(db.Text)
    payload = db.Column(JSONColumn())
    read_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    user = db.relationship('Users', back_populates='notifications')


class TwoFactorBackupCode(db.Model):
    __tablename__ = 'user_backup_codes'

    id = db.Column(GUID(), primary_key=True, default=uuid.uuid4, server_default=func.gen_random_uuid())
    user_id = db.Column(GUID(), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    code_hash = db.Column(db.String(128), nullable=False)
    used_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    user = db.relationship('Users', back_populates='backup_codes')


@event.listens_for(AuditLog, 'before_update')
def _audit_log_is_append_only(mapper, connection, target):
    raise ValueError("Las entradas de auditoría no se pueden modificar.")


@event.listens_for(Users, 'after_insert')
def _log_user_created(mapper, connection, target):
    logger.debug('Usuario %s insertado con rol %s', target.id, target.role_id)
