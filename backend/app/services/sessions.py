"""
Gestión de sesiones bearer y límites de sesiones concurrentes.

Funciones:
- create_session / rotate_session_token: emisión y rotación de tokens.
- compute_signature / refresh_signature: firma HMAC de los datos críticos.
- terminate_previous_sessions: aplica el límite por rol al iniciar sesión.
- get_active_sessions / terminate_session / terminate_all_other_sessions:
  gestión de dispositivos del usuario.
"""
import hashlib
import hmac
import secrets
from datetime import timedelta

from flask import current_app
from sqlalchemy import delete, func

from ..extensions import db
from ..models import ImpersonationSession, SessionLock, UserSessions, as_utc, utcnow
from .permissions import PRIVILEGED_ROLES, ROLE_USER
from .request_utils import get_client_ip, get_user_agent
from .security_log import log_security_event
from .settings import get_setting

SESSION_TOKEN_BYTES = 64


def hash_token(token):
    return hashlib.sha256((token or "").encode("utf-8")).hexdigest()


def get_session_limit(user):
    limits = current_app.config.get("SESSION_CONCURRENT_LIMITS") or {}
    role_name = (user.role.name if user.role is not None else ROLE_USER).lower()
    fallback = limits.get(ROLE_USER, 3)
    return int(limits.get(role_name, fallback))


def compute_signature(session):
    """HMAC-SHA256 sobre el usuario de la sesión y el registro de impersonación."""
    impersonation = session.impersonation or {}
    critical = f"{session.user_id}|{impersonation.get('db_session_id') or ''}"
    key = str(current_app.config["SECRET_KEY"]).encode("utf-8")
    return hmac.new(key, critical.encode("utf-8"), hashlib.sha256).hexdigest()


def refresh_signature(session):
    session.integrity_signature = compute_signature(session)
    return session.integrity_signature


def signature_is_valid(session):
    # Sesiones sin firma todavía se firman en la primera petición
    if not session.integrity_signature:
        return True
    return hmac.compare_digest(session.integrity_signature, compute_signature(session))


def create_session(user, req=None, *, ttl_days=None):
    """Crea una sesión bearer para el usuario (no hace commit)."""
    ttl = ttl_days if ttl_days is not None else current_app.config.get("SESSION_TTL_DAYS", 7)
    token = secrets.token_urlsafe(SESSION_TOKEN_BYTES)
    now = utcnow()
    session = UserSessions(
        session_token=token,
        session_hash=hash_token(token),
        user_id=user.id,
        expires_at=now + timedelta(days=ttl),
        ip_address=get_client_ip(req) if req is not None else None,
        user_agent=get_user_agent(req) if req is not None else None,
        created_at=now,
        last_activity_at=now,
    )
    refresh_signature(session)
    db.session.add(session)
    db.session.flush([session])
    return session


def rotate_session_token(session):
    """Sustituye el token de la sesión conservando sus datos; devuelve la nueva fila."""
    token = secrets.token_urlsafe(SESSION_TOKEN_BYTES)
    rotated = UserSessions(
        session_token=token,
        session_hash=hash_token(token),
        user_id=session.user_id,
        expires_at=session.expires_at,
        ip_address=session.ip_address,
        user_agent=session.user_agent,
        impersonation=dict(session.impersonation) if session.impersonation else None,
        created_at=session.created_at,
        last_activity_at=utcnow(),
    )
    refresh_signature(rotated)
    old_hash = session.session_hash

    db.session.delete(session)
    db.session.flush()
    db.session.add(rotated)

    # El candado del panel y el registro de impersonación siguen a la sesión
    for model in (SessionLock, ImpersonationSession):
        bound = db.session.execute(
            db.select(model).where(model.session_hash == old_hash)
        ).scalars().all()
        for row in bound:
            row.session_hash = rotated.session_hash
    db.session.flush()
    return rotated


def _impersonation_bound_hashes():
    now = utcnow()
    rows = db.session.execute(
        db.select(ImpersonationSession.session_hash).where(
            ImpersonationSession.ended_at.is_(None),
            ImpersonationSession.expires_at > now,
            ImpersonationSession.session_hash.is_not(None),
        )
    ).scalars()
    return set(rows)


def _is_impersonation_bound(session, bound_hashes):
    return bool(session.impersonation) or session.session_hash in bound_hashes


def _user_sessions(user):
    return list(
        db.session.execute(
            db.select(UserSessions)
            .where(UserSessions.user_id == user.id)
            .order_by(UserSessions.last_activity_at.desc())
        ).scalars()
    )


def terminate_previous_sessions(user, current_session):
    """Conserva la sesión actual y las ``limite - 1`` más recientes; borra el resto."""
    limit = get_session_limit(user)
    bound = _impersonation_bound_hashes()
    keep = max(limit - 1, 0)

    others = [
        s for s in _user_sessions(user)
        if s.session_token != current_session.session_token and not _is_impersonation_bound(s, bound)
    ]
    to_terminate = others[keep:]
    if not to_terminate:
        return 0

    for session in to_terminate:
        _drop_lock_for(session)
        db.session.delete(session)
    db.session.flush()
    terminated = len(to_terminate)

    current_app.logger.info(
        "Sesiones terminadas por límite de rol",
        extra={
            "event": "sessions.limit_enforced",
            "user_id": str(user.id),
            "limit": limit,
            "terminated_count": terminated,
        },
    )
    log_security_event(
        "sessions_terminated",
        f"El usuario superó el límite de sesiones. {terminated} sesiones terminadas.",
        user,
        {"terminated_count": terminated, "session_limit": limit},
    )
    return terminated


def session_exists(session_hash, user_id=None):
    stmt = db.select(func.count()).select_from(UserSessions).where(UserSessions.session_hash == session_hash)
    if user_id is not None:
        stmt = stmt.where(UserSessions.user_id == user_id)
    return bool(db.session.execute(stmt).scalar())


def get_session_by_hash(session_hash):
    return db.session.execute(
        db.select(UserSessions).where(UserSessions.session_hash == session_hash)
    ).scalar_one_or_none()


def serialize_session(session, current=None):
    return {
        "id": session.session_hash,
        "ip_address": session.ip_address,
        "user_agent": session.user_agent,
        "last_activity_at": as_utc(session.last_activity_at).isoformat() if session.last_activity_at else None,
        "created_at": as_utc(session.created_at).isoformat() if session.created_at else None,
        "current": current is not None and session.session_token == current.session_token,
    }


def get_active_sessions(user, current=None):
    """Sesiones vigentes del usuario, sin las que sostienen una impersonación ajena."""
    now = utcnow()
    bound = _impersonation_bound_hashes()
    sessions = []
    for session in _user_sessions(user):
        if as_utc(session.expires_at) <= now:
            continue
        is_current = current is not None and session.session_token == current.session_token
        if not is_current and _is_impersonation_bound(session, bound):
            continue
        sessions.append(session)
    return sessions


def _drop_lock_for(session):
    db.session.execute(
        delete(SessionLock).where(SessionLock.session_hash == session.session_hash)
    )


def delete_session(session):
    """Elimina la sesión y su candado del panel, si lo tiene."""
    _drop_lock_for(session)
    db.session.delete(session)
    db.session.flush()


def terminate_session(session_hash, user, reason="manual"):
    session = db.session.execute(
        db.select(UserSessions).where(
            UserSessions.session_hash == session_hash,
            UserSessions.user_id == user.id,
        )
    ).scalar_one_or_none()
    if session is None or _is_impersonation_bound(session, _impersonation_bound_hashes()):
        return False

    delete_session(session)
    current_app.logger.info(
        "Sesión terminada",
        extra={"event": "sessions.terminated", "user_id": str(user.id), "reason": reason},
    )
    log_security_event(
        "session_terminated",
        f"Sesión terminada: {reason}",
        user,
        {"session_id": session_hash[:8], "reason": reason},
        severity="low",
    )
    return True


def terminate_all_other_sessions(user, current_session):
    bound = _impersonation_bound_hashes()
    others = [
        s for s in _user_sessions(user)
        if s.session_token != current_session.session_token and not _is_impersonation_bound(s, bound)
    ]
    for session in others:
        _drop_lock_for(session)
        db.session.delete(session)
    db.session.flush()

    terminated = len(others)
    if terminated:
        current_app.logger.info(
            "Todas las demás sesiones terminadas",
            extra={"event": "sessions.terminated_others", "user_id": str(user.id), "terminated_count": terminated},
        )
        log_security_event(
            "all_sessions_terminated",
            f"El usuario cerró todas sus otras sesiones ({terminated} sesiones)",
            user,
            {"terminated_count": terminated},
        )
    return terminated


def revoke_user_sessions(user):
    """Borra todas las sesiones del usuario (baneo); devuelve el número eliminado."""
    sessions = _user_sessions(user)
    for session in sessions:
        _drop_lock_for(session)
        db.session.delete(session)
    db.session.flush()
    return len(sessions)


def get_session_count(user):
    return int(
        db.session.execute(
            db.select(func.count()).select_from(UserSessions).where(UserSessions.user_id == user.id)
        ).scalar() or 0
    )


def has_exceeded_limit(user):
    return get_session_count(user) > get_session_limit(user)


def role_timeout_minutes(user):
    if user.has_role(*PRIVILEGED_ROLES):
        return int(current_app.config.get("SESSION_TIMEOUT_PRIVILEGED_MINUTES", 20))
    default = current_app.config.get("SESSION_TIMEOUT_MINUTES", 120)
    try:
        return int(get_setting("session_timeout", default))
    except (TypeError, ValueError):
        return int(default)


def purge_expired_sessions():
    """Elimina sesiones vencidas y candados caducados; devuelve ambos conteos."""
    now = utcnow()
    sessions = db.session.execute(
        delete(UserSessions).where(UserSessions.expires_at <= now)
    ).rowcount or 0
    locks = db.session.execute(
        delete(SessionLock).where(SessionLock.expires_at <= now)
    ).rowcount or 0
    return sessions, locks
