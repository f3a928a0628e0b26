"""
Detección de inactividad y de sesiones concurrentes en el panel.

El candado ``SessionLock`` indica qué sesión ocupa el panel para cada
usuario; un segundo dispositivo con huella distinta (IP + User-Agent) es
rechazado y queda registrado como actividad sospechosa.
"""
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SessionLock, UserSessions, as_utc, utcnow
from .audit import record_audit
from .request_utils import get_client_ip, get_user_agent, mask_ip
from .security_log import log_suspicious_activity
from .sessions import delete_session
from .settings import get_setting, set_setting

INACTIVITY_SETTING_KEY = "admin_inactivity"

CONFIG_BOUNDS = {
    "inactivity_timeout": (60000, 3600000),
    "warning_time": (30000, 600000),
    "heartbeat_interval": (30000, 600000),
}

LOGOUT_REASONS = ("inactivity_timeout", "manual_logout")


def default_config():
    config = current_app.config
    return {
        "inactivity_timeout": int(config.get("ADMIN_INACTIVITY_TIMEOUT_MS", 15 * 60 * 1000)),
        "warning_time": int(config.get("ADMIN_INACTIVITY_WARNING_MS", 3 * 60 * 1000)),
        "heartbeat_interval": int(config.get("ADMIN_HEARTBEAT_INTERVAL_MS", 2 * 60 * 1000)),
        "enabled": bool(config.get("ADMIN_INACTIVITY_DETECTION_ENABLED", True)),
    }


def get_config():
    merged = default_config()
    stored = get_setting(INACTIVITY_SETTING_KEY, {}) or {}
    for key in merged:
        if key in stored and stored[key] is not None:
            merged[key] = stored[key]
    return merged


def validate_config_update(data):
    """Valida la actualización; devuelve ``(cambios, errores)``."""
    cleaned = {}
    errors = {}
    for key, (minimum, maximum) in CONFIG_BOUNDS.items():
        if data.get(key) is None:
            continue
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, int):
            errors[key] = "Debe ser un número entero."
            continue
        if value < minimum or value > maximum:
            errors[key] = f"Debe estar entre {minimum} y {maximum}."
            continue
        cleaned[key] = value

    if data.get("enabled") is not None:
        if isinstance(data["enabled"], bool):
            cleaned["enabled"] = data["enabled"]
        else:
            errors["enabled"] = "Debe ser verdadero o falso."
    return cleaned, errors


def update_config(changes, user):
    stored = dict(get_setting(INACTIVITY_SETTING_KEY, {}) or {})
    stored.update(changes)
    set_setting(INACTIVITY_SETTING_KEY, stored, updated_by=user.id)
    record_audit(
        "update_inactivity_config",
        description=f"Usuario {user.name} actualizó configuración de inactividad",
        severity="medium",
        target_entity_type="setting",
        details={"changes": changes},
        user_id=user.id,
    )
    return get_config()


def check_fingerprint_change(user, session, req):
    """Registra cambios de IP o User-Agent frente a los del login.

    Devuelve True si la sesión debe cerrarse por cambio de IP.
    """
    current_ip = get_client_ip(req)
    current_ua = get_user_agent(req)

    if session.ip_address and session.ip_address != current_ip:
        current_app.logger.warning(
            "Cambio de IP durante la sesión",
            extra={
                "event": "inactivity.ip_changed",
                "user_id": str(user.id),
                "session_ip": session.ip_address,
                "current_ip": current_ip,
            },
        )
        record_audit(
            "suspicious_ip_change",
            description=f"Cambio de IP detectado durante sesión activa de {user.name}",
            severity="high",
            target_entity_type="user",
            target_entity_id=user.id,
            details={"original_ip": session.ip_address, "new_ip": current_ip, "user_agent": current_ua},
            user_id=user.id,
        )
        if current_app.config.get("ADMIN_LOGOUT_ON_IP_CHANGE", False):
            return True

    if session.user_agent and session.user_agent != current_ua:
        current_app.logger.warning(
            "Cambio de User-Agent durante la sesión",
            extra={"event": "inactivity.user_agent_changed", "user_id": str(user.id), "current_ip": current_ip},
        )
        record_audit(
            "suspicious_user_agent_change",
            description=f"Cambio de User Agent detectado durante sesión de {user.name}",
            severity="medium",
            target_entity_type="user",
            target_entity_id=user.id,
            details={"original_ua": session.user_agent, "new_ua": current_ua, "ip": current_ip},
            user_id=user.id,
        )
    return False


def _lifetime():
    return timedelta(minutes=int(current_app.config.get("SESSION_LIFETIME_MINUTES", 15)))


def _stored_session_if_active(lock, user):
    stored = db.session.execute(
        db.select(UserSessions).where(
            UserSessions.session_hash == lock.session_hash,
            UserSessions.user_id == user.id,
        )
    ).scalar_one_or_none()
    if stored is None:
        return None
    if as_utc(stored.last_activity_at) <= utcnow() - _lifetime():
        return None
    return stored


def is_same_device(stored, req):
    if stored.ip_address is None and stored.user_agent is None:
        return True
    return stored.ip_address == get_client_ip(req) and stored.user_agent == get_user_agent(req)


def reconcile_session_lock(user, session, req):
    """Aplica la política de sesión única del panel.

    Devuelve None si la petición puede continuar o un dict con los datos del
    conflicto cuando otra sesión activa pertenece a un dispositivo distinto.
    """
    if current_app.config.get("ADMIN_ALLOW_CONCURRENT_SESSIONS", False):
        return None

    lock = db.session.get(SessionLock, user.id)
    if lock is not None and not lock.is_expired() and lock.session_hash != session.session_hash:
        stored = _stored_session_if_active(lock, user)
        if stored is not None:
            if is_same_device(stored, req):
                current_app.logger.info(
                    "Invalidando sesión anterior del mismo dispositivo",
                    extra={"event": "inactivity.same_device_replaced", "user_id": str(user.id)},
                )
                delete_session(stored)
            else:
                current_app.logger.warning(
                    "Sesión concurrente desde otro dispositivo",
                    extra={
                        "event": "inactivity.concurrent_session",
                        "user_id": str(user.id),
                        "stored_ip": stored.ip_address,
                        "current_ip": get_client_ip(req),
                    },
                )
                log_suspicious_activity(
                    "concurrent_session_different_device",
                    user,
                    {
                        "stored_ip": stored.ip_address,
                        "current_ip": get_client_ip(req),
                        "stored_session": stored.session_hash[:8],
                        "current_session": session.session_hash[:8],
                    },
                    description="Sesión concurrente detectada desde otra dirección IP",
                )
                return {"other_session_ip": mask_ip(stored.ip_address)}
        else:
            current_app.logger.info(
                "Candado de sesión caducado, se reemplaza",
                extra={"event": "inactivity.stale_lock", "user_id": str(user.id)},
            )

    hours = int(current_app.config.get("ADMIN_SESSION_LOCK_HOURS", 8))
    lock = db.session.get(SessionLock, user.id)
    if lock is None:
        lock = SessionLock(user_id=user.id)
        db.session.add(lock)
    lock.session_hash = session.session_hash
    lock.expires_at = utcnow() + timedelta(hours=hours)
    db.session.flush()
    return None


def touch(user, session):
    now = utcnow()
    session.last_activity_at = now
    user.last_active_at = now
    db.session.flush()
    return now


def session_expires_at(session):
    return as_utc(session.last_activity_at) + _lifetime()
