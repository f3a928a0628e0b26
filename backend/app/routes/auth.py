"""Rutas de autenticación: inicio y cierre de sesión, usuario actual."""

from datetime import timedelta

from flask import current_app, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from . import api
from ..auth import SESSION_COOKIE_NAME, require_session
from ..extensions import bcrypt, db, limiter
from ..models import Users, as_utc, utcnow
from ..notifications import create_notification
from ..services import impersonation
from ..services.audit import record_audit
from ..services.bans import serialize_ban
from ..services.request_utils import get_client_ip, get_user_agent
from ..services.security_log import log_failed_login, log_logout, log_successful_login
from ..services.sessions import create_session, delete_session, terminate_previous_sessions
from ..services.two_factor import remaining_backup_codes, verify_2fa_or_backup
from ..services.validate import normalize_email


def attach_session_cookie(response, session):
    """Entrega el token como cookie httponly y desactiva la caché."""
    max_age = int(timedelta(days=current_app.config.get("SESSION_TTL_DAYS", 7)).total_seconds())
    response.set_cookie(
        SESSION_COOKIE_NAME,
        session.session_token,
        max_age=max_age,
        httponly=True,
        secure=bool(current_app.config.get("SESSION_COOKIE_SECURE", False)),
        samesite="Lax",
        path="/",
    )
    response.headers["Cache-Control"] = "no-store"
    return response


def serialize_current_user(user):
    return {
        "id": str(user.id),
        "name": user.name,
        "email": user.email,
        "role": user.role.name if user.role is not None else None,
        "roles": sorted(user.role_names()),
        "permissions": sorted(user.permission_names()),
        "status": user.status,
        "is_verified": bool(user.is_verified),
        "created_at": as_utc(user.created_at).isoformat() if user.created_at else None,
        "two_factor_enabled": bool(user.is_2fa_enabled),
    }


def _register_failed_attempt(user, email):
    max_attempts = int(current_app.config.get("MAX_FAILED_LOGIN_ATTEMPTS", 3))
    user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
    failed_attempts = user.failed_login_attempts
    locked = failed_attempts >= max_attempts
    if locked:
        minutes = int(current_app.config.get("ACCOUNT_LOCKOUT_MINUTES", 15))
        user.locked_until = utcnow() + timedelta(minutes=minutes)
        user.failed_login_attempts = 0

    record_audit(
        "auth.login.failed",
        description="Contraseña incorrecta",
        severity="medium",
        target_entity_type="user",
        target_entity_id=user.id,
        details={"failed_attempts": int(failed_attempts), "locked": locked},
        user_id=user.id,
    )
    if locked:
        record_audit(
            "auth.account.locked",
            description="Cuenta bloqueada por intentos fallidos",
            severity="high",
            target_entity_type="user",
            target_entity_id=user.id,
            details={"locked_until": user.locked_until.isoformat()},
            user_id=user.id,
        )
        create_notification(
            user.id,
            category="security",
            title="Cuenta bloqueada por seguridad",
            body="Detectamos múltiples intentos fallidos de inicio de sesión.",
            payload={"ip": get_client_ip(request), "locked_until": user.locked_until.isoformat()},
        )
    log_failed_login(email, "account_locked" if locked else "invalid_password")
    return locked


@api.post("/login")
@limiter.limit(lambda: current_app.config.get("RATELIMIT_LOGIN", "10 per 5 minutes"))
def login_user():
    """Inicio de sesión: devuelve session_token y aplica el límite de sesiones del rol."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify(error="No se proporcionaron datos JSON."), 400

    email = normalize_email(data.get("email"))
    password = (data.get("password") or "").strip()
    if not email or not password:
        return jsonify(error="Email y contraseña son requeridos."), 400

    user = db.session.execute(
        db.select(Users).where(Users.email == email, Users.deleted_at.is_(None))
    ).scalar_one_or_none()
    if user is None:
        log_failed_login(email, "unknown_email")
        return jsonify(error="Credenciales inválidas."), 401

    locked_until = as_utc(user.locked_until)
    if locked_until is not None:
        if locked_until > utcnow():
            return jsonify(
                error="Tu cuenta está bloqueada temporalmente por intentos fallidos. Intenta más tarde.",
                locked_until=locked_until.isoformat(),
            ), 423
        user.locked_until = None

    if not bcrypt.check_password_hash(user.password_hash, password):
        locked = _register_failed_attempt(user, email)
        try:
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.error(
                "No se pudo registrar intento de login fallido: %s", exc,
                extra={"event": "auth.login.failed_db_error", "user_id": str(user.id)},
            )
            return jsonify(error="Error interno al procesar la solicitud."), 500
        if locked:
            return jsonify(error="Tu cuenta fue bloqueada por intentos fallidos. Intenta más tarde."), 423
        return jsonify(error="Credenciales inválidas."), 401

    backup_entry = None
    if user.is_2fa_enabled:
        otp_code = str(data.get("otp") or data.get("otp_code") or data.get("code") or "").strip()
        if not otp_code:
            return jsonify(error="Se requiere el código de autenticación en dos pasos.", requires_2fa=True), 401
        valid, backup_entry = verify_2fa_or_backup(user, otp_code)
        if not valid:
            log_failed_login(email, "invalid_2fa_code")
            return jsonify(error="Código de verificación inválido.", requires_2fa=True), 401

    user.failed_login_attempts = 0
    user.locked_until = None
    ban = user.current_ban()

    try:
        session = create_session(user, request)
        terminated = terminate_previous_sessions(user, session)
        log_successful_login(
            user,
            {
                "session_id": session.session_hash[:8],
                "used_backup_code": backup_entry is not None,
                "terminated_sessions": terminated,
                "banned": ban is not None,
            },
        )
        create_notification(
            user.id,
            category="security",
            title="Nuevo inicio de sesión",
            body=f"Se inició sesión desde {get_client_ip(request) or 'origen desconocido'}.",
            payload={"ip": get_client_ip(request), "user_agent": get_user_agent(request)},
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error(
            "Error al crear sesión: %s", exc,
            extra={"event": "auth.login.session_error", "user_id": str(user.id)},
        )
        return jsonify(error="Error interno al iniciar sesión."), 500

    payload = {
        "message": f"Inicio de sesión exitoso para {user.email}",
        "session_token": session.session_token,
        "user_id": str(user.id),
        "terminated_sessions": terminated,
    }
    if ban is not None:
        payload["banned"] = True
        payload["ban"] = serialize_ban(ban)
    return attach_session_cookie(jsonify(payload), session), 200


@api.post("/logout")
@require_session(allow_banned=True)
def logout_user():
    """Cierra la sesión actual; una impersonación activa se da por terminada."""
    session = g.current_session
    user = g.current_user
    try:
        if impersonation.is_active(session):
            impersonation.terminate(session, reason="logout", rotate=False)
        log_logout(user)
        delete_session(session)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("Error al cerrar sesión: %s", exc, extra={"event": "auth.logout_failed"})
        return jsonify(error="No se pudo cerrar la sesión."), 500

    response = jsonify(message="Sesión cerrada.")
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return response, 200


@api.get("/user/me")
@require_session(allow_banned=True)
def get_current_user_details():
    """Datos del usuario autenticado, su baneo vigente y la impersonación en curso."""
    user = g.current_user
    payload = serialize_current_user(user)
    payload["two_factor_backup_codes"] = remaining_backup_codes(user)
    payload["ban"] = serialize_ban(user.current_ban())
    payload["impersonation"] = impersonation.get_sanitized_context(g.current_session) or {"active": False}
    db.session.commit()
    return jsonify(payload), 200
