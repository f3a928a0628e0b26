"""Heartbeat del panel de administración, cierre por inactividad y su configuración."""

from flask import current_app, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from . import api
from ..auth import SESSION_COOKIE_NAME, require_roles, require_session, resolve_session
from ..extensions import db
from ..models import as_utc, utcnow
from ..services import inactivity
from ..services.audit import record_audit
from ..services.impersonation import load_user
from ..services.permissions import ADMIN_PANEL_ROLES, ROLE_ADMIN, ROLE_MODERATOR
from ..services.sessions import delete_session


def _commit(error_message, event):
    try:
        db.session.commit()
        return None
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("%s: %s", error_message, exc, extra={"event": event})
        return jsonify(error=error_message), 500


@api.post("/admin/inactivity/heartbeat")
@require_session
@require_roles(*ADMIN_PANEL_ROLES)
def inactivity_heartbeat():
    user = g.current_user
    session = g.current_session

    if inactivity.check_fingerprint_change(user, session, request):
        delete_session(session)
        error = _commit("No se pudo cerrar la sesión.", "inactivity.ip_logout_failed")
        if error:
            return error
        return jsonify(
            error="Tu dirección IP cambió. Por seguridad debes iniciar sesión nuevamente.",
            force_logout=True,
        ), 401

    conflict = inactivity.reconcile_session_lock(user, session, request)
    if conflict is not None:
        error = _commit("No se pudo registrar la sesión concurrente.", "inactivity.conflict_failed")
        if error:
            return error
        return jsonify(
            error="Se detectó otra sesión activa desde un dispositivo diferente.",
            force_logout=True,
            security_alert=True,
            other_session_ip=conflict["other_session_ip"],
        ), 409

    inactivity.touch(user, session)
    error = _commit("No se pudo actualizar la actividad.", "inactivity.heartbeat_failed")
    if error:
        return error

    return jsonify(
        success=True,
        server_time=utcnow().isoformat(),
        session_expires_at=inactivity.session_expires_at(session).isoformat(),
        user_status=user.status,
    ), 200


@api.post("/admin/inactivity/logout")
def inactivity_logout():
    """Cierre de sesión iniciado por el cliente; idempotente si ya no hay sesión."""
    session = resolve_session(request)
    user = load_user(session.user_id) if session is not None else None
    if session is None or user is None:
        response = jsonify(success=True, message="Sesión ya cerrada")
        response.delete_cookie(SESSION_COOKIE_NAME, path="/")
        return response, 200

    data = request.get_json(silent=True) or {}
    reason = data.get("reason")
    timestamp = data.get("timestamp")
    if reason not in inactivity.LOGOUT_REASONS:
        return jsonify(error="Motivo de cierre inválido."), 400
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        return jsonify(error="El timestamp debe ser un número entero."), 400

    now = utcnow()
    created_at = as_utc(session.created_at)
    last_activity = as_utc(session.last_activity_at)
    record_audit(
        "logout_inactivity",
        description=f"Usuario {user.name} cerró sesión por {reason}",
        severity="low",
        target_entity_type="user",
        target_entity_id=user.id,
        details={
            "reason": reason,
            "client_timestamp": timestamp,
            "session_duration_seconds": int((now - created_at).total_seconds()) if created_at else None,
            "idle_seconds": int((now - last_activity).total_seconds()) if last_activity else None,
        },
        user_id=user.id,
    )
    delete_session(session)
    error = _commit("No se pudo cerrar la sesión.", "inactivity.logout_failed")
    if error:
        return error

    current_app.logger.info(
        "Sesión cerrada desde el panel",
        extra={"event": "inactivity.logout", "user_id": str(user.id), "reason": reason},
    )
    response = jsonify(success=True, message="Sesión cerrada correctamente")
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return response, 200


@api.get("/admin/inactivity/config")
@require_session
@require_roles(ROLE_ADMIN, ROLE_MODERATOR)
def get_inactivity_config():
    return jsonify(inactivity.get_config()), 200


@api.put("/admin/inactivity/config")
@require_session
@require_roles(ROLE_ADMIN)
def update_inactivity_config():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify(error="No se proporcionaron datos JSON."), 400

    changes, errors = inactivity.validate_config_update(data)
    if errors:
        return jsonify(error="Datos de configuración inválidos.", errors=errors), 422
    if not changes:
        return jsonify(error="No se indicó ningún cambio."), 400

    config = inactivity.update_config(changes, g.current_user)
    error = _commit("No se pudo guardar la configuración.", "inactivity.config_update_failed")
    if error:
        return error
    return jsonify(message="Configuración actualizada correctamente.", config=config), 200
