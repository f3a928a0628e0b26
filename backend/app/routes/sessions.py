"""Dispositivos del usuario: listado y cierre de sus sesiones."""

from flask import current_app, g, jsonify
from sqlalchemy.exc import SQLAlchemyError

from . import api
from ..auth import require_permission, require_session
from ..extensions import db
from ..services.sessions import (
    get_active_sessions,
    get_session_limit,
    serialize_session,
    terminate_all_other_sessions,
    terminate_session,
)


@api.get("/sessions")
@require_session
@require_permission("sessions.manage")
def list_sessions():
    user = g.current_user
    sessions = get_active_sessions(user, g.current_session)
    return jsonify(
        sessions=[serialize_session(s, g.current_session) for s in sessions],
        total=len(sessions),
        limit=get_session_limit(user),
    )


@api.delete("/sessions/<session_hash>")
@require_session
@require_permission("sessions.manage")
def delete_own_session(session_hash):
    if session_hash == g.current_session.session_hash:
        return jsonify(error="No puedes cerrar la sesión actual desde aquí. Usa cerrar sesión."), 400

    if not terminate_session(session_hash, g.current_user, reason="user_terminated"):
        return jsonify(error="Sesión no encontrada."), 404

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("No se pudo cerrar la sesión: %s", exc, extra={"event": "sessions.delete_failed"})
        return jsonify(error="No se pudo cerrar la sesión."), 500
    return jsonify(message="Sesión cerrada correctamente."), 200


@api.post("/sessions/terminate-others")
@require_session
@require_permission("sessions.manage")
def terminate_other_sessions():
    terminated = terminate_all_other_sessions(g.current_user, g.current_session)
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error(
            "No se pudieron cerrar las demás sesiones: %s", exc,
            extra={"event": "sessions.terminate_others_failed"},
        )
        return jsonify(error="No se pudieron cerrar las demás sesiones."), 500
    return jsonify(message=f"Se cerraron {terminated} sesiones.", terminated=terminated), 200
