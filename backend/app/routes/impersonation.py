"""Impersonación de usuarios por administradores."""

from flask import current_app, g, jsonify
from sqlalchemy.exc import SQLAlchemyError

from . import api
from .auth import attach_session_cookie, serialize_current_user
from ..auth import require_permission, require_session
from ..extensions import db
from ..models import ImpersonationSession, as_utc, parse_uuid, utcnow
from ..services import impersonation
from ..services.audit import record_audit

DELETED_USER_NAME = "Usuario eliminado"


def _commit(error_message, event):
    try:
        db.session.commit()
        return None
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("%s: %s", error_message, exc, extra={"event": event})
        return jsonify(error=error_message), 500


def _serialize_record(record, now=None):
    now = now or utcnow()
    started_at = as_utc(record.started_at)
    impersonator = record.impersonator
    target = record.target
    return {
        "id": str(record.id),
        "impersonator": impersonation.user_summary(impersonator) if impersonator is not None else None,
        "target": impersonation.user_summary(target) if target is not None else {"name": DELETED_USER_NAME},
        "started_at": started_at.isoformat() if started_at else None,
        "expires_at": as_utc(record.expires_at).isoformat() if record.expires_at else None,
        "duration_minutes": int((now - started_at).total_seconds() // 60) if started_at else 0,
        "ip_address": record.ip_address,
        "user_agent": record.user_agent,
    }


@api.post("/admin/users/<user_id>/impersonate")
@require_session
@require_permission("users.impersonate")
def start_impersonation(user_id):
    actor = g.current_user
    target = impersonation.load_user(user_id)
    if target is None:
        return jsonify(error="Usuario no encontrado."), 404

    session = impersonation.begin(g.current_session, actor, target)
    ctx = impersonation.context(session)
    record_audit(
        "impersonation.start",
        description=f"{actor.name} comenzó a impersonar a {target.name}",
        severity="critical",
        target_entity_type="user",
        target_entity_id=target.id,
        details={
            "impersonation_id": ctx["db_session_id"],
            "target_email": target.email,
            "expires_at": ctx["expires_at"],
            "token_prefix": ctx["session_token"][:impersonation.TOKEN_PREFIX_LENGTH],
        },
        user_id=actor.id,
    )
    error = _commit("No se pudo iniciar la impersonación.", "impersonation.start_failed")
    if error:
        return error

    response = jsonify(
        message=f"Ahora estás viendo la plataforma como {target.name}.",
        session_token=session.session_token,
        impersonation=impersonation.get_sanitized_context(session),
        user=serialize_current_user(target),
    )
    return attach_session_cookie(response, session), 200


@api.post("/impersonation/stop")
@require_session
def stop_impersonation():
    session = g.current_session
    ctx = impersonation.context(session)
    if not ctx:
        return jsonify(error="No hay ninguna impersonación activa.", warning=True), 404

    target = impersonation.load_user(ctx.get("target_id"))
    started_at = impersonation.parse_datetime(ctx.get("started_at"))
    duration = int((utcnow() - started_at).total_seconds()) if started_at else 0
    impersonator_id = parse_uuid(ctx.get("impersonator_id"))

    restored = impersonation.terminate(session, reason=ImpersonationSession.END_MANUAL)
    record_audit(
        "impersonation.stop",
        description="Impersonación finalizada por el administrador",
        severity="info",
        target_entity_type="user",
        target_entity_id=ctx.get("target_id"),
        details={
            "impersonation_id": ctx.get("db_session_id"),
            "duration_seconds": duration,
            "target": impersonation.user_summary(target) if target is not None else {"name": DELETED_USER_NAME},
            "user_was_deleted": target is None,
        },
        user_id=impersonator_id,
    )
    error = _commit("No se pudo finalizar la impersonación.", "impersonation.stop_failed")
    if error:
        return error

    admin = impersonation.load_user(impersonator_id)
    response = jsonify(
        message="Has vuelto a tu cuenta de administrador.",
        session_token=restored.session_token,
        duration_seconds=duration,
        user=serialize_current_user(admin) if admin is not None else None,
    )
    return attach_session_cookie(response, restored), 200


@api.get("/impersonation/heartbeat")
@require_session
def impersonation_heartbeat():
    expired_ctx = getattr(g, "expired_impersonation", None)
    if expired_ctx:
        record_audit(
            "impersonation.heartbeat_expired",
            description="La impersonación expiró y se detectó en el heartbeat",
            severity="info",
            target_entity_type="user",
            target_entity_id=expired_ctx.get("target_id"),
            details={"impersonation_id": expired_ctx.get("db_session_id"), "expires_at": expired_ctx.get("expires_at")},
            user_id=expired_ctx.get("impersonator_id"),
        )
        error = _commit("No se pudo registrar la expiración.", "impersonation.heartbeat_failed")
        if error:
            return error
        return jsonify(
            active=False,
            expired=True,
            message="La sesión de impersonación ha expirado.",
        ), 410

    session = g.current_session
    if not impersonation.is_active(session):
        return jsonify(active=False), 404

    ctx = impersonation.context(session)
    return jsonify(
        active=True,
        expires_at=ctx.get("expires_at"),
        time_remaining_seconds=impersonation.time_remaining_seconds(session),
    ), 200


@api.get("/impersonation/status")
@require_session
def impersonation_status():
    sanitized = impersonation.get_sanitized_context(g.current_session)
    error = _commit("No se pudo consultar la impersonación.", "impersonation.status_failed")
    if error:
        return error
    return jsonify(sanitized or {"active": False}), 200


@api.get("/admin/impersonation/sessions")
@require_session
@require_permission("impersonation.manage")
def list_impersonation_sessions():
    now = utcnow()
    records = impersonation.get_active_sessions()
    return jsonify(
        sessions=[_serialize_record(record, now) for record in records],
        total=len(records),
        max_concurrent=int(current_app.config.get("IMPERSONATION_MAX_CONCURRENT_SESSIONS", 5)),
    ), 200


@api.post("/admin/impersonation/sessions/<session_id>/terminate")
@require_session
@require_permission("impersonation.manage")
def force_terminate_impersonation(session_id):
    record_id = parse_uuid(session_id)
    record = db.session.get(ImpersonationSession, record_id) if record_id else None
    if record is None or not impersonation.terminate_session_by_id(record_id):
        return jsonify(error="Sesión de impersonación no encontrada o ya finalizada."), 404

    record_audit(
        "impersonation.force_terminate",
        description="Sesión de impersonación terminada por un administrador",
        severity="warning",
        target_entity_type="impersonation_session",
        target_entity_id=record.id,
        details={
            "impersonator_id": str(record.impersonator_id) if record.impersonator_id else None,
            "target_id": str(record.target_id) if record.target_id else None,
        },
    )
    error = _commit("No se pudo terminar la sesión de impersonación.", "impersonation.force_terminate_failed")
    if error:
        return error
    return jsonify(message="Sesión de impersonación terminada."), 200
