"""Autenticación de peticiones de la API: sesión bearer, integridad y permisos."""
from functools import wraps

from flask import current_app, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from .extensions import db
from .models import UserSessions, as_utc, utcnow
from .services import impersonation
from .services.audit import record_audit
from .services.security_log import log_authorization_failure, log_security_violation
from .services.sessions import (
    delete_session,
    refresh_signature,
    role_timeout_minutes,
    signature_is_valid,
)

SESSION_COOKIE_NAME = "session_token"


def extract_session_token(req=None):
    """Token de la petición: Bearer, X-Session-Token o cookie."""
    req = req or request
    auth = req.headers.get("Authorization", "")
    token = None
    if auth.startswith("Bearer "):
        token = auth.split(" ", 1)[1].strip()
    if not token:
        token = req.headers.get("X-Session-Token")
    if not token:
        token = req.cookies.get(SESSION_COOKIE_NAME)
    return token or None


def resolve_session(req=None):
    """Sesión vigente asociada a la petición o None."""
    token = extract_session_token(req)
    if not token:
        return None
    session = db.session.get(UserSessions, token)
    if session is None:
        return None
    expires_at = as_utc(session.expires_at)
    if expires_at is not None and expires_at <= utcnow():
        return None
    return session


def _commit_or_rollback(event):
    try:
        db.session.commit()
        return True
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error(
            "Error al guardar el estado de la sesión: %s", exc,
            extra={"event": event},
        )
        return False


def _expire_impersonation(session):
    """Termina la impersonación vencida o cerrada y devuelve su contexto."""
    ctx = dict(impersonation.context(session) or {})
    record = impersonation.get_record(session)
    reason = None
    if record is not None and record.ended_at is not None:
        reason = record.end_reason
    impersonation.terminate(session, reason=reason, rotate=False)
    record_audit(
        "impersonation.expired",
        description="La sesión de impersonación terminó y se restauró al administrador",
        severity="info",
        target_entity_type="user",
        target_entity_id=ctx.get("target_id"),
        details={
            "impersonation_id": ctx.get("db_session_id"),
            "expires_at": ctx.get("expires_at"),
            "end_reason": reason or "expired",
        },
        user_id=ctx.get("impersonator_id"),
    )
    current_app.logger.info(
        "Impersonación expirada restaurada en petición",
        extra={
            "event": "impersonation.expired_on_request",
            "impersonator_id": ctx.get("impersonator_id"),
            "target_id": ctx.get("target_id"),
        },
    )
    return ctx


def _authenticate(allow_banned):
    session = resolve_session()
    if session is None:
        if extract_session_token() is None:
            return None, (jsonify(error="Token de sesión faltante."), 401)
        return None, (jsonify(error="Sesión inválida o expirada."), 401)

    if current_app.config.get("SESSION_VALIDATE_INTEGRITY", True):
        if not signature_is_valid(session):
            log_security_violation(
                "session_integrity_violation",
                "La firma de integridad de la sesión no coincide",
                context={"session_id": session.session_hash[:8], "user_id": str(session.user_id)},
            )
            delete_session(session)
            _commit_or_rollback("auth.integrity_cleanup_failed")
            return None, (jsonify(error="La sesión fue alterada. Inicia sesión nuevamente."), 419)
        if not session.integrity_signature:
            refresh_signature(session)

    g.expired_impersonation = None
    if impersonation.is_active(session):
        if impersonation.has_expired(session) or impersonation.record_was_terminated(session):
            g.expired_impersonation = _expire_impersonation(session)

    user = impersonation.load_user(session.user_id)
    if user is None and impersonation.is_active(session):
        # Objetivo eliminado: la sesión actúa como el administrador hasta cerrar la impersonación
        user = impersonation.load_user(impersonation.context(session).get("impersonator_id"))
    if user is None:
        return None, (jsonify(error="Sesión sin usuario asociado."), 401)

    now = utcnow()
    timeout = role_timeout_minutes(user)
    last_activity = as_utc(session.last_activity_at)
    if last_activity is not None and (now - last_activity).total_seconds() > timeout * 60:
        delete_session(session)
        _commit_or_rollback("auth.timeout_cleanup_failed")
        current_app.logger.info(
            "Sesión cerrada por inactividad",
            extra={"event": "auth.session_timeout", "user_id": str(user.id), "timeout_minutes": timeout},
        )
        return None, (
            jsonify(error="Tu sesión expiró por inactividad.", timeout_minutes=timeout),
            401,
        )

    if not allow_banned and user.is_banned():
        return None, (
            jsonify(error="Tu cuenta está suspendida.", banned=True),
            403,
        )

    session.last_activity_at = now
    if not _commit_or_rollback("auth.activity_update_failed"):
        return None, (jsonify(error="No se pudo validar la sesión."), 500)

    ctx = impersonation.context(session)
    g.impersonator = impersonation.load_user(ctx.get("impersonator_id")) if ctx else None
    g.current_user = user
    g.current_session = session
    return session, None


def require_session(fn=None, *, allow_banned=False):
    """Verifica el token de sesión y carga ``g.current_user``.

    Se usa como ``@require_session`` o ``@require_session(allow_banned=True)``
    para rutas accesibles por usuarios suspendidos.
    """
    if fn is None:
        return lambda view: require_session(view, allow_banned=allow_banned)

    @wraps(fn)
    def wrapper(*args, **kwargs):
        _, error = _authenticate(allow_banned)
        if error is not None:
            return error
        return fn(*args, **kwargs)
    return wrapper


def require_permission(name):
    """Exige ``name`` al usuario autenticado; usar debajo de ``require_session``."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "current_user", None)
            if user is None or not user.has_permission(name):
                log_authorization_failure(
                    name,
                    resource_type=request.endpoint,
                    resource_id=(kwargs or {}).get("user_id") or (kwargs or {}).get("appeal_id"),
                    user=user,
                )
                _commit_or_rollback("auth.denied_audit_failed")
                return jsonify(error="No tienes permiso para realizar esta acción."), 403
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def require_roles(*names):
    """Exige alguno de los roles ``names``; usar debajo de ``require_session``."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "current_user", None)
            if user is None or not user.has_role(*names):
                current_app.logger.warning(
                    "Acceso denegado por rol",
                    extra={
                        "event": "auth.role_denied",
                        "user_id": str(user.id) if user is not None else None,
                        "required_roles": list(names),
                        "path": request.path,
                    },
                )
                return jsonify(error="No tienes permiso para acceder a este recurso."), 403
            return fn(*args, **kwargs)
        return wrapper
    return decorator
