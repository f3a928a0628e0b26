"""
Registro centralizado de eventos de seguridad.

Cada función emite una línea de log estructurada (el correo solo viaja como
sha256) y, cuando el evento lo amerita, una entrada en la auditoría con la
severidad correspondiente.
"""
import hashlib
import logging
from datetime import datetime, timezone

from flask import current_app, has_request_context, request

from .audit import record_audit
from .request_utils import get_client_ip, get_user_agent


def hash_email(email):
    return hashlib.sha256((email or "").strip().lower().encode("utf-8")).hexdigest()


def _request_fields():
    if not has_request_context():
        return {}
    return {
        "ip": get_client_ip(request),
        "user_agent": get_user_agent(request),
        "url": request.url,
        "method": request.method,
    }


def _user_fields(user):
    if user is None:
        return {}
    return {
        "user_id": str(user.id),
        "user_email_hash": hash_email(user.email),
        "user_roles": sorted(user.role_names()),
    }


def _emit(level, message, event, user=None, **fields):
    extra = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    extra.update(_request_fields())
    extra.update(_user_fields(user))
    extra.update({key: value for key, value in fields.items() if value is not None})
    current_app.logger.log(level, message, extra=extra)


def log_authorization_failure(action, resource_type=None, resource_id=None, user=None):
    _emit(
        logging.WARNING,
        "Autorización denegada",
        "authorization_failed",
        user,
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
    )
    # Solo los roles privilegiados dejan rastro en la auditoría
    if user is not None and user.has_role("admin", "editor"):
        record_audit(
            "authorization_failed",
            description=f"El usuario {user.id} no tiene permiso para {action} sobre {resource_type}",
            severity="high",
            target_entity_type=resource_type,
            details={"action": action, "resource_id": str(resource_id) if resource_id else None},
            user_id=user.id,
        )


def log_suspicious_activity(activity, user=None, context=None, description=None):
    context = dict(context or {})
    _emit(logging.WARNING, "Actividad sospechosa detectada", "suspicious_activity", user, activity=activity, context=context)
    record_audit(
        "suspicious_activity",
        description=description or activity,
        severity="medium",
        details={"activity": activity, **context},
        user_id=getattr(user, "id", None),
    )


def log_security_violation(violation, description, user=None, context=None):
    context = dict(context or {})
    _emit(
        logging.ERROR,
        "Violación de seguridad detectada",
        "security_violation",
        user,
        violation_type=violation,
        description=description,
        context=context,
    )
    record_audit(
        "security_violation",
        description=f"{violation}: {description}",
        severity="critical",
        details={"violation_type": violation, **context},
        user_id=getattr(user, "id", None),
    )


def log_failed_login(email, reason="invalid_credentials"):
    _emit(logging.WARNING, "Intento de inicio de sesión fallido", "failed_login", email_hash=hash_email(email), reason=reason)


def log_successful_login(user, context=None):
    context = dict(context or {})
    _emit(logging.INFO, "Inicio de sesión correcto", "successful_login", user, context=context)
    record_audit(
        "auth.login.succeeded",
        description="Inicio de sesión correcto",
        severity="info",
        target_entity_type="user",
        target_entity_id=user.id,
        details=context,
        user_id=user.id,
    )


def log_logout(user, reason="user_initiated", context=None):
    context = dict(context or {})
    _emit(logging.INFO, "Cierre de sesión", "logout", user, reason=reason, context=context)
    if reason != "user_initiated":
        record_audit(
            "logout",
            description=f"Sesión cerrada: {reason}",
            severity="info",
            details={"reason": reason, **context},
            user_id=user.id,
        )


def log_2fa_event(action, user, context=None):
    context = dict(context or {})
    _emit(logging.INFO, "Evento de doble factor", f"2fa_{action}", user, action=action, context=context)
    record_audit(
        f"2fa_{action}",
        description=f"Doble factor: {action}",
        severity="high",
        target_entity_type="user",
        target_entity_id=user.id,
        details=context,
        user_id=user.id,
    )


def log_security_event(event, description, user=None, context=None, severity="medium"):
    context = dict(context or {})
    _emit(logging.INFO, description, event, user, context=context)
    record_audit(
        event,
        description=description,
        severity=severity,
        details=context,
        user_id=getattr(user, "id", None),
    )
