"""Shared helpers for the append-only audit log."""
from flask import current_app, g, has_request_context, request

from ..extensions import db
from ..models import AuditLog, Users, as_utc
from .request_utils import get_client_ip, get_user_agent

_UNSET = object()


def _user_summary(user):
    if user is None:
        return None
    return {
        "id": str(user.id),
        "email": user.email,
        "name": user.name,
    }


def serialize_audit_entry(entry):
    """Serializa una entrada de auditoría para la API de administración."""
    if not entry:
        return {}

    user_payload = None
    if getattr(entry, "user", None) is not None:
        user_payload = _user_summary(entry.user)
    elif entry.user_id:
        user_payload = _user_summary(db.session.get(Users, entry.user_id))

    target_payload = None
    if entry.target_entity_type or entry.target_entity_id:
        target_payload = {
            "type": entry.target_entity_type,
            "id": str(entry.target_entity_id) if entry.target_entity_id else None,
        }

    return {
        "id": str(entry.id) if entry.id is not None else None,
        "action": entry.action,
        "description": entry.description,
        "severity": entry.severity,
        "created_at": as_utc(entry.created_at).isoformat() if entry.created_at else None,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "details": entry.details or {},
        "user": user_payload,
        "target": target_payload,
    }


def _default_actor(payload):
    if not has_request_context():
        return None
    impersonator = getattr(g, "impersonator", None)
    current = getattr(g, "current_user", None)
    if impersonator is not None:
        if current is not None:
            payload.setdefault("impersonated_user_id", str(current.id))
        return impersonator.id
    return getattr(current, "id", None)


def record_audit(
    action,
    *,
    description=None,
    severity="info",
    target_entity_type=None,
    target_entity_id=None,
    details=None,
    user_id=_UNSET,
):
    """Registra una entrada de auditoría. Nunca lanza: los fallos quedan en el log."""
    try:
        payload = dict(details or {})
        actor = _default_actor(payload) if user_id is _UNSET else user_id
        if severity not in AuditLog.SEVERITIES:
            severity = "info"
        entry = AuditLog(
            user_id=actor,
            action=action,
            description=description,
            severity=severity,
            target_entity_type=target_entity_type,
            target_entity_id=target_entity_id,
            details=payload,
            ip_address=get_client_ip(request) if has_request_context() else None,
            user_agent=get_user_agent(request) if has_request_context() else None,
        )
        db.session.add(entry)
        db.session.flush([entry])
        return entry
    except Exception as exc:
        current_app.logger.warning(
            "No se pudo registrar auditoría (%s): %s",
            action,
            exc,
            extra={"event": "audit.record_failed", "action": action},
        )
        return None
