"""
Apelaciones de baneo: envío por el usuario suspendido y revisión administrativa.

El usuario recibe un token de acceso para consultar el estado sin iniciar
sesión; en la base solo se guarda su sha256.
"""
import hashlib
import re
import secrets
from datetime import timedelta

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import BanAppeal, UserBan, as_utc, parse_uuid, utcnow
from ..notifications import create_notification, notify_role
from . import appeal_evidence
from .errors import BanAppealError
from .bans import deactivate_ban
from .pagination import paginate, parse_iso_datetime
from .permissions import ROLE_ADMIN
from .request_utils import safe_client_ip, truncated_user_agent

APPEAL_USER_AGENT_MAX_LENGTH = 500
REJECTION_MIN_LENGTH = 20
RESPONSE_MAX_LENGTH = 1000
INFO_REQUEST_MIN_LENGTH = 10

ACCEPTED_TERMS_VALUES = {"1", "yes", "on", "true"}
SPAM_KEYWORDS = ("viagra", "cialis", "casino", "lottery", "prize", "winner", "click here", "buy now")
_REPEATED_CHAR_RE = re.compile(r"(.)\1{20,}")
_URL_RE = re.compile(r"https?://")
_TAG_RE = re.compile(r"<[^>]*>")

STATUS_LABELS = {
    BanAppeal.STATUS_PENDING: "Pendiente",
    BanAppeal.STATUS_MORE_INFO: "Información solicitada",
    BanAppeal.STATUS_APPROVED: "Aprobada",
    BanAppeal.STATUS_REJECTED: "Rechazada",
}


def strip_tags(value):
    return _TAG_RE.sub("", value or "").strip()


def hash_access_token(token):
    return hashlib.sha256((token or "").encode("utf-8")).hexdigest()


def contains_spam_patterns(text):
    if _REPEATED_CHAR_RE.search(text):
        return True
    if len(_URL_RE.findall(text)) > 3:
        return True
    lowered = text.lower()
    return any(keyword in lowered for keyword in SPAM_KEYWORDS)


def terms_were_accepted(value):
    if value is True:
        return True
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)):
        return value == 1
    return str(value).strip().lower() in ACCEPTED_TERMS_VALUES


def _appeal_for_ban(ban):
    return db.session.execute(
        db.select(BanAppeal).where(BanAppeal.ban_id == ban.id).order_by(BanAppeal.created_at.desc())
    ).scalars().first()


def can_user_appeal(user):
    ban = user.current_ban()
    if ban is None:
        return {"can_appeal": False, "reason": "No tienes ningún baneo activo.", "ban": None, "appeal": None}

    if ban.is_irrevocable:
        return {
            "can_appeal": False,
            "reason": "Este baneo es irrevocable y no puede ser apelado. "
                      "Por favor, contacta con el soporte si crees que esto es un error.",
            "ban": ban,
            "appeal": None,
        }

    appeal = _appeal_for_ban(ban)
    if appeal is not None:
        return {
            "can_appeal": False,
            "reason": f"Ya has enviado una apelación para este baneo. Estado: {STATUS_LABELS.get(appeal.status, appeal.status)}",
            "ban": ban,
            "appeal": appeal,
        }

    return {"can_appeal": True, "reason": None, "ban": ban, "appeal": None}


def submit_appeal(user, data, req=None, evidence=None):
    """Crea la apelación; devuelve ``(apelación, token_en_claro)``.

    ``evidence`` es un archivo opcional (imagen) que se guarda de forma privada.
    """
    eligibility = can_user_appeal(user)
    if not eligibility["can_appeal"]:
        raise BanAppealError(eligibility["reason"], 403 if eligibility["ban"] is None else 409)
    ban = eligibility["ban"]

    config = current_app.config
    min_length = int(config.get("BAN_APPEAL_MIN_LENGTH", 50))
    max_length = int(config.get("BAN_APPEAL_MAX_LENGTH", 2000))

    reason = strip_tags(str(data.get("reason") or ""))
    if len(reason) < min_length:
        raise BanAppealError(f"La razón de la apelación debe tener al menos {min_length} caracteres.")
    if len(reason) > max_length:
        raise BanAppealError(f"La razón de la apelación no puede exceder {max_length} caracteres.")

    if config.get("BAN_APPEAL_SPAM_DETECTION_ENABLED", True) and contains_spam_patterns(reason):
        raise BanAppealError("El contenido de la apelación contiene patrones sospechosos.")

    if not terms_were_accepted(data.get("terms_accepted")):
        raise BanAppealError("Debes aceptar los términos y condiciones para enviar una apelación.")

    window = timedelta(minutes=int(config.get("BAN_APPEAL_DUPLICATE_WINDOW_MINUTES", 5)))
    recent = db.session.execute(
        db.select(func.count()).select_from(BanAppeal).where(
            BanAppeal.user_id == user.id,
            BanAppeal.created_at > utcnow() - window,
        )
    ).scalar()
    if recent:
        raise BanAppealError(
            "Ya has enviado una apelación recientemente. Por favor espera antes de enviar otra.", 429
        )

    extension = appeal_evidence.validate_evidence(evidence) if evidence is not None else None

    token = secrets.token_urlsafe(32)
    evidence_path = appeal_evidence.store_evidence(evidence, user.id, extension) if evidence is not None else None
    appeal = BanAppeal(
        user_id=user.id,
        ban_id=ban.id,
        reason=reason,
        status=BanAppeal.STATUS_PENDING,
        ip_address=safe_client_ip(req),
        user_agent=strip_tags(truncated_user_agent(req, APPEAL_USER_AGENT_MAX_LENGTH) or "Desconocido"),
        terms_accepted=True,
        access_token_hash=hash_access_token(token),
        evidence_path=evidence_path,
    )
    db.session.add(appeal)
    try:
        db.session.flush([appeal])
    except SQLAlchemyError:
        appeal_evidence.delete_evidence(evidence_path)
        raise

    current_app.logger.info(
        "Apelación de baneo enviada",
        extra={
            "event": "ban_appeal.submitted",
            "appeal_id": str(appeal.id),
            "user_id": str(user.id),
            "ban_id": str(ban.id),
            "reason_length": len(reason),
            "has_evidence": evidence_path is not None,
        },
    )
    notify_role(
        ROLE_ADMIN,
        category="ban_appeal",
        title="Nueva apelación de baneo",
        body=f"{user.name} ha enviado una apelación.",
        payload={"appeal_id": str(appeal.id), "user_id": str(user.id)},
    )
    return appeal, token


def _notify_user_of_review(appeal):
    titles = {
        BanAppeal.STATUS_APPROVED: "Tu apelación fue aprobada",
        BanAppeal.STATUS_REJECTED: "Tu apelación fue rechazada",
        BanAppeal.STATUS_MORE_INFO: "Se necesita más información sobre tu apelación",
    }
    create_notification(
        appeal.user_id,
        category="ban_appeal",
        title=titles.get(appeal.status, "Tu apelación fue actualizada"),
        body=appeal.admin_response,
        payload={"appeal_id": str(appeal.id), "status": appeal.status},
    )


def review_appeal(appeal, admin, decision, response=None):
    if not admin.has_role(ROLE_ADMIN):
        raise BanAppealError("No tienes permisos para revisar apelaciones.", 403)

    if decision not in ("approve", "reject"):
        raise BanAppealError('Decisión inválida. Debe ser "approve" o "reject".')

    if not appeal.can_be_reviewed():
        raise BanAppealError("Esta apelación ya ha sido revisada.", 409)

    ban = db.session.get(UserBan, appeal.ban_id) if appeal.ban_id else None
    if ban is None:
        raise BanAppealError("El baneo asociado a esta apelación no existe.", 404)

    cleaned = strip_tags(str(response or ""))
    if decision == "reject":
        if not cleaned:
            raise BanAppealError("Debes proporcionar una razón para rechazar la apelación.")
        if len(cleaned) < REJECTION_MIN_LENGTH:
            raise BanAppealError(f"La respuesta debe tener al menos {REJECTION_MIN_LENGTH} caracteres.")
    if len(cleaned) > RESPONSE_MAX_LENGTH:
        raise BanAppealError(f"La respuesta no puede exceder {RESPONSE_MAX_LENGTH} caracteres.")

    old_status = appeal.status
    appeal.status = BanAppeal.STATUS_APPROVED if decision == "approve" else BanAppeal.STATUS_REJECTED
    appeal.admin_response = cleaned or None
    appeal.reviewed_by = admin.id
    appeal.reviewed_at = utcnow()

    if decision == "approve":
        deactivate_ban(ban, admin, "Apelación aprobada")
    db.session.flush()

    current_app.logger.info(
        "Apelación de baneo revisada",
        extra={
            "event": "ban_appeal.reviewed",
            "appeal_id": str(appeal.id),
            "decision": decision,
            "old_status": old_status,
            "new_status": appeal.status,
            "reviewed_by": str(admin.id),
        },
    )
    _notify_user_of_review(appeal)
    return appeal


def request_more_info(appeal, admin, message):
    if not appeal.can_be_reviewed():
        raise BanAppealError(
            "No se puede solicitar más información para una apelación que ya ha sido aprobada o rechazada.", 409
        )

    cleaned = strip_tags(str(message or ""))
    if len(cleaned) < INFO_REQUEST_MIN_LENGTH:
        raise BanAppealError(f"El mensaje debe tener al menos {INFO_REQUEST_MIN_LENGTH} caracteres.")
    if len(cleaned) > RESPONSE_MAX_LENGTH:
        raise BanAppealError(f"El mensaje no puede exceder {RESPONSE_MAX_LENGTH} caracteres.")

    old_status = appeal.status
    appeal.status = BanAppeal.STATUS_MORE_INFO
    appeal.admin_response = cleaned
    appeal.reviewed_by = admin.id
    appeal.reviewed_at = utcnow()
    db.session.flush()

    current_app.logger.info(
        "Información adicional solicitada",
        extra={
            "event": "ban_appeal.more_info_requested",
            "appeal_id": str(appeal.id),
            "old_status": old_status,
            "admin_id": str(admin.id),
        },
    )
    _notify_user_of_review(appeal)
    return appeal


def get_appeals(filters=None, page=1, per_page=15):
    """Apelaciones filtradas por estado, usuario y rango de fechas, recientes primero."""
    filters = filters or {}
    stmt = db.select(BanAppeal)

    status = filters.get("status")
    if status and status != "all":
        stmt = stmt.where(BanAppeal.status == status)
    user_id = parse_uuid(filters.get("user_id"))
    if user_id is not None:
        stmt = stmt.where(BanAppeal.user_id == user_id)
    from_date = parse_iso_datetime(filters.get("from_date"))
    if from_date is not None:
        stmt = stmt.where(BanAppeal.created_at >= from_date)
    to_date = parse_iso_datetime(filters.get("to_date"), end=True)
    if to_date is not None:
        stmt = stmt.where(BanAppeal.created_at <= to_date)

    return paginate(stmt.order_by(BanAppeal.created_at.desc()), page=page, per_page=per_page)


def get_appeal_by_token(token):
    if not token:
        return None
    return db.session.execute(
        db.select(BanAppeal).where(BanAppeal.access_token_hash == hash_access_token(token))
    ).scalar_one_or_none()


def get_statistics():
    counts = dict(
        db.session.execute(
            db.select(BanAppeal.status, func.count()).group_by(BanAppeal.status)
        ).all()
    )
    approved = counts.get(BanAppeal.STATUS_APPROVED, 0)
    rejected = counts.get(BanAppeal.STATUS_REJECTED, 0)
    reviewed = approved + rejected
    return {
        "total_count": sum(counts.values()),
        "pending_count": counts.get(BanAppeal.STATUS_PENDING, 0),
        "approved_count": approved,
        "rejected_count": rejected,
        "awaiting_info_count": counts.get(BanAppeal.STATUS_MORE_INFO, 0),
        "approval_rate": round(approved / reviewed * 100, 2) if reviewed else 0.0,
    }


def serialize_appeal(appeal, *, include_private=False):
    ban = appeal.ban
    payload = {
        "id": str(appeal.id),
        "status": appeal.status,
        "status_label": STATUS_LABELS.get(appeal.status, appeal.status),
        "reason": appeal.reason,
        "has_evidence": bool(appeal.evidence_path),
        "admin_response": appeal.admin_response,
        "created_at": as_utc(appeal.created_at).isoformat() if appeal.created_at else None,
        "reviewed_at": as_utc(appeal.reviewed_at).isoformat() if appeal.reviewed_at else None,
        "ban": {
            "id": str(ban.id),
            "reason": ban.reason,
            "expires_at": as_utc(ban.expires_at).isoformat() if ban.expires_at else None,
            "is_active": bool(ban.is_active),
        } if ban is not None else None,
    }
    if include_private:
        payload.update({
            "user": {"id": str(appeal.user.id), "name": appeal.user.name, "email": appeal.user.email}
            if appeal.user is not None else None,
            "reviewer": {"id": str(appeal.reviewer.id), "name": appeal.reviewer.name}
            if appeal.reviewer is not None else None,
            "ip_address": appeal.ip_address,
            "user_agent": appeal.user_agent,
        })
    return payload
