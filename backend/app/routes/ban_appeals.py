"""Apelaciones de baneo: envío por el usuario y revisión en el panel."""

from flask import current_app, g, jsonify, request, send_from_directory
from sqlalchemy.exc import SQLAlchemyError

from . import api
from ..auth import require_permission, require_session, resolve_session
from ..extensions import db, limiter
from ..models import BanAppeal, parse_uuid
from ..services import appeal_evidence, ban_appeals
from ..services.audit import record_audit
from ..services.bans import serialize_ban
from ..services.pagination import pagination_meta, pagination_params
from ..services.request_utils import get_client_ip, get_user_agent

RECENT_APPEALS_LIMIT = 5


def _commit(error_message, event):
    try:
        db.session.commit()
        return None
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("%s: %s", error_message, exc, extra={"event": event})
        return jsonify(error=error_message), 500


def _get_appeal_or_404(appeal_id):
    appeal_uuid = parse_uuid(appeal_id)
    appeal = db.session.get(BanAppeal, appeal_uuid) if appeal_uuid else None
    if appeal is None:
        return None, (jsonify(error="Apelación no encontrada."), 404)
    return appeal, None


@api.get("/ban-appeals/eligibility")
@require_session(allow_banned=True)
def ban_appeal_eligibility():
    result = ban_appeals.can_user_appeal(g.current_user)
    return jsonify(
        can_appeal=result["can_appeal"],
        reason=result["reason"],
        ban=serialize_ban(result["ban"]),
        appeal=ban_appeals.serialize_appeal(result["appeal"]) if result["appeal"] is not None else None,
    ), 200


@api.post("/ban-appeals")
@require_session(allow_banned=True)
@limiter.limit(lambda: current_app.config.get("RATELIMIT_BAN_APPEAL", "3 per hour"))
def submit_ban_appeal():
    """Acepta JSON o multipart; en multipart la imagen opcional va en ``evidence``."""
    evidence = None
    if request.mimetype == "multipart/form-data":
        data = request.form.to_dict()
        evidence = request.files.get("evidence")
        if evidence is not None and not evidence.filename:
            evidence = None
    else:
        data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify(error="No se proporcionaron datos JSON."), 400

    appeal, token = ban_appeals.submit_appeal(g.current_user, data, request, evidence=evidence)
    error = _commit("No se pudo enviar la apelación. Intenta más tarde.", "ban_appeal.submit_failed")
    if error:
        appeal_evidence.delete_evidence(appeal.evidence_path)
        return error
    return jsonify(
        message="Tu apelación fue enviada. Te notificaremos cuando sea revisada.",
        appeal=ban_appeals.serialize_appeal(appeal),
        access_token=token,
    ), 201


@api.get("/ban-appeals/status")
def ban_appeal_status():
    """Consulta pública del estado mediante el token entregado al enviar la apelación."""
    token = (request.args.get("token") or "").strip()
    if not token:
        return jsonify(error="Debes indicar el token de la apelación."), 400
    appeal = ban_appeals.get_appeal_by_token(token)
    if appeal is None:
        return jsonify(error="Apelación no encontrada."), 404
    return jsonify(appeal=ban_appeals.serialize_appeal(appeal)), 200


@api.get("/ban-appeals/evidence/<token>")
def ban_appeal_evidence(token):
    """Sirve la evidencia de una apelación; solo con una URL firmada y vigente."""
    appeal_id = appeal_evidence.load_evidence_token(token)
    if appeal_id is None:
        current_app.logger.warning(
            "URL de evidencia inválida o expirada",
            extra={
                "event": "ban_appeal.evidence_invalid_signature",
                "ip": get_client_ip(request),
                "user_agent": get_user_agent(request),
            },
        )
        return jsonify(error="URL inválida o expirada."), 403

    appeal, error = _get_appeal_or_404(appeal_id)
    if error:
        return error
    if not appeal_evidence.evidence_exists(appeal.evidence_path):
        return jsonify(error="Evidencia no encontrada."), 404

    viewer = resolve_session(request)
    record_audit(
        "ban_appeal.evidence_accessed",
        description="Acceso a la evidencia de una apelación de baneo",
        severity="info",
        target_entity_type="ban_appeal",
        target_entity_id=appeal.id,
        details={"appeal_user_id": str(appeal.user_id)},
        user_id=viewer.user_id if viewer is not None else None,
    )
    error = _commit("No se pudo registrar el acceso a la evidencia.", "ban_appeal.evidence_audit_failed")
    if error:
        return error
    return send_from_directory(str(appeal_evidence.evidence_dir()), appeal.evidence_path)


@api.get("/admin/ban-appeals")
@require_session
@require_permission("ban_appeals.review")
def admin_list_ban_appeals():
    params = pagination_params()
    filters = {
        "status": request.args.get("status") or "pending",
        "user_id": request.args.get("user_id"),
        "from_date": request.args.get("from_date"),
        "to_date": request.args.get("to_date"),
    }
    status = filters["status"]
    if status != "all" and status not in BanAppeal.STATUSES:
        return jsonify(error="Estado de apelación inválido."), 400

    result = ban_appeals.get_appeals(filters, **params)
    return jsonify(
        appeals=[ban_appeals.serialize_appeal(appeal, include_private=True) for appeal in result["items"]],
        filters=filters,
        **pagination_meta(result),
    ), 200


@api.get("/admin/ban-appeals/stats")
@require_session
@require_permission("ban_appeals.review")
def admin_ban_appeal_stats():
    recent = ban_appeals.get_appeals({"status": "all"}, page=1, per_page=RECENT_APPEALS_LIMIT)
    return jsonify(
        stats=ban_appeals.get_statistics(),
        recent=[ban_appeals.serialize_appeal(appeal, include_private=True) for appeal in recent["items"]],
    ), 200


@api.get("/admin/ban-appeals/<appeal_id>")
@require_session
@require_permission("ban_appeals.review")
def admin_get_ban_appeal(appeal_id):
    appeal, error = _get_appeal_or_404(appeal_id)
    if error:
        return error
    payload = ban_appeals.serialize_appeal(appeal, include_private=True)
    payload["evidence_url"] = appeal_evidence.get_evidence_url(appeal)
    return jsonify(appeal=payload), 200


@api.post("/admin/ban-appeals/<appeal_id>/review")
@require_session
@require_permission("ban_appeals.review")
def admin_review_ban_appeal(appeal_id):
    appeal, error = _get_appeal_or_404(appeal_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    ban_appeals.review_appeal(appeal, g.current_user, data.get("decision"), data.get("response"))
    error = _commit("No se pudo registrar la revisión.", "ban_appeal.review_failed")
    if error:
        return error

    message = "Apelación aprobada. El usuario fue rehabilitado." if appeal.status == BanAppeal.STATUS_APPROVED \
        else "Apelación rechazada."
    return jsonify(message=message, appeal=ban_appeals.serialize_appeal(appeal, include_private=True)), 200


@api.post("/admin/ban-appeals/<appeal_id>/request-info")
@require_session
@require_permission("ban_appeals.review")
def admin_request_ban_appeal_info(appeal_id):
    appeal, error = _get_appeal_or_404(appeal_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    ban_appeals.request_more_info(appeal, g.current_user, data.get("message"))
    error = _commit("No se pudo solicitar información adicional.", "ban_appeal.request_info_failed")
    if error:
        return error
    return jsonify(
        message="Se solicitó información adicional al usuario.",
        appeal=ban_appeals.serialize_appeal(appeal, include_private=True),
    ), 200
