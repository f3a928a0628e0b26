"""Consulta de la auditoría desde el panel."""

from datetime import timedelta

from flask import jsonify, request
from sqlalchemy import desc, func

from . import api
from ..auth import require_permission, require_session
from ..extensions import db
from ..models import AuditLog, parse_uuid, utcnow
from ..services.audit import serialize_audit_entry
from ..services.pagination import pagination_meta, pagination_params, paginate, read_int_arg

DEFAULT_STATS_DAYS = 7
MAX_DAYS = 365
TOP_ACTIONS_LIMIT = 10


def _days_arg(default=None):
    days = read_int_arg("days", default)
    if days is None:
        return None
    return max(1, min(days, MAX_DAYS))


@api.get("/admin/audit-logs")
@require_session
@require_permission("audit_logs.view")
def admin_list_audit_logs():
    params = pagination_params(default_page_size=25)
    stmt = db.select(AuditLog)

    action = (request.args.get("action") or "").strip()
    if action:
        # "impersonation." filtra por prefijo
        if action.endswith("."):
            stmt = stmt.where(AuditLog.action.like(f"{action}%"))
        else:
            stmt = stmt.where(AuditLog.action == action)

    severity = (request.args.get("severity") or "").strip().lower()
    if severity:
        if severity not in AuditLog.SEVERITIES:
            return jsonify(error="Severidad inválida."), 400
        stmt = stmt.where(AuditLog.severity == severity)

    user_id_arg = request.args.get("user_id")
    if user_id_arg:
        user_id = parse_uuid(user_id_arg)
        if user_id is None:
            return jsonify(error="Identificador de usuario inválido."), 400
        stmt = stmt.where(AuditLog.user_id == user_id)

    days = _days_arg()
    if days:
        stmt = stmt.where(AuditLog.created_at >= utcnow() - timedelta(days=days))

    result = paginate(stmt.order_by(desc(AuditLog.created_at)), **params)
    return jsonify(
        logs=[serialize_audit_entry(entry) for entry in result["items"]],
        **pagination_meta(result),
    ), 200


@api.get("/admin/audit-logs/stats")
@require_session
@require_permission("audit_logs.view")
def admin_audit_log_stats():
    days = _days_arg(DEFAULT_STATS_DAYS)
    since = utcnow() - timedelta(days=days)

    by_severity = dict(
        db.session.execute(
            db.select(AuditLog.severity, func.count())
            .where(AuditLog.created_at >= since)
            .group_by(AuditLog.severity)
        ).all()
    )
    top_actions = db.session.execute(
        db.select(AuditLog.action, func.count().label("total"))
        .where(AuditLog.created_at >= since)
        .group_by(AuditLog.action)
        .order_by(desc("total"))
        .limit(TOP_ACTIONS_LIMIT)
    ).all()

    return jsonify(
        days=days,
        total=sum(by_severity.values()),
        by_severity={severity: int(by_severity.get(severity, 0)) for severity in AuditLog.SEVERITIES},
        top_actions=[{"action": action, "count": int(count)} for action, count in top_actions],
    ), 200


@api.get("/admin/audit-logs/<log_id>")
@require_session
@require_permission("audit_logs.view")
def admin_get_audit_log(log_id):
    entry_id = parse_uuid(log_id)
    entry = db.session.get(AuditLog, entry_id) if entry_id else None
    if entry is None:
        return jsonify(error="Registro de auditoría no encontrado."), 404
    return jsonify(log=serialize_audit_entry(entry)), 200
