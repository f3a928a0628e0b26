"""Notificaciones internas del usuario autenticado."""

from flask import current_app, g, jsonify, request
from sqlalchemy import desc
from sqlalchemy.exc import SQLAlchemyError

from . import api
from ..auth import require_session
from ..extensions import db
from ..models import UserNotification, parse_uuid
from ..notifications import (
    NOTIFICATION_CATEGORIES,
    count_unread,
    mark_all_read,
    mark_notifications_read,
    serialize_notification,
)
from ..services.pagination import pagination_meta, pagination_params, paginate


def _notification_filters():
    include_read = str(request.args.get("include_read", "")).strip().lower() in {"1", "true", "yes"}
    category = (request.args.get("category") or "").strip().lower()
    if category and category not in NOTIFICATION_CATEGORIES:
        category = ""
    return include_read, category


@api.get("/notifications")
@require_session(allow_banned=True)
def list_notifications():
    """Lista las notificaciones del usuario con paginación y filtros."""
    params = pagination_params()
    include_read, category = _notification_filters()

    stmt = db.select(UserNotification).where(UserNotification.user_id == g.current_user.id)
    if category:
        stmt = stmt.where(UserNotification.category == category)
    if not include_read:
        stmt = stmt.where(UserNotification.read_at.is_(None))

    result = paginate(stmt.order_by(desc(UserNotification.created_at)), **params)
    categories = {key: meta.get("label", key.title()) for key, meta in NOTIFICATION_CATEGORIES.items()}
    return jsonify(
        data=[serialize_notification(row) for row in result["items"]],
        meta={
            **pagination_meta(result),
            "include_read": include_read,
            "category": category or None,
            "unread": count_unread(g.current_user.id),
        },
        categories=categories,
    )


@api.post("/notifications/<notification_id>/read")
@require_session(allow_banned=True)
def mark_notification_read(notification_id):
    notification_uuid = parse_uuid(notification_id)
    notification = db.session.get(UserNotification, notification_uuid) if notification_uuid else None
    if notification is None or notification.user_id != g.current_user.id:
        return jsonify(error="Notificación no encontrada."), 404

    if notification.read_at is None:
        mark_notifications_read(g.current_user.id, [notification_uuid])

    try:
        db.session.commit()
        db.session.refresh(notification)
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error(
            "No se pudo marcar notificación %s: %s", notification_id, exc,
            extra={"event": "notifications.mark_failed"},
        )
        return jsonify(error="No se pudo actualizar la notificación."), 500

    return jsonify(
        message="Notificación marcada como leída.",
        notification=serialize_notification(notification),
        unread=count_unread(g.current_user.id),
    )


@api.post("/notifications/read-all")
@require_session(allow_banned=True)
def mark_all_notifications_read():
    data = request.get_json(silent=True) or {}
    category = (data.get("category") or "").strip().lower()
    if category and category not in NOTIFICATION_CATEGORIES:
        return jsonify(error="Categoría inválida."), 400

    updated = mark_all_read(g.current_user.id, category=category or None)
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error(
            "No se pudieron marcar notificaciones: %s", exc,
            extra={"event": "notifications.mark_all_failed"},
        )
        return jsonify(error="No se pudieron marcar las notificaciones."), 500

    return jsonify(
        message="Notificaciones marcadas como leídas.",
        updated=updated,
        unread=count_unread(g.current_user.id),
    )
