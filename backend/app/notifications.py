"""Notificaciones internas para usuarios y administradores."""
from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from sqlalchemy import func, select

from .extensions import db
from .models import Roles, UserNotification, Users, as_utc, user_roles_table, utcnow

NOTIFICATION_CATEGORIES: Dict[str, Dict[str, str]] = {
    "ban_appeal": {"label": "Apelaciones"},
    "security": {"label": "Seguridad"},
    "account": {"label": "Cuenta"},
}


def serialize_notification(notification: UserNotification) -> Dict[str, Any]:
    return {
        "id": str(notification.id),
        "category": notification.category,
        "title": notification.title,
        "body": notification.body,
        "payload": dict(notification.payload or {}),
        "created_at": as_utc(notification.created_at).isoformat() if notification.created_at else None,
        "read_at": as_utc(notification.read_at).isoformat() if notification.read_at else None,
    }


def count_unread(user_id, *, session=None) -> int:
    session = session or db.session
    value = session.execute(
        select(func.count()).select_from(UserNotification).where(
            UserNotification.user_id == user_id,
            UserNotification.read_at.is_(None),
        )
    ).scalar()
    return int(value or 0)


def create_notification(
    user_id,
    *,
    category: str,
    title: str,
    body: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    session=None,
) -> Optional[UserNotification]:
    session = session or db.session
    category = (category or "").strip().lower()
    if not user_id or not category or not title:
        return None

    notification = UserNotification(
        user_id=user_id,
        category=category,
        title=title,
        body=body,
        payload=payload or {},
    )
    session.add(notification)
    session.flush([notification])
    return notification


def users_with_role(role_name: str, *, session=None):
    """Usuarios activos que tienen ``role_name`` como rol principal o adicional."""
    session = session or db.session
    role_ids = select(Roles.id).where(Roles.name == role_name).scalar_subquery()
    secondary = select(user_roles_table.c.user_id).where(user_roles_table.c.role_id == role_ids)
    stmt = select(Users).where(
        Users.deleted_at.is_(None),
        (Users.role_id == role_ids) | Users.id.in_(secondary),
    )
    return list(session.execute(stmt).scalars())


def notify_role(role_name: str, *, category: str, title: str, body: Optional[str] = None,
                payload: Optional[Dict[str, Any]] = None, session=None) -> int:
    created = 0
    for user in users_with_role(role_name, session=session):
        if create_notification(user.id, category=category, title=title, body=body, payload=payload, session=session):
            created += 1
    return created


def mark_notifications_read(user_id, notification_ids: Iterable, *, session=None) -> int:
    session = session or db.session
    ids = [nid for nid in notification_ids if nid]
    if not ids:
        return 0
    updated = (
        session.query(UserNotification)
        .filter(
            UserNotification.user_id == user_id,
            UserNotification.id.in_(ids),
            UserNotification.read_at.is_(None),
        )
        .update({"read_at": utcnow()}, synchronize_session=False)
    )
    if updated:
        session.flush()
    return int(updated or 0)


def mark_all_read(user_id, *, category: Optional[str] = None, session=None) -> int:
    session = session or db.session
    query = session.query(UserNotification).filter(
        UserNotification.user_id == user_id,
        UserNotification.read_at.is_(None),
    )
    if category:
        query = query.filter(UserNotification.category == category)
    updated = query.update({"read_at": utcnow()}, synchronize_session=False)
    if updated:
        session.flush()
    return int(updated or 0)
