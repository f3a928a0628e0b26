"""
Tests para backend/app/routes/notifications_routes.py y backend/app/notifications.py
"""
import pytest

from backend.app.extensions import db
from backend.app.models import UserNotification
from backend.app.notifications import create_notification, notify_role


def _headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def inbox(app, session_token_factory):
    """Usuario con tres notificaciones sin leer; devuelve (headers, user, ids)."""
    token, user = session_token_factory()
    with app.app_context():
        ids = [
            str(create_notification(user.id, category="security", title="Nuevo inicio de sesión").id),
            str(create_notification(user.id, category="account", title="Cuenta actualizada").id),
            str(create_notification(user.id, category="security", title="Contraseña cambiada").id),
        ]
        db.session.commit()
    return _headers(token), user, ids


class TestListNotifications:
    """GET /api/notifications"""

    def test_lists_unread_with_meta(self, client, inbox):
        headers, _, _ = inbox
        res = client.get("/api/notifications", headers=headers)
        assert res.status_code == 200
        data = res.get_json()
        assert len(data["data"]) == 3
        assert data["meta"]["unread"] == 3
        assert data["meta"]["include_read"] is False
        assert data["meta"]["category"] is None
        assert data["categories"]["security"] == "Seguridad"

    def test_category_filter(self, client, inbox):
        headers, _, _ = inbox
        data = client.get("/api/notifications?category=security", headers=headers).get_json()
        assert {item["category"] for item in data["data"]} == {"security"}
        assert data["meta"]["category"] == "security"

    def test_unknown_category_is_ignored(self, client, inbox):
        headers, _, _ = inbox
        data = client.get("/api/notifications?category=otra", headers=headers).get_json()
        assert len(data["data"]) == 3

    def test_other_users_notifications_are_hidden(self, client, inbox, auth_headers):
        data = client.get("/api/notifications", headers=auth_headers).get_json()
        assert data["data"] == []

    def test_banned_user_can_read_notifications(self, client, inbox, ban_factory):
        headers, user, _ = inbox
        ban_factory(user)
        assert client.get("/api/notifications", headers=headers).status_code == 200


class TestMarkRead:
    """POST /api/notifications/<id>/read y /api/notifications/read-all"""

    def test_mark_single(self, client, inbox):
        headers, _, ids = inbox
        res = client.post(f"/api/notifications/{ids[0]}/read", headers=headers)
        assert res.status_code == 200
        data = res.get_json()
        assert data["notification"]["read_at"] is not None
        assert data["unread"] == 2

        listing = client.get("/api/notifications?include_read=1", headers=headers).get_json()
        assert len(listing["data"]) == 3

    def test_mark_foreign_notification(self, client, inbox, auth_headers):
        _, _, ids = inbox
        assert client.post(f"/api/notifications/{ids[0]}/read", headers=auth_headers).status_code == 404
        assert client.post("/api/notifications/no-existe/read", headers=auth_headers).status_code == 404

    def test_mark_all_by_category(self, client, inbox):
        headers, _, _ = inbox
        res = client.post("/api/notifications/read-all", headers=headers, json={"category": "security"})
        assert res.status_code == 200
        assert res.get_json()["updated"] == 2
        assert res.get_json()["unread"] == 1

    def test_mark_all(self, client, inbox):
        headers, _, _ = inbox
        res = client.post("/api/notifications/read-all", headers=headers)
        assert res.get_json()["updated"] == 3
        assert res.get_json()["unread"] == 0

    def test_invalid_category(self, client, inbox):
        headers, _, _ = inbox
        res = client.post("/api/notifications/read-all", headers=headers, json={"category": "otra"})
        assert res.status_code == 400


class TestNotificationHelpers:
    """create_notification y notify_role."""

    def test_missing_title_creates_nothing(self, app, user_factory):
        user = user_factory()
        with app.app_context():
            assert create_notification(user.id, category="account", title="") is None

    def test_notify_role_reaches_every_admin(self, app, user_factory):
        first = user_factory(role="admin")
        second = user_factory(role="admin")
        user_factory()
        with app.app_context():
            assert notify_role("admin", category="ban_appeal", title="Nueva apelación") == 2
            db.session.commit()
            recipients = set(db.session.execute(db.select(UserNotification.user_id)).scalars())
            assert recipients == {first.id, second.id}
