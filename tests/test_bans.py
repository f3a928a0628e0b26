"""
Tests para las rutas de baneo en backend/app/routes/users.py y services/bans.py
"""
from datetime import timedelta

import pytest

from backend.app.extensions import db
from backend.app.models import AuditLog, UserBan, UserNotification, UserSessions, Users, as_utc, utcnow
from backend.app.services.bans import calculate_ban_expiration
from backend.app.services.errors import BanError


def _headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def moderator_headers(session_token_factory):
    token, moderator = session_token_factory(role="moderator")
    return _headers(token), moderator


def _ban(client, headers, user, **payload):
    body = {"reason": "Publicación de spam reiterada", "duration": "1_week"}
    body.update(payload)
    return client.post(f"/api/admin/users/{user.id}/ban", headers=headers, json=body)


class TestBanUser:
    """POST /api/admin/users/<id>/ban"""

    def test_ban_revokes_sessions_and_notifies(self, app, client, moderator_headers, session_token_factory):
        headers, moderator = moderator_headers
        target_token, target = session_token_factory()

        res = _ban(client, headers, target)

        assert res.status_code == 201
        ban = res.get_json()["ban"]
        assert ban["is_current"] is True
        assert ban["is_permanent"] is False
        assert ban["banned_by"] == moderator.name
        assert 0 < ban["remaining_seconds"] <= 7 * 24 * 3600

        assert client.get("/api/user/me", headers=_headers(target_token)).status_code == 401
        with app.app_context():
            assert db.session.get(UserSessions, target_token) is None
            assert db.session.get(Users, target.id).status == "suspended"
            entry = db.session.execute(
                db.select(AuditLog).where(AuditLog.action == "ban.create")
            ).scalar_one()
            assert entry.severity == "high"
            assert entry.user_id == moderator.id
            assert entry.details["revoked_sessions"] == 1
            notice = db.session.execute(
                db.select(UserNotification).where(UserNotification.user_id == target.id)
            ).scalar_one()
            assert notice.category == "account"

    def test_permanent_ban(self, client, moderator_headers, user_factory):
        headers, _ = moderator_headers
        res = _ban(client, headers, user_factory(), duration="permanent")
        assert res.status_code == 201
        assert res.get_json()["ban"]["expires_at"] is None
        assert res.get_json()["ban"]["is_permanent"] is True

    def test_cannot_ban_self(self, client, moderator_headers):
        headers, moderator = moderator_headers
        assert _ban(client, headers, moderator).status_code == 403

    def test_cannot_ban_admin(self, client, moderator_headers, user_factory):
        headers, _ = moderator_headers
        assert _ban(client, headers, user_factory(role="admin")).status_code == 403

    def test_already_banned(self, client, moderator_headers, user_factory):
        headers, _ = moderator_headers
        target = user_factory()
        assert _ban(client, headers, target).status_code == 201
        assert _ban(client, headers, target).status_code == 409

    def test_reason_is_required(self, client, moderator_headers, user_factory):
        headers, _ = moderator_headers
        res = _ban(client, headers, user_factory(), reason="  ")
        assert res.status_code == 422

    def test_irrevocable_requires_notes(self, client, moderator_headers, user_factory):
        headers, _ = moderator_headers
        res = _ban(client, headers, user_factory(), duration="permanent", is_irrevocable=True)
        assert res.status_code == 422
        assert "notas" in res.get_json()["error"]

    def test_irrevocable_must_be_permanent(self, client, moderator_headers, user_factory):
        headers, _ = moderator_headers
        res = _ban(client, headers, user_factory(), is_irrevocable=True, admin_notes="Fraude confirmado")
        assert res.status_code == 422

    def test_custom_expiration_in_past(self, client, moderator_headers, user_factory):
        headers, _ = moderator_headers
        past = (utcnow() - timedelta(days=1)).isoformat()
        res = _ban(client, headers, user_factory(), duration="custom", custom_expires_at=past)
        assert res.status_code == 422

    def test_editor_cannot_ban(self, client, session_token_factory, user_factory):
        token, _ = session_token_factory(role="editor")
        assert _ban(client, _headers(token), user_factory()).status_code == 403

    def test_unknown_user(self, client, moderator_headers):
        headers, _ = moderator_headers
        res = client.post(
            "/api/admin/users/00000000-0000-0000-0000-000000000000/ban",
            headers=headers,
            json={"reason": "x", "duration": "1_day"},
        )
        assert res.status_code == 404


class TestModifyAndUnban:
    """PATCH y DELETE /api/admin/users/<id>/ban"""

    def test_modify_ban(self, app, client, moderator_headers, user_factory):
        headers, _ = moderator_headers
        target = user_factory()
        _ban(client, headers, target)

        res = client.patch(
            f"/api/admin/users/{target.id}/ban",
            headers=headers,
            json={"reason": "Motivo actualizado", "duration": "1_day"},
        )

        assert res.status_code == 200
        assert res.get_json()["ban"]["reason"] == "Motivo actualizado"
        with app.app_context():
            ban = db.session.execute(db.select(UserBan)).scalar_one()
            assert as_utc(ban.expires_at) <= utcnow() + timedelta(days=1)

    def test_modify_without_ban(self, client, moderator_headers, user_factory):
        headers, _ = moderator_headers
        res = client.patch(
            f"/api/admin/users/{user_factory().id}/ban",
            headers=headers,
            json={"reason": "Sin baneo", "duration": "1_day"},
        )
        assert res.status_code == 404

    def test_unban_restores_user(self, app, client, moderator_headers, user_factory):
        headers, moderator = moderator_headers
        target = user_factory()
        _ban(client, headers, target)

        res = client.delete(f"/api/admin/users/{target.id}/ban", headers=headers, json={"reason": "Apelación verbal"})

        assert res.status_code == 200
        with app.app_context():
            stored = db.session.get(Users, target.id)
            assert stored.status == "active"
            assert stored.current_ban() is None
            ban = db.session.execute(db.select(UserBan)).scalar_one()
            assert ban.unbanned_by == moderator.id
            assert ban.unban_reason == "Apelación verbal"

    def test_unban_without_ban(self, client, moderator_headers, user_factory):
        headers, _ = moderator_headers
        assert client.delete(f"/api/admin/users/{user_factory().id}/ban", headers=headers).status_code == 404

    def test_irrevocable_ban_is_final(self, client, moderator_headers, user_factory, ban_factory):
        headers, _ = moderator_headers
        target = user_factory()
        ban_factory(target, irrevocable=True)

        modify = client.patch(
            f"/api/admin/users/{target.id}/ban",
            headers=headers,
            json={"reason": "Reducir", "duration": "1_day"},
        )
        unban = client.delete(f"/api/admin/users/{target.id}/ban", headers=headers)

        assert modify.status_code == 403
        assert unban.status_code == 403

    def test_ban_history(self, client, moderator_headers, user_factory):
        headers, _ = moderator_headers
        target = user_factory()
        _ban(client, headers, target)
        client.delete(f"/api/admin/users/{target.id}/ban", headers=headers)
        _ban(client, headers, target, duration="permanent")

        res = client.get(f"/api/admin/users/{target.id}/bans", headers=headers)

        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 2
        assert [b["is_active"] for b in data["bans"]] == [True, False]


class TestBanExpiration:
    """calculate_ban_expiration"""

    def test_permanent(self):
        assert calculate_ban_expiration("permanent") is None
        assert calculate_ban_expiration(None) is None

    def test_relative_durations(self, app):
        with app.app_context():
            before = utcnow()
            expires = calculate_ban_expiration("1_hour")
            assert timedelta(minutes=59) < expires - before <= timedelta(hours=1, seconds=5)

    def test_custom(self):
        expires = calculate_ban_expiration("custom", "2030-01-01T00:00:00Z")
        assert expires.year == 2030
        assert expires.tzinfo is not None

    def test_invalid_custom(self):
        with pytest.raises(BanError):
            calculate_ban_expiration("custom", "mañana")

    def test_custom_without_date_is_rejected(self):
        with pytest.raises(BanError) as excinfo:
            calculate_ban_expiration("custom")
        assert excinfo.value.status_code == 422

    def test_custom_without_date_over_http(self, app, client, moderator_headers, user_factory):
        headers, _ = moderator_headers
        target = user_factory()
        res = _ban(client, headers, target, duration="custom")
        assert res.status_code == 422
        with app.app_context():
            assert db.session.get(Users, target.id).current_ban() is None

    def test_expired_ban_is_not_current(self, app, user_factory, ban_factory):
        user = user_factory()
        ban_factory(user, expires_in=timedelta(seconds=-1))
        with app.app_context():
            assert db.session.get(Users, user.id).current_ban() is None
