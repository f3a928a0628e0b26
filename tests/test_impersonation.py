"""
Tests para backend/app/routes/impersonation.py y services/impersonation.py
Inicio, heartbeat, expiración y fin de la impersonación.
"""
from datetime import timedelta

import pytest

from backend.app.extensions import db
from backend.app.models import AuditLog, ImpersonationSession, UserSessions, Users, utcnow
from backend.app.services import impersonation
from backend.app.services.sessions import hash_token


def _headers(token):
    return {"Authorization": f"Bearer {token}"}


def _start(client, admin_headers, target):
    return client.post(f"/api/admin/users/{target.id}/impersonate", headers=admin_headers)


def _actions(app):
    with app.app_context():
        return [entry.action for entry in db.session.execute(db.select(AuditLog)).scalars()]


@pytest.fixture()
def impersonating(client, admin_session, user_factory):
    """Administrador impersonando a un usuario; devuelve (token, admin, target)."""
    headers, admin = admin_session
    target = user_factory(name="Objetivo")
    res = _start(client, headers, target)
    assert res.status_code == 200, res.get_json()
    return res.get_json()["session_token"], admin, target


class TestStartImpersonation:
    """POST /api/admin/users/<id>/impersonate"""

    def test_start_switches_session_to_target(self, app, client, admin_session, user_factory):
        headers, admin = admin_session
        target = user_factory(name="Objetivo")

        res = _start(client, headers, target)

        assert res.status_code == 200
        data = res.get_json()
        assert data["user"]["id"] == str(target.id)
        assert data["impersonation"]["active"] is True
        assert data["impersonation"]["impersonator"]["id"] == str(admin.id)
        assert data["impersonation"]["target"]["id"] == str(target.id)
        assert len(data["impersonation"]["session_token_hash"]) == impersonation.TOKEN_PREFIX_LENGTH

        # El token anterior deja de servir: la sesión se rota
        assert client.get("/api/user/me", headers=headers).status_code == 401

        me = client.get("/api/user/me", headers=_headers(data["session_token"])).get_json()
        assert me["id"] == str(target.id)
        assert me["impersonation"]["active"] is True

        with app.app_context():
            record = db.session.execute(db.select(ImpersonationSession)).scalar_one()
            assert record.impersonator_id == admin.id
            assert record.target_id == target.id
            assert record.session_hash == hash_token(data["session_token"])
            start = db.session.execute(
                db.select(AuditLog).where(AuditLog.action == "impersonation.start")
            ).scalar_one()
            assert start.severity == "critical"
            assert start.user_id == admin.id

    def test_cannot_impersonate_self(self, client, admin_session):
        headers, admin = admin_session
        res = _start(client, headers, admin)
        assert res.status_code == 403
        assert res.get_json()["code"] == "self_impersonation"

    def test_cannot_impersonate_admin(self, client, admin_session, user_factory):
        headers, _ = admin_session
        other_admin = user_factory(role="admin")
        res = _start(client, headers, other_admin)
        assert res.status_code == 403
        assert res.get_json()["code"] == "blocked_role"

    def test_cannot_impersonate_banned_user(self, client, admin_session, user_factory, ban_factory):
        headers, _ = admin_session
        target = user_factory()
        ban_factory(target, expires_in=timedelta(days=1))
        res = _start(client, headers, target)
        assert res.status_code == 403
        assert res.get_json()["code"] == "target_banned"
        assert "temporalmente" in res.get_json()["error"]

    def test_requires_two_factor(self, client, session_token_factory, user_factory):
        token, _ = session_token_factory(role="admin")
        target = user_factory()
        res = _start(client, _headers(token), target)
        assert res.status_code == 403
        assert res.get_json()["code"] == "2fa_required"

    def test_requires_permission(self, client, session_token_factory, user_factory):
        token, _ = session_token_factory(role="moderator")
        target = user_factory()
        assert _start(client, _headers(token), target).status_code == 403

    def test_unknown_target(self, client, admin_session):
        headers, _ = admin_session
        res = client.post("/api/admin/users/no-es-uuid/impersonate", headers=headers)
        assert res.status_code == 404

    def test_per_admin_limit(self, app, client, admin_session, session_token_factory, user_factory, monkeypatch):
        headers, admin = admin_session
        monkeypatch.setitem(app.config, "IMPERSONATION_MAX_SESSIONS_PER_USER", 1)
        assert _start(client, headers, user_factory()).status_code == 200

        # Segunda sesión del mismo administrador desde otro dispositivo
        second_token, _ = session_token_factory(user=admin)
        res = _start(client, _headers(second_token), user_factory())
        assert res.status_code == 409
        assert res.get_json()["code"] == "user_limit"

    def test_global_limit(self, app, client, admin_session, user_factory, monkeypatch):
        headers, _ = admin_session
        monkeypatch.setitem(app.config, "IMPERSONATION_MAX_CONCURRENT_SESSIONS", 1)
        with app.app_context():
            db.session.add(ImpersonationSession(
                impersonator_id=None,
                target_id=None,
                token_hash="y" * 64,
                expires_at=utcnow() + timedelta(minutes=10),
            ))
            db.session.commit()
        res = _start(client, headers, user_factory())
        assert res.status_code == 409
        assert res.get_json()["code"] == "global_limit"


class TestStopImpersonation:
    """POST /api/impersonation/stop"""

    def test_stop_restores_admin(self, app, client, impersonating):
        token, admin, target = impersonating

        res = client.post("/api/impersonation/stop", headers=_headers(token))

        assert res.status_code == 200
        data = res.get_json()
        assert data["user"]["id"] == str(admin.id)
        assert data["session_token"] != token
        assert client.get("/api/user/me", headers=_headers(token)).status_code == 401

        me = client.get("/api/user/me", headers=_headers(data["session_token"])).get_json()
        assert me["id"] == str(admin.id)
        assert me["impersonation"] == {"active": False}

        with app.app_context():
            record = db.session.execute(db.select(ImpersonationSession)).scalar_one()
            assert record.ended_at is not None
            assert record.end_reason == ImpersonationSession.END_MANUAL
            stop = db.session.execute(
                db.select(AuditLog).where(AuditLog.action == "impersonation.stop")
            ).scalar_one()
            assert stop.user_id == admin.id
            assert stop.details["user_was_deleted"] is False
            assert stop.details["target"]["id"] == str(target.id)

    def test_stop_without_impersonation(self, client, admin_session):
        headers, _ = admin_session
        res = client.post("/api/impersonation/stop", headers=headers)
        assert res.status_code == 404
        assert res.get_json()["warning"] is True

    def test_stop_after_target_deleted(self, app, client, impersonating):
        token, admin, target = impersonating
        with app.app_context():
            db.session.get(Users, target.id).deleted_at = utcnow()
            db.session.commit()

        res = client.post("/api/impersonation/stop", headers=_headers(token))

        assert res.status_code == 200
        assert res.get_json()["user"]["id"] == str(admin.id)
        with app.app_context():
            stop = db.session.execute(
                db.select(AuditLog).where(AuditLog.action == "impersonation.stop")
            ).scalar_one()
            assert stop.details["user_was_deleted"] is True
            assert stop.details["target"] == {"name": "Usuario eliminado"}

    def test_status_after_target_deleted_keeps_session(self, app, client, impersonating):
        token, admin, target = impersonating
        with app.app_context():
            db.session.get(Users, target.id).deleted_at = utcnow()
            db.session.commit()

        status = client.get("/api/impersonation/status", headers=_headers(token))
        me = client.get("/api/user/me", headers=_headers(token))
        assert status.status_code == 200
        assert status.get_json() == {"active": False}
        assert me.status_code == 200
        assert me.get_json()["id"] == str(admin.id)

        res = client.post("/api/impersonation/stop", headers=_headers(token))

        assert res.status_code == 200
        new_token = res.get_json()["session_token"]
        assert client.get("/api/user/me", headers=_headers(new_token)).status_code == 200
        with app.app_context():
            record = db.session.execute(db.select(ImpersonationSession)).scalar_one()
            assert record.ended_at is not None
            stop = db.session.execute(
                db.select(AuditLog).where(AuditLog.action == "impersonation.stop")
            ).scalar_one()
            assert stop.details["user_was_deleted"] is True


class TestHeartbeat:
    """GET /api/impersonation/heartbeat"""

    def test_active_heartbeat(self, client, impersonating):
        token, _, _ = impersonating
        res = client.get("/api/impersonation/heartbeat", headers=_headers(token))
        assert res.status_code == 200
        data = res.get_json()
        assert data["active"] is True
        assert 0 < data["time_remaining_seconds"] <= 30 * 60

    def test_heartbeat_without_impersonation(self, client, admin_session):
        headers, _ = admin_session
        res = client.get("/api/impersonation/heartbeat", headers=headers)
        assert res.status_code == 404
        assert res.get_json() == {"active": False}

    def test_expired_impersonation_returns_410(self, app, client, impersonating):
        token, admin, _ = impersonating
        with app.app_context():
            session = db.session.get(UserSessions, token)
            ctx = dict(session.impersonation)
            ctx["expires_at"] = (utcnow() - timedelta(minutes=1)).isoformat()
            session.impersonation = ctx
            db.session.commit()

        res = client.get("/api/impersonation/heartbeat", headers=_headers(token))

        assert res.status_code == 410
        assert res.get_json()["expired"] is True

        # La misma sesión vuelve a pertenecer al administrador
        me = client.get("/api/user/me", headers=_headers(token)).get_json()
        assert me["id"] == str(admin.id)

        actions = _actions(app)
        assert "impersonation.expired" in actions
        assert "impersonation.heartbeat_expired" in actions
        with app.app_context():
            record = db.session.execute(db.select(ImpersonationSession)).scalar_one()
            assert record.end_reason == ImpersonationSession.END_EXPIRED


class TestAdminManagement:
    """Listado y terminación forzada de impersonaciones."""

    def test_list_and_force_terminate(self, app, client, impersonating, session_token_factory):
        token, admin, target = impersonating
        other_token, _ = session_token_factory(role="admin")
        other = _headers(other_token)

        listing = client.get("/api/admin/impersonation/sessions", headers=other)
        assert listing.status_code == 200
        sessions = listing.get_json()["sessions"]
        assert len(sessions) == 1
        assert sessions[0]["target"]["id"] == str(target.id)

        res = client.post(f"/api/admin/impersonation/sessions/{sessions[0]['id']}/terminate", headers=other)
        assert res.status_code == 200
        again = client.post(f"/api/admin/impersonation/sessions/{sessions[0]['id']}/terminate", headers=other)
        assert again.status_code == 404

        # La sesión impersonada se restaura al administrador en su siguiente petición
        me = client.get("/api/user/me", headers=_headers(token)).get_json()
        assert me["id"] == str(admin.id)

        with app.app_context():
            record = db.session.execute(db.select(ImpersonationSession)).scalar_one()
            assert record.end_reason == ImpersonationSession.END_ADMIN_TERMINATED
        assert "impersonation.force_terminate" in _actions(app)

    def test_banning_target_ends_impersonation(self, app, client, impersonating, session_token_factory):
        token, admin, target = impersonating
        other_token, _ = session_token_factory(role="admin")

        res = client.post(
            f"/api/admin/users/{target.id}/ban",
            headers=_headers(other_token),
            json={"reason": "Fraude detectado", "duration": "1_day"},
        )
        assert res.status_code == 201

        me = client.get("/api/user/me", headers=_headers(token))
        assert me.status_code == 200
        assert me.get_json()["id"] == str(admin.id)


class TestServiceHelpers:
    """Funciones auxiliares del servicio."""

    def test_parse_datetime(self):
        assert impersonation.parse_datetime(None) is None
        assert impersonation.parse_datetime("no es fecha") is None
        parsed = impersonation.parse_datetime("2026-01-01T10:00:00")
        assert parsed.tzinfo is not None

    def test_expire_stale_sessions(self, app, user_factory):
        admin = user_factory(role="admin")
        target = user_factory()
        with app.app_context():
            db.session.add(ImpersonationSession(
                impersonator_id=admin.id,
                target_id=target.id,
                token_hash="x" * 64,
                started_at=utcnow() - timedelta(hours=1),
                expires_at=utcnow() - timedelta(minutes=5),
            ))
            db.session.commit()
            assert impersonation.expire_stale_sessions() == 1
            db.session.commit()
            assert impersonation.count_active_sessions() == 0
