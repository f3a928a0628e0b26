"""
Tests para backend/app/routes/users.py (listado, alta y detalle de usuarios)
"""
from backend.app.extensions import db
from backend.app.models import AuditLog, Users, utcnow


def _headers(token):
    return {"Authorization": f"Bearer {token}"}


def _new_user(**overrides):
    body = {"name": "Nuevo Usuario", "email": "nuevo@test.com", "password": "Segura.2024", "role": "editor"}
    body.update(overrides)
    return body


class TestListUsers:
    """GET /api/admin/users"""

    def test_list_with_pagination(self, client, session_token_factory, user_factory):
        token, _ = session_token_factory(role="editor")
        for _ in range(3):
            user_factory()

        res = client.get("/api/admin/users?per_page=2", headers=_headers(token))

        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 4
        assert data["per_page"] == 2
        assert data["pages"] == 2
        assert len(data["users"]) == 2

    def test_search_by_email(self, client, session_token_factory, user_factory):
        token, _ = session_token_factory(role="moderator")
        user_factory(email="buscado@test.com")
        user_factory(email="otro@test.com")

        data = client.get("/api/admin/users?search=BUSCADO", headers=_headers(token)).get_json()

        assert [u["email"] for u in data["users"]] == ["buscado@test.com"]

    def test_filter_by_role_and_status(self, client, session_token_factory, user_factory, ban_factory):
        token, _ = session_token_factory(role="moderator")
        editor = user_factory(role="editor")
        banned = user_factory()
        ban_factory(banned)

        by_role = client.get("/api/admin/users?role=editor", headers=_headers(token)).get_json()
        assert [u["id"] for u in by_role["users"]] == [str(editor.id)]

        suspended = client.get("/api/admin/users?status=suspended", headers=_headers(token)).get_json()
        assert [u["id"] for u in suspended["users"]] == [str(banned.id)]
        assert suspended["users"][0]["is_banned"] is True

    def test_deleted_users_are_hidden(self, app, client, session_token_factory, user_factory):
        token, _ = session_token_factory(role="editor")
        gone = user_factory()
        with app.app_context():
            db.session.get(Users, gone.id).deleted_at = utcnow()
            db.session.commit()

        data = client.get("/api/admin/users", headers=_headers(token)).get_json()
        assert str(gone.id) not in [u["id"] for u in data["users"]]


class TestCreateUser:
    """POST /api/admin/users"""

    def test_admin_creates_user(self, app, client, session_token_factory):
        token, admin = session_token_factory(role="admin")

        res = client.post("/api/admin/users", headers=_headers(token), json=_new_user(email="  NUEVO@test.com "))

        assert res.status_code == 201
        user = res.get_json()["user"]
        assert user["email"] == "nuevo@test.com"
        assert user["role"] == "editor"
        with app.app_context():
            entry = db.session.execute(
                db.select(AuditLog).where(AuditLog.action == "user.create")
            ).scalar_one()
            assert entry.user_id == admin.id
            assert entry.details["role"] == "editor"

    def test_duplicate_email(self, client, session_token_factory, user_factory):
        token, _ = session_token_factory(role="admin")
        user_factory(email="nuevo@test.com")
        res = client.post("/api/admin/users", headers=_headers(token), json=_new_user())
        assert res.status_code == 409

    def test_weak_password(self, client, session_token_factory):
        token, _ = session_token_factory(role="admin")
        res = client.post("/api/admin/users", headers=_headers(token), json=_new_user(password="debil"))
        assert res.status_code == 400

    def test_invalid_payload(self, client, session_token_factory):
        token, _ = session_token_factory(role="admin")
        res = client.post("/api/admin/users", headers=_headers(token), json=_new_user(email="sin-arroba", name="x"))
        assert res.status_code == 400
        assert set(res.get_json()["errors"]) == {"email", "name"}

    def test_unknown_role(self, client, session_token_factory):
        token, _ = session_token_factory(role="admin")
        res = client.post("/api/admin/users", headers=_headers(token), json=_new_user(role="superuser"))
        assert res.status_code == 400

    def test_moderator_cannot_create(self, client, session_token_factory):
        token, _ = session_token_factory(role="moderator")
        assert client.post("/api/admin/users", headers=_headers(token), json=_new_user()).status_code == 403


class TestUserDetail:
    """GET /api/admin/users/<id>"""

    def test_detail_includes_sessions_and_ban(self, client, session_token_factory, ban_factory):
        token, _ = session_token_factory(role="moderator")
        _, target = session_token_factory()
        ban_factory(target, reason="Lenguaje ofensivo")

        res = client.get(f"/api/admin/users/{target.id}", headers=_headers(token))

        assert res.status_code == 200
        user = res.get_json()["user"]
        assert user["active_sessions"] == 1
        assert user["ban"]["reason"] == "Lenguaje ofensivo"
        assert "sessions.manage" in user["permissions"]

    def test_unknown_user(self, client, session_token_factory):
        token, _ = session_token_factory(role="editor")
        assert client.get("/api/admin/users/no-existe", headers=_headers(token)).status_code == 404
