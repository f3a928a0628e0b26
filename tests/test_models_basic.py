# tests/test_models_basic.py
import uuid
from datetime import datetime, timedelta, timezone

from backend.app.models import Permissions, Roles, UserBan, Users, as_utc, parse_uuid, utcnow
from backend.app.services.permissions import ROLE_PERMISSIONS, get_role, seed_roles_and_permissions


def test_seed_is_idempotent(app, _db):
    with app.app_context():
        seed_roles_and_permissions()
        seed_roles_and_permissions()
        _db.session.commit()
        assert _db.session.execute(_db.select(_db.func.count()).select_from(Roles)).scalar() == 4
        assert _db.session.execute(_db.select(_db.func.count()).select_from(Permissions)).scalar() == len(
            ROLE_PERMISSIONS["admin"]
        )


def test_role_permissions(app, _db, user_factory):
    moderator = user_factory(role="moderator")
    with app.app_context():
        user = _db.session.get(Users, moderator.id)
        assert user.has_role("MODERATOR")
        assert not user.has_role("admin")
        assert user.permission_names() == set(ROLE_PERMISSIONS["moderator"])
        assert not user.has_permission("users.impersonate")


def test_secondary_roles_add_permissions(app, _db, user_factory):
    editor = user_factory(role="editor")
    with app.app_context():
        user = _db.session.get(Users, editor.id)
        user.roles.append(get_role("moderator"))
        _db.session.commit()
        assert user.role_names() == {"editor", "moderator"}
        assert user.has_permission("ban_appeals.review")


def test_email_is_normalized(app, _db, user_factory):
    created = user_factory(email="  MAYUS@Test.com ")
    assert created.email == "mayus@test.com"


def test_current_ban_skips_expired_and_inactive(app, _db, user_factory):
    target = user_factory()
    with app.app_context():
        _db.session.add_all([
            UserBan(user_id=target.id, reason="Vencido", banned_at=utcnow() - timedelta(days=3),
                    expires_at=utcnow() - timedelta(days=1), is_active=True),
            UserBan(user_id=target.id, reason="Levantado", banned_at=utcnow() - timedelta(days=2),
                    is_active=False),
        ])
        _db.session.commit()
        user = _db.session.get(Users, target.id)
        assert user.current_ban() is None
        assert not user.is_banned()

        _db.session.add(UserBan(user_id=target.id, reason="Vigente", banned_at=utcnow(), is_active=True))
        _db.session.commit()
        ban = user.current_ban()
        assert ban.reason == "Vigente"
        assert ban.is_permanent()
        assert ban.is_current()


def test_datetime_helpers():
    naive = datetime(2026, 1, 1, 12, 0)
    assert as_utc(naive).tzinfo == timezone.utc
    assert as_utc(None) is None
    assert utcnow().tzinfo is not None


def test_parse_uuid():
    value = uuid.uuid4()
    assert parse_uuid(value) == value
    assert parse_uuid(str(value)) == value
    assert parse_uuid("no-es-uuid") is None
    assert parse_uuid(None) is None
