# tests/conftest.py
import os
import sys
import pathlib
import inspect
from collections import Counter, defaultdict
from datetime import timedelta

import pytest

# ---------- PATH raíz del repo ----------
THIS = pathlib.Path(__file__).resolve()
ROOT = THIS.parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app import create_app  # noqa: E402
from backend.app.extensions import bcrypt, db  # noqa: E402
from backend.app.models import UserBan, UserSessions, Users, utcnow  # noqa: E402
from backend.app.services.permissions import get_role, seed_roles_and_permissions  # noqa: E402
from backend.app.services.sessions import create_session  # noqa: E402
from backend.app.services.two_factor import generate_totp_secret  # noqa: E402

DEFAULT_PASSWORD = "Password.123"

# Tablas que se conservan entre pruebas (catálogo de roles y permisos)
_SEED_TABLES = {"roles", "permissions", "role_permissions"}


# ---------- Config de pruebas ----------
class TestConfig:
    TESTING = True
    APP_ENV = "test"
    LOG_LEVEL = None  # Auto-detect per APP_ENV during tests
    SECRET_KEY = "testing-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite:///./test_cms_admin.sqlite"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # Rate limiting desactivado: los límites se prueban aparte
    RATELIMIT_ENABLED = False
    RATELIMIT_STORAGE_URI = "memory://"
    HIBP_PASSWORD_CHECK_ENABLED = False
    IMPERSONATION_REQUIRE_2FA = True


@pytest.fixture(scope="session", autouse=True)
def _clean_env():
    """
    Limpia variables de entorno peligrosas antes de ejecutar tests.

    Evita que los tests apunten a la base de datos de producción y la
    eliminen con db.drop_all().
    """
    original_database_url = os.environ.get("DATABASE_URL")
    original_sqlalchemy_uri = os.environ.get("SQLALCHEMY_DATABASE_URI")

    os.environ.pop("DATABASE_URL", None)
    os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
    os.environ["APP_ENV"] = "test"
    os.environ["TESTING"] = "true"

    yield

    if original_database_url:
        os.environ["DATABASE_URL"] = original_database_url
    if original_sqlalchemy_uri:
        os.environ["SQLALCHEMY_DATABASE_URI"] = original_sqlalchemy_uri


@pytest.fixture(scope="session")
def app():
    app = create_app(TestConfig)

    with app.app_context():
        db_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
        if "sqlite" not in db_uri.lower():
            raise RuntimeError(
                f"Base de datos no permitida en tests: {db_uri}\n"
                f"   Solo se permite SQLite en tests."
            )
        db.drop_all()
        db.create_all()
        seed_roles_and_permissions()
        db.session.commit()
    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def _reset_tables(app):
    """Vacía las tablas de datos después de cada prueba."""
    yield
    with app.app_context():
        db.session.rollback()
        for table in reversed(db.metadata.sorted_tables):
            if table.name not in _SEED_TABLES:
                db.session.execute(table.delete())
        db.session.commit()
        db.session.remove()


@pytest.fixture()
def client(app):
    return app.test_client(use_cookies=True)


@pytest.fixture()
def _db(app):
    return db


@pytest.fixture()
def user_factory(app):
    counter = {"n": 0}

    def _mk_user(email=None, password=DEFAULT_PASSWORD, role="user", name=None, two_factor=False):
        counter["n"] += 1
        with app.app_context():
            role_row = get_role(role)
            user = Users(
                name=name or f"Usuario {role} {counter['n']}",
                email=email or f"{role}{counter['n']}@test.com",
                password_hash=bcrypt.generate_password_hash(password).decode("utf-8"),
                role_id=role_row.id,
                is_verified=True,
                verified_at=utcnow(),
            )
            if two_factor:
                user.totp_secret = generate_totp_secret()
                user.is_2fa_enabled = True
            db.session.add(user)
            db.session.commit()
            return user
    return _mk_user


@pytest.fixture()
def session_token_factory(app, user_factory):
    def _mk_session(user=None, role="user", ip_address=None, user_agent=None, **user_kwargs):
        if user is None:
            user = user_factory(role=role, **user_kwargs)
        with app.app_context():
            session = create_session(user)
            session.ip_address = ip_address
            session.user_agent = user_agent
            db.session.commit()
            return session.session_token, user
    return _mk_session


@pytest.fixture()
def auth_headers(session_token_factory):
    token, _ = session_token_factory()
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def admin_session(session_token_factory):
    """Administrador con 2FA activo (requisito para impersonar)."""
    token, admin = session_token_factory(role="admin", two_factor=True)
    return {"Authorization": f"Bearer {token}"}, admin


@pytest.fixture()
def ban_factory(app):
    def _mk_ban(user, reason="Incumplimiento de las normas", expires_in=None, irrevocable=False, admin=None):
        with app.app_context():
            ban = UserBan(
                user_id=user.id,
                banned_by=getattr(admin, "id", None),
                reason=reason,
                admin_notes="Notas internas" if irrevocable else None,
                is_irrevocable=irrevocable,
                is_active=True,
                banned_at=utcnow(),
                expires_at=utcnow() + expires_in if expires_in else None,
            )
            db.session.add(ban)
            stored = db.session.get(Users, user.id)
            stored.status = "suspended"
            db.session.commit()
            return ban
    return _mk_ban


@pytest.fixture()
def age_session(app):
    """Retrocede la última actividad de la sesión ``minutes`` minutos."""
    def _age(token, minutes):
        with app.app_context():
            session = db.session.get(UserSessions, token)
            session.last_activity_at = utcnow() - timedelta(minutes=minutes)
            db.session.commit()
    return _age


# ---------- Narrativa de pruebas ----------
_TERMINAL_REPORTER = None
_NARRATIVES = {}
_SUMMARY = {"total": 0, "outcomes": Counter(), "features": defaultdict(Counter)}


def _feature_name(item):
    stem = pathlib.Path(str(item.fspath)).stem.replace("test_", "")
    return " ".join(part.capitalize() if len(part) > 3 else part.upper() for part in stem.split("_"))


def _scope(item):
    fixtures = set(getattr(item, "fixturenames", []))
    if "client" in fixtures:
        return "Prueba funcional / integración"
    if fixtures & {"_db", "user_factory", "session_token_factory"}:
        return "Prueba de integración"
    return "Prueba unitaria"


def pytest_runtest_setup(item):
    global _TERMINAL_REPORTER
    if _TERMINAL_REPORTER is None:
        _TERMINAL_REPORTER = item.config.pluginmanager.get_plugin("terminalreporter")
    doc = inspect.getdoc(getattr(item, "function", None)) or ""
    description = doc.splitlines()[0] if doc else item.name.replace("test_", "").replace("_", " ")
    _NARRATIVES[item.nodeid] = (_feature_name(item), description, _scope(item))


def pytest_runtest_logreport(report):
    if report.when != "call":
        return
    info = _NARRATIVES.pop(report.nodeid, None)
    if info is None:
        return
    feature, description, scope = info
    outcome = {"passed": "PASÓ", "failed": "FALLÓ", "skipped": "SE OMITIÓ"}.get(report.outcome, report.outcome.upper())
    message = "\n".join([
        f"[Prueba] {report.nodeid}",
        f"  Resultado    : {outcome}",
        f"  Funcionalidad: {feature}",
        f"  Descripción  : {description}",
        f"  Clasificación: {scope}",
    ])
    if _TERMINAL_REPORTER:
        _TERMINAL_REPORTER.write_line(message)
    _SUMMARY["total"] += 1
    _SUMMARY["outcomes"][report.outcome] += 1
    _SUMMARY["features"][feature][report.outcome] += 1


def pytest_terminal_summary(terminalreporter, exitstatus, config):
    if not _SUMMARY["total"]:
        return
    outcomes = _SUMMARY["outcomes"]
    terminalreporter.write_sep("-", "Resumen general de pruebas")
    terminalreporter.write_line(
        f"Total: {_SUMMARY['total']} | Pasaron: {outcomes.get('passed', 0)} | "
        f"Fallaron: {outcomes.get('failed', 0)} | Omitidas: {outcomes.get('skipped', 0)}"
    )
    for feature in sorted(_SUMMARY["features"]):
        counts = _SUMMARY["features"][feature]
        terminalreporter.write_line(
            f" - {feature}: P:{counts.get('passed', 0)} F:{counts.get('failed', 0)} S:{counts.get('skipped', 0)}"
        )
