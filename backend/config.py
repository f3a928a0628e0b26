"""Application configuration values."""
import os
import sys
import json
from typing import List, Optional
from pathlib import Path
from dotenv import load_dotenv


# --- Cargar variables de entorno ---
load_dotenv()

BASE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = BASE_DIR.parent
INSTANCE_DIR = PROJECT_ROOT / "instance"

_ENV_ALIASES = {
    "dev": "development",
    "development": "development",
    "prod": "production",
    "production": "production",
    "testing": "test",
    "tests": "test",
    "pytest": "test",
    "test": "test",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}

MIN_SESSION_LIFETIME_MINUTES = 5


def _normalize_env(value: str) -> str:
    normalized = _ENV_ALIASES.get(value.strip().lower(), value.strip().lower())
    return normalized or "production"


def detect_runtime_env() -> str:
    """Determina el entorno actual (production, development, test)."""
    explicit = (
        os.getenv("APP_ENV")
        or os.getenv("FLASK_ENV")
        or os.getenv("ENV")
        or ""
    ).strip()
    if explicit:
        return _normalize_env(explicit)

    if os.getenv("PYTEST_CURRENT_TEST") or any("pytest" in arg for arg in sys.argv):
        return "test"

    debug_flag = os.getenv("FLASK_DEBUG", "").strip().lower()
    if debug_flag in _TRUE_VALUES:
        return "development"

    return "production"


def _fallback_database_uri(runtime_env: str) -> Optional[str]:
    """Determina la URI según entorno cuando DATABASE_URL no está definida."""
    if runtime_env == "test":
        return "sqlite:///:memory:"
    if runtime_env == "development":
        INSTANCE_DIR.mkdir(parents=True, exist_ok=True)
        sqlite_path = INSTANCE_DIR / "dev.db"
        return f"sqlite:///{sqlite_path}"
    return None


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _coerce_int(value, default: int, *, minimum: int = 0) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, parsed)


def _coerce_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def init_app_config(app) -> None:
    """Aplica valores derivados del entorno sin forzar evaluación temprana."""
    runtime_env = _normalize_env(
        str(app.config.get("APP_ENV", "") or app.config.get("ENV", "")).strip()
        or detect_runtime_env()
    )
    app.config["APP_ENV"] = runtime_env
    app.config["ENV"] = runtime_env

    if "TESTING" not in app.config:
        app.config["TESTING"] = runtime_env == "test"
    if "DEBUG" not in app.config:
        app.config["DEBUG"] = runtime_env == "development"

    # La clave firma los tokens de impersonación y la integridad de sesión.
    secret_key = app.config.get("SECRET_KEY") or os.getenv("SECRET_KEY")
    if runtime_env == "production":
        if not secret_key or secret_key == "dev-secret-key":
            raise RuntimeError(
                "FATAL: SECRET_KEY no está definida para producción. "
                "Establece SECRET_KEY con un valor aleatorio y seguro antes de iniciar la aplicación."
            )
    if secret_key:
        app.config["SECRET_KEY"] = secret_key

    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")

    # En tests nunca se usa PostgreSQL de producción
    if runtime_env == "test" or app.config.get("TESTING"):
        if db_uri and db_uri.startswith("postgresql"):
            app.logger.warning(
                "TESTS intentando usar PostgreSQL - FORZANDO SQLite para proteger producción"
            )
            db_uri = "sqlite:///:memory:"
        elif not db_uri:
            db_uri = "sqlite:///:memory:"
    elif not db_uri:
        db_uri = _fallback_database_uri(runtime_env)

    if not db_uri:
        raise RuntimeError(
            "FATAL: DATABASE_URL no está configurada y no existe fallback para producción. "
            "Establece DATABASE_URL con la cadena de conexión de PostgreSQL antes de iniciar en producción."
        )

    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri

    engine_options = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})
    if db_uri.startswith("sqlite:///"):
        engine_options.setdefault("connect_args", {"check_same_thread": False})
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    # --- Sesiones ---
    max_lifetime = _coerce_int(app.config.get("SESSION_MAX_LIFETIME_MINUTES", 60), 60, minimum=MIN_SESSION_LIFETIME_MINUTES)
    lifetime = _coerce_int(app.config.get("SESSION_LIFETIME_MINUTES", 15), 15)
    app.config["SESSION_MAX_LIFETIME_MINUTES"] = max_lifetime
    app.config["SESSION_LIFETIME_MINUTES"] = max(MIN_SESSION_LIFETIME_MINUTES, min(lifetime, max_lifetime))
    app.config["SESSION_TTL_DAYS"] = _coerce_int(app.config.get("SESSION_TTL_DAYS", 7), 7, minimum=1)
    app.config["SESSION_TIMEOUT_MINUTES"] = _coerce_int(app.config.get("SESSION_TIMEOUT_MINUTES", 120), 120, minimum=1)
    app.config["SESSION_TIMEOUT_PRIVILEGED_MINUTES"] = _coerce_int(
        app.config.get("SESSION_TIMEOUT_PRIVILEGED_MINUTES", 20), 20, minimum=1
    )

    limits = dict(app.config.get("SESSION_CONCURRENT_LIMITS") or {})
    app.config["SESSION_CONCURRENT_LIMITS"] = {
        role: _coerce_int(value, 1, minimum=1) for role, value in limits.items()
    } or {"admin": 1, "editor": 2, "moderator": 2, "user": 3}
    app.config.setdefault("SESSION_CONCURRENT_LIMITS", {}).setdefault("user", 3)

    app.config["SESSION_VALIDATE_INTEGRITY"] = _coerce_bool(app.config.get("SESSION_VALIDATE_INTEGRITY", True))

    # --- Impersonación ---
    app.config["IMPERSONATION_TIMEOUT_MINUTES"] = _coerce_int(
        app.config.get("IMPERSONATION_TIMEOUT_MINUTES", 30), 30, minimum=1
    )
    app.config["IMPERSONATION_MAX_CONCURRENT_SESSIONS"] = _coerce_int(
        app.config.get("IMPERSONATION_MAX_CONCURRENT_SESSIONS", 5), 5, minimum=1
    )
    app.config["IMPERSONATION_MAX_SESSIONS_PER_USER"] = _coerce_int(
        app.config.get("IMPERSONATION_MAX_SESSIONS_PER_USER", 2), 2, minimum=1
    )
    app.config["IMPERSONATION_REQUIRE_2FA"] = _coerce_bool(app.config.get("IMPERSONATION_REQUIRE_2FA", True))
    blocked = app.config.get("IMPERSONATION_BLOCKED_ROLES")
    if blocked is None:
        blocked = ["admin"]
    app.config["IMPERSONATION_BLOCKED_ROLES"] = [str(role).strip().lower() for role in blocked if str(role).strip()]

    # --- Panel de administración ---
    app.config["ADMIN_ALLOW_CONCURRENT_SESSIONS"] = _coerce_bool(app.config.get("ADMIN_ALLOW_CONCURRENT_SESSIONS", False))
    app.config["ADMIN_LOGOUT_ON_IP_CHANGE"] = _coerce_bool(app.config.get("ADMIN_LOGOUT_ON_IP_CHANGE", False))
    app.config["ADMIN_SESSION_LOCK_HOURS"] = _coerce_int(app.config.get("ADMIN_SESSION_LOCK_HOURS", 8), 8, minimum=1)

    # --- Evidencia de apelaciones ---
    app.config.setdefault("BAN_APPEAL_EVIDENCE_DIR", str(INSTANCE_DIR / "ban_appeal_evidence"))
    app.config["BAN_APPEAL_EVIDENCE_MAX_BYTES"] = _coerce_int(
        app.config.get("BAN_APPEAL_EVIDENCE_MAX_BYTES", 5 * 1024 * 1024), 5 * 1024 * 1024, minimum=1
    )
    app.config["BAN_APPEAL_EVIDENCE_URL_MINUTES"] = _coerce_int(
        app.config.get("BAN_APPEAL_EVIDENCE_URL_MINUTES", 120), 120, minimum=1
    )

    hibp_flag = app.config.get("HIBP_PASSWORD_CHECK_ENABLED", os.getenv("HIBP_PASSWORD_CHECK_ENABLED", "false"))
    app.config["HIBP_PASSWORD_CHECK_ENABLED"] = _coerce_bool(hibp_flag)
    app.config["HIBP_PASSWORD_MIN_COUNT"] = _coerce_int(app.config.get("HIBP_PASSWORD_MIN_COUNT", 1), 1, minimum=1)


def parse_list_env(name: str) -> List[str]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return []
    if raw.startswith("["):
        try:
            return [str(s) for s in json.loads(raw)]
        except ValueError:
            return []
    return [item.strip() for item in raw.split(",") if item.strip()]


class Config:
    # clave secreta de flask
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")

    # --- configuracion de base de datos ---
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = None

    _runtime = detect_runtime_env()
    TESTING = _runtime == "test"
    ENV = _runtime
    DEBUG = _runtime == "development"

    # CORS
    CORS_ORIGINS = parse_list_env('CORS_ORIGINS')
    CORS_SUPPORTS_CREDENTIALS = _env_bool('CORS_SUPPORTS_CREDENTIALS', False)

    # --- Sesiones ---
    # Vida base de una sesión inactiva (minutos), acotada a [5, SESSION_MAX_LIFETIME_MINUTES]
    SESSION_LIFETIME_MINUTES = _env_int('SESSION_LIFETIME', 15)
    SESSION_MAX_LIFETIME_MINUTES = _env_int('SESSION_MAX_LIFETIME', 60)
    SESSION_TTL_DAYS = _env_int('SESSION_TTL_DAYS', 7)
    SESSION_TIMEOUT_MINUTES = _env_int('SESSION_TIMEOUT_MINUTES', 120)
    SESSION_TIMEOUT_PRIVILEGED_MINUTES = _env_int('SESSION_TIMEOUT_PRIVILEGED_MINUTES', 20)
    SESSION_CONCURRENT_LIMITS = {
        'admin': _env_int('SESSION_LIMIT_ADMIN', 1),
        'editor': _env_int('SESSION_LIMIT_EDITOR', 2),
        'moderator': _env_int('SESSION_LIMIT_MODERATOR', 2),
        'user': _env_int('SESSION_LIMIT_USER', 3),
    }
    SESSION_VALIDATE_INTEGRITY = _env_bool('SESSION_VALIDATE_INTEGRITY', True)
    SESSION_COOKIE_SECURE = _env_bool('SESSION_COOKIE_SECURE', _runtime == 'production')

    # --- Login ---
    MAX_FAILED_LOGIN_ATTEMPTS = _env_int('MAX_FAILED_LOGIN_ATTEMPTS', 3)
    ACCOUNT_LOCKOUT_MINUTES = _env_int('ACCOUNT_LOCKOUT_MINUTES', 15)
    TOTP_ISSUER = os.getenv('TOTP_ISSUER', 'CMS Admin')

    # --- Impersonación ---
    IMPERSONATION_TIMEOUT_MINUTES = _env_int('IMPERSONATION_TIMEOUT_MINUTES', 30)
    IMPERSONATION_MAX_CONCURRENT_SESSIONS = _env_int('IMPERSONATION_MAX_CONCURRENT_SESSIONS', 5)
    IMPERSONATION_MAX_SESSIONS_PER_USER = _env_int('IMPERSONATION_MAX_SESSIONS_PER_USER', 2)
    IMPERSONATION_REQUIRE_2FA = _env_bool('IMPERSONATION_REQUIRE_2FA', True)
    IMPERSONATION_BLOCKED_ROLES = parse_list_env('IMPERSONATION_BLOCKED_ROLES') or ['admin']

    # --- Panel de administración (inactividad y sesiones concurrentes) ---
    ADMIN_ALLOW_CONCURRENT_SESSIONS = _env_bool('ADMIN_ALLOW_CONCURRENT_SESSIONS', False)
    ADMIN_LOGOUT_ON_IP_CHANGE = _env_bool('ADMIN_LOGOUT_ON_IP_CHANGE', False)
    ADMIN_SESSION_LOCK_HOURS = _env_int('ADMIN_SESSION_LOCK_HOURS', 8)
    ADMIN_INACTIVITY_TIMEOUT_MS = _env_int('ADMIN_INACTIVITY_TIMEOUT_MS', 15 * 60 * 1000)
    ADMIN_INACTIVITY_WARNING_MS = _env_int('ADMIN_INACTIVITY_WARNING_MS', 3 * 60 * 1000)
    ADMIN_HEARTBEAT_INTERVAL_MS = _env_int('ADMIN_HEARTBEAT_INTERVAL_MS', 2 * 60 * 1000)
    ADMIN_INACTIVITY_DETECTION_ENABLED = _env_bool('ADMIN_INACTIVITY_DETECTION_ENABLED', True)

    # --- Apelaciones de baneo ---
    BAN_APPEAL_MIN_LENGTH = _env_int('BAN_APPEAL_MIN_LENGTH', 50)
    BAN_APPEAL_MAX_LENGTH = _env_int('BAN_APPEAL_MAX_LENGTH', 2000)
    BAN_APPEAL_DUPLICATE_WINDOW_MINUTES = _env_int('BAN_APPEAL_DUPLICATE_WINDOW_MINUTES', 5)
    BAN_APPEAL_SPAM_DETECTION_ENABLED = _env_bool('BAN_APPEAL_SPAM_DETECTION_ENABLED', True)
    BAN_APPEAL_EVIDENCE_DIR = os.getenv('BAN_APPEAL_EVIDENCE_DIR', str(INSTANCE_DIR / 'ban_appeal_evidence'))
    BAN_APPEAL_EVIDENCE_MAX_BYTES = _env_int('BAN_APPEAL_EVIDENCE_MAX_BYTES', 5 * 1024 * 1024)
    BAN_APPEAL_EVIDENCE_URL_MINUTES = _env_int('BAN_APPEAL_EVIDENCE_URL_MINUTES', 120)

    HIBP_PASSWORD_CHECK_ENABLED = _env_bool('HIBP_PASSWORD_CHECK_ENABLED', False)
    HIBP_PASSWORD_MIN_COUNT = max(1, _env_int('HIBP_PASSWORD_MIN_COUNT', 1))

    # --- Rate Limiting Configuration ---
    RATELIMIT_STORAGE_URI = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')
    RATELIMIT_LOGIN = os.getenv('RATELIMIT_LOGIN', '10 per 5 minutes')
    RATELIMIT_BAN_APPEAL = os.getenv('RATELIMIT_BAN_APPEAL', '3 per hour')

    # --- Logging Configuration ---
    LOG_LEVEL = os.getenv('LOG_LEVEL', None)  # None = auto-detect based on APP_ENV
    LOG_JSON_ENABLED = None  # None = auto-detect (True for production, False otherwise)
    _log_json_env = os.getenv('LOG_JSON_ENABLED', '').strip().lower()
    if _log_json_env in _TRUE_VALUES:
        LOG_JSON_ENABLED = True
    elif _log_json_env in {'0', 'false', 'no', 'off'}:
        LOG_JSON_ENABLED = False
    del _log_json_env

    # --- Sentry Configuration ---
    SENTRY_DSN = os.getenv('SENTRY_DSN')
    SENTRY_ENVIRONMENT = os.getenv('SENTRY_ENVIRONMENT')  # None = auto-detect from APP_ENV

    try:
        _traces_sample_rate = float(os.getenv('SENTRY_TRACES_SAMPLE_RATE', '0.1'))
    except ValueError:
        _traces_sample_rate = 0.1
    SENTRY_TRACES_SAMPLE_RATE = max(0.0, min(1.0, _traces_sample_rate))
    del _traces_sample_rate

    SENTRY_ENABLE_PROFILING = _env_bool('SENTRY_ENABLE_PROFILING', False)
    SENTRY_ENABLE_IN_DEV = _env_bool('SENTRY_ENABLE_IN_DEV', False)
