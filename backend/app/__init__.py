"""Application factory for the admin security backend."""
from flask import Flask, g

from backend.config import Config, init_app_config

from .extensions import db, migrate, bcrypt, cors, limiter
from .logging_config import configure_logging, setup_request_logging
from .services.errors import ServiceError


def init_sentry(app: Flask) -> None:
    """
    Inicializa Sentry para monitoreo de errores y rendimiento.

    Solo se activa si SENTRY_DSN está configurado y el entorno es
    'production' o 'staging' (o 'development' con SENTRY_ENABLE_IN_DEV).
    """
    sentry_dsn = app.config.get('SENTRY_DSN')
    if not sentry_dsn:
        app.logger.info("Sentry no inicializado: SENTRY_DSN no configurado")
        return

    runtime_env = app.config.get('APP_ENV', 'production')
    enable_in_dev = app.config.get('SENTRY_ENABLE_IN_DEV', False)
    if runtime_env not in {'production', 'staging'} and not (runtime_env == 'development' and enable_in_dev):
        app.logger.info(f"Sentry no inicializado: entorno '{runtime_env}' no es production/staging")
        return

    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_environment = app.config.get('SENTRY_ENVIRONMENT') or runtime_env
    traces_sample_rate = app.config.get('SENTRY_TRACES_SAMPLE_RATE', 0.1)
    enable_profiling = app.config.get('SENTRY_ENABLE_PROFILING', False)

    sentry_sdk.init(
        dsn=sentry_dsn,
        environment=sentry_environment,
        integrations=[FlaskIntegration(), SqlalchemyIntegration()],
        traces_sample_rate=traces_sample_rate,
        profiles_sample_rate=traces_sample_rate if enable_profiling else 0.0,
        # Sin PII: los correos solo viajan hasheados en los logs
        send_default_pii=False,
        release=app.config.get('APP_VERSION'),
    )

    @app.before_request
    def add_sentry_context():
        current_user = getattr(g, 'current_user', None)
        if current_user is not None:
            sentry_sdk.set_user({"id": str(current_user.id)})
        impersonator = getattr(g, 'impersonator', None)
        if impersonator is not None:
            sentry_sdk.set_tag("impersonator_id", str(impersonator.id))
        sentry_sdk.set_tag("app_env", runtime_env)

    app.logger.info(
        f"Sentry inicializado correctamente "
        f"[environment={sentry_environment}, traces_sample_rate={traces_sample_rate}]"
    )


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ServiceError)
    def handle_service_error(error: ServiceError):
        db.session.rollback()
        app.logger.info(
            "Operación rechazada: %s", error.message,
            extra={
                "event": "service.rejected",
                "error_type": type(error).__name__,
                "status_code": error.status_code,
                "code": error.code,
            },
        )
        return error.to_response()


def create_app(config_object=Config) -> Flask:
    """
    Fábrica de la aplicación Flask.
    """
    app = Flask(__name__)

    app.config.from_object(config_object)
    init_app_config(app)

    configure_logging(app)
    setup_request_logging(app)
    register_error_handlers(app)
    init_sentry(app)

    db.init_app(app)
    migrate.init_app(app, db)
    bcrypt.init_app(app)

    runtime_env = app.config.get("APP_ENV", "production")
    cors_origins = app.config.get("CORS_ORIGINS") or []
    if runtime_env == "production" and not cors_origins:
        raise RuntimeError(
            "FATAL: CORS_ORIGINS no está configurado para producción. "
            "Define una lista de dominios permitidos antes de iniciar la aplicación."
        )
    cors.init_app(
        app,
        resources={r"/api/*": {"origins": cors_origins or "*"}},
        supports_credentials=bool(app.config.get("CORS_SUPPORTS_CREDENTIALS", False)),
    )

    # storage_uri debe fijarse antes de init_app
    limiter.storage_uri = app.config.get("RATELIMIT_STORAGE_URI", "memory://")
    limiter.init_app(app)

    with app.app_context():
        from . import models  # noqa: F401

    from .routes import api as api_blueprint
    app.register_blueprint(api_blueprint, url_prefix="/api")

    return app
