"""
Structured logging configuration for the admin security backend.

JSON logs in production (ready for log aggregation), colored human-readable
logs in development and quiet, caplog-friendly logs in tests. Every line
carries the request context when there is one: request_id, method, path,
client address, authenticated user and, during an impersonation, the
administrator acting behind the session.
"""

import logging
import sys
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from flask import Flask, g, has_request_context, request
from pythonjsonlogger import jsonlogger
from werkzeug.exceptions import HTTPException

from .services.request_utils import get_client_ip


def _actor_fields() -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    current_user = getattr(g, "current_user", None)
    if current_user is not None:
        fields["user_id"] = str(getattr(current_user, "id", ""))
    impersonator = getattr(g, "impersonator", None)
    if impersonator is not None:
        fields["impersonator_id"] = str(getattr(impersonator, "id", ""))
    return fields


class ContextualJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that adds fields from Flask's request context."""

    def __init__(self, *args, app_env: str = "production", **kwargs):
        super().__init__(*args, **kwargs)
        self.app_env = app_env

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["app_env"] = self.app_env

        if has_request_context():
            log_record["request_id"] = getattr(g, "request_id", None)
            log_record["method"] = request.method
            log_record["path"] = request.path
            log_record["remote_addr"] = get_client_ip(request)
            if request.user_agent:
                log_record.setdefault("user_agent", request.user_agent.string)
            for key, value in _actor_fields().items():
                log_record.setdefault(key, value)

            request_start_time = getattr(g, "request_start_time", None)
            if request_start_time:
                log_record["response_time_ms"] = round((time.time() - request_start_time) * 1000, 2)

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)


class DevelopmentFormatter(logging.Formatter):
    """Human-readable formatter with ANSI colors for the terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        reset = self.COLORS["RESET"]
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        line = f"{color}[{timestamp}] {record.levelname:8s}{reset} {record.name:30s} | {record.getMessage()}"

        context_parts = []
        event = getattr(record, "event", None)
        if event:
            context_parts.append(f"event={event}")
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                context_parts.append(f"request_id={request_id[:8]}")
            context_parts.append(f"{request.method} {request.path}")
            for key, value in _actor_fields().items():
                context_parts.append(f"{key}={value}")

        if context_parts:
            line += f" [{' | '.join(context_parts)}]"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _resolve_level(app_env: str, level_name) -> int:
    if level_name:
        return getattr(logging, str(level_name).upper(), logging.INFO)
    if app_env == "test":
        return logging.WARNING
    if app_env == "development":
        return logging.DEBUG
    return logging.INFO


def configure_logging(app: Flask) -> None:
    """
    Configure structured logging for the Flask application.

    The formatter depends on APP_ENV and LOG_JSON_ENABLED; LOG_LEVEL overrides
    the per-environment default level.
    """
    app_env = app.config.get("APP_ENV", "production")
    log_level = _resolve_level(app_env, app.config.get("LOG_LEVEL"))

    json_enabled = app.config.get("LOG_JSON_ENABLED")
    if json_enabled is None:
        json_enabled = app_env == "production"

    if json_enabled:
        formatter = ContextualJsonFormatter(fmt="%(message)s", app_env=app_env)
    else:
        formatter = DevelopmentFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(formatter)

    # En test se conservan los handlers de pytest (caplog)
    if app_env != "test":
        app.logger.handlers.clear()
    app.logger.addHandler(handler)
    app.logger.setLevel(log_level)
    app.logger.propagate = app_env == "test"

    root_logger = logging.getLogger()
    if app_env != "test":
        root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    if app_env == "development":
        logging.getLogger("werkzeug").setLevel(logging.WARNING)

    app.logger.info(
        "Logging configured",
        extra={
            "event": "logging.configured",
            "app_env": app_env,
            "log_level": logging.getLevelName(log_level),
            "json_enabled": json_enabled,
        },
    )


def setup_request_logging(app: Flask) -> None:
    """Register request id generation, start/complete lines and uncaught exception logging."""

    @app.before_request
    def before_request_logging():
        g.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        g.request_start_time = time.time()
        app.logger.info(
            "Request started",
            extra={"event": "request.started", "method": request.method, "path": request.path},
        )

    @app.after_request
    def after_request_logging(response):
        if hasattr(g, "request_start_time"):
            app.logger.info(
                "Request completed",
                extra={
                    "event": "request.completed",
                    "status_code": response.status_code,
                    "response_time_ms": round((time.time() - g.request_start_time) * 1000, 2),
                },
            )
        request_id = getattr(g, "request_id", None)
        if request_id:
            response.headers.setdefault("X-Request-ID", request_id)
        return response

    @app.errorhandler(Exception)
    def handle_exception(error: Exception):
        # Los HTTPException (404, 405...) siguen el flujo normal de Flask
        if isinstance(error, HTTPException):
            return error

        app.logger.error(
            f"Uncaught exception: {error}",
            exc_info=True,
            extra={"event": "exception.uncaught", "exception_type": type(error).__name__},
        )
        raise error
