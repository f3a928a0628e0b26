"""Health check del servicio."""

import os
import time
from datetime import datetime, timezone

from flask import current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from . import api
from ..extensions import db


def _classify_latency(latency_ms):
    if latency_ms is None:
        return "unknown"
    if latency_ms <= 250:
        return "ok"
    if latency_ms <= 600:
        return "warning"
    return "critical"


def _classify_load(load_ratio):
    if load_ratio is None:
        return "unknown"
    if load_ratio <= 0.6:
        return "ok"
    if load_ratio <= 1.5:
        return "warning"
    return "critical"


@api.get("/health")
def health_check():
    """Estado de la base de datos (con latencia) y carga del servidor."""
    db_status = "connected"
    latency_ms = None
    start = time.perf_counter()
    try:
        db.session.execute(db.select(1))
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error(
            "Error de conexión a DB: %s", exc,
            extra={"event": "health.db_error", "error_type": type(exc).__name__},
        )
        db_status = "error"

    cpu_count = os.cpu_count() or 1
    try:
        load_value = os.getloadavg()[0]
        load_ratio = load_value / cpu_count
    except (AttributeError, OSError):
        load_value = load_ratio = None

    indicators = {
        "database": _classify_latency(latency_ms) if db_status == "connected" else "critical",
        "system": _classify_load(load_ratio),
    }
    if db_status != "connected":
        overall = "error"
    elif any(value in {"warning", "critical"} for value in indicators.values()):
        overall = "degraded"
    else:
        overall = "ok"

    payload = {
        "status": overall,
        "db_status": db_status,
        "metrics": {
            "db_latency_ms": latency_ms,
            "system_load": {
                "ratio": round(load_ratio, 2) if load_ratio is not None else None,
                "cores": cpu_count,
                "raw": round(load_value, 2) if load_value is not None else None,
            },
        },
        "indicators": indicators,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return jsonify(payload), 200 if db_status == "connected" else 500
