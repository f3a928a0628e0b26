"""
Paginación y filtros comunes de los listados de administración.
"""
import math
from datetime import datetime, timedelta, timezone

from flask import request
from sqlalchemy import func

from ..extensions import db

DEFAULT_PAGE_SIZE = 15
MIN_PAGE_SIZE = 1
MAX_PAGE_SIZE = 100


def parse_iso_datetime(value: str | None, *, end: bool = False):
    """
    Parsea una fecha ISO a datetime UTC.

    Si la fecha no tiene timezone se asume UTC. Con ``end=True`` una fecha sin
    hora se ajusta al final del día.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    if end and "T" not in value:
        dt = dt + timedelta(days=1) - timedelta(microseconds=1)
    return dt


def read_int_arg(name, default=None, args=None):
    args = request.args if args is None else args
    try:
        return int(args.get(name))
    except (TypeError, ValueError):
        return default


def pagination_params(default_page_size=DEFAULT_PAGE_SIZE, args=None):
    """``page`` y ``per_page`` de la query string, acotados."""
    page = read_int_arg("page", 1, args)
    per_page = read_int_arg("per_page", None, args)
    if per_page is None:
        per_page = read_int_arg("page_size", default_page_size, args)
    per_page = max(MIN_PAGE_SIZE, min(per_page, MAX_PAGE_SIZE))
    return {"page": max(page, 1), "per_page": per_page}


def paginate(stmt, *, page, per_page):
    """Ejecuta ``stmt`` paginado; devuelve items y metadatos."""
    total = int(
        db.session.execute(
            db.select(func.count()).select_from(stmt.order_by(None).subquery())
        ).scalar() or 0
    )
    items = db.session.execute(stmt.offset((page - 1) * per_page).limit(per_page)).scalars().all()
    return {
        "items": items,
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": math.ceil(total / per_page) if total else 0,
    }


def pagination_meta(result):
    return {key: result[key] for key in ("total", "page", "per_page", "pages")}
