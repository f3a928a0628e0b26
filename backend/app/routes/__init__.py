"""
Routes package - organización modular de los endpoints de la API.
"""
from flask import Blueprint

# Blueprint único para la API
api = Blueprint("api", __name__)

# Importar módulos de rutas después de crear el blueprint para evitar imports circulares
from . import (  # noqa: E402,F401
    health,
    auth,
    twofa,
    sessions,
    impersonation,
    inactivity,
    users,
    ban_appeals,
    audit_logs,
    notifications_routes,
)

__all__ = ["api"]
