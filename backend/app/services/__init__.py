"""
Services package - lógica de negocio reutilizable.

Este paquete contiene funciones compartidas que no dependen de blueprints,
organizadas por dominio funcional.
"""

__all__ = [
    "appeal_evidence",
    "audit",
    "ban_appeals",
    "bans",
    "errors",
    "pagination",
    "impersonation",
    "inactivity",
    "passwords",
    "permissions",
    "request_utils",
    "security_log",
    "sessions",
    "settings",
    "two_factor",
    "validate",
]
