"""Request-related utilities."""
import ipaddress

from flask import request as flask_request

USER_AGENT_MAX_LENGTH = 255
FALLBACK_IP = "0.0.0.0"


def get_client_ip(req=None):
    """
    Obtains the client IP, honoring X-Forwarded-For when present.

    Args:
        req: Flask request object. Defaults to the global request.
    """
    req = req or flask_request
    if req is None:
        return None

    forwarded_for = req.headers.get("X-Forwarded-For", "")
    if forwarded_for:
        parts = [part.strip() for part in forwarded_for.split(",") if part.strip()]
        if parts:
            return parts[0]

    real_ip = req.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return req.remote_addr


def get_user_agent(req=None):
    req = req or flask_request
    if req is None:
        return None
    value = (req.headers.get("User-Agent") or "").strip()
    return value or None


def is_valid_ip(value) -> bool:
    if not value:
        return False
    try:
        ipaddress.ip_address(str(value).strip())
    except ValueError:
        return False
    return True


def safe_client_ip(req=None):
    """IP del cliente validada; ``0.0.0.0`` cuando no es una dirección válida."""
    ip = get_client_ip(req)
    return ip if is_valid_ip(ip) else FALLBACK_IP


def truncated_user_agent(req=None, limit=USER_AGENT_MAX_LENGTH):
    value = get_user_agent(req)
    if not value:
        return None
    return value[:limit]


def mask_ip(ip):
    """Oculta los últimos cinco caracteres de la IP (``desconocida`` si falta)."""
    if not ip:
        return "desconocida"
    return f"{ip[:-5]}xxxxx"
