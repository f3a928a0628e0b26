"""
Política de contraseñas y comprobación opcional contra Have I Been Pwned.
"""
import hashlib
import re
from functools import lru_cache

import requests
from flask import current_app

HIBP_API_RANGE_URL = "https://api.pwnedpasswords.com/range/"
HIBP_USER_AGENT = "CmsAdminPasswordChecker/1.0"
PASSWORD_MIN_LENGTH = 8
PASSWORD_POLICY_MESSAGE = (
    "La contraseña debe tener al menos 8 caracteres, con una letra mayúscula, "
    "una letra minúscula, un número y un carácter especial."
)
COMPROMISED_PASSWORD_MESSAGE = "Esta contraseña aparece en bases de datos filtradas. Usa una contraseña distinta."

_POLICY_PATTERNS = (r"[A-Z]", r"[a-z]", r"\d", r"[^\w\s]")


@lru_cache(maxsize=512)
def hibp_fetch_range(prefix: str) -> dict[str, int]:
    """Mapa sufijo SHA1 -> apariciones para el prefijo de 5 caracteres."""
    prefix = (prefix or "").strip().upper()
    if len(prefix) != 5 or not prefix.isalnum():
        return {}

    timeout = float(current_app.config.get("HIBP_TIMEOUT_SECONDS", 3.0))
    try:
        response = requests.get(
            f"{HIBP_API_RANGE_URL}{prefix}",
            headers={"User-Agent": HIBP_USER_AGENT, "Add-Padding": "true"},
            timeout=timeout,
        )
        response.raise_for_status()
    except requests.exceptions.RequestException as exc:
        current_app.logger.warning(
            "No se pudo consultar HIBP: %s", exc,
            extra={
                "event": "hibp.api_request_failed",
                "prefix": prefix,
                "error_type": type(exc).__name__,
            },
        )
        return {}

    results: dict[str, int] = {}
    for line in response.text.splitlines():
        suffix, sep, count = line.partition(":")
        suffix = suffix.strip().upper()
        if not sep or len(suffix) != 35:
            continue
        try:
            results[suffix] = int(count.strip())
        except ValueError:
            continue
    return results


def password_is_compromised(password: str, minimum_count: int) -> bool:
    if not password:
        return False
    digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()
    count = hibp_fetch_range(digest[:5]).get(digest[5:], 0)
    return count >= max(1, minimum_count)


def password_strength_error(password: str | None) -> str | None:
    """
    Devuelve el mensaje de error si la contraseña no cumple la política,
    o None si es válida.

    La consulta a HIBP solo se hace con ``HIBP_PASSWORD_CHECK_ENABLED``.
    """
    if not password or len(password) < PASSWORD_MIN_LENGTH:
        return PASSWORD_POLICY_MESSAGE
    if not all(re.search(pattern, password) for pattern in _POLICY_PATTERNS):
        return PASSWORD_POLICY_MESSAGE

    config = current_app.config
    if config.get("HIBP_PASSWORD_CHECK_ENABLED"):
        try:
            threshold = int(config.get("HIBP_PASSWORD_MIN_COUNT", 1))
        except (TypeError, ValueError):
            threshold = 1
        if password_is_compromised(password, threshold):
            return COMPROMISED_PASSWORD_MESSAGE
    return None
