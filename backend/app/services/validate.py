"""
Validación y normalización de datos de entrada.
"""
import re

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 100


def normalize_email(value):
    return (value or "").strip().lower()


def is_valid_email(value):
    return bool(value) and len(value) <= 255 and bool(EMAIL_RE.match(value))


def validate_user_payload(data, *, partial=False):
    """
    Valida los campos de alta o edición de un usuario.

    Args:
        data: Diccionario con ``name``, ``email`` y opcionalmente ``role``
        partial: Si es True solo se validan los campos presentes

    Returns:
        Diccionario con errores de validación, vacío si todo es válido
    """
    errors = {}
    if not partial or "name" in data:
        name = (data.get("name") or "").strip()
        if len(name) < NAME_MIN_LENGTH:
            errors["name"] = f"Ingresa un nombre (mínimo {NAME_MIN_LENGTH} caracteres)."
        elif len(name) > NAME_MAX_LENGTH:
            errors["name"] = f"El nombre no puede exceder {NAME_MAX_LENGTH} caracteres."
    if not partial or "email" in data:
        if not is_valid_email(normalize_email(data.get("email"))):
            errors["email"] = "Proporciona un correo válido."
    return errors
