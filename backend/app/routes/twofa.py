"""Autenticación de dos factores (TOTP) de la cuenta."""

from flask import current_app, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from . import api
from ..auth import require_session
from ..extensions import db
from ..notifications import create_notification
from ..services.security_log import log_2fa_event
from ..services.two_factor import (
    build_otpauth_url,
    build_qr_data_url,
    generate_backup_codes,
    generate_totp_secret,
    remaining_backup_codes,
    store_backup_codes,
    verify_2fa_or_backup,
    verify_totp_code,
)


def _commit(error_message, event):
    try:
        db.session.commit()
        return None
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("%s: %s", error_message, exc, extra={"event": event})
        return jsonify(error=error_message), 500


@api.get("/account/2fa/status")
@require_session
def two_factor_status():
    user = g.current_user
    backup_count = remaining_backup_codes(user)
    return jsonify(
        enabled=bool(user.is_2fa_enabled),
        has_backup_codes=backup_count > 0,
        backup_codes_remaining=backup_count,
    )


@api.post("/account/2fa/setup")
@require_session
def two_factor_setup():
    """Genera un nuevo secreto TOTP; 2FA queda pendiente hasta confirmar un código."""
    user = g.current_user
    if user.is_2fa_enabled:
        return jsonify(error="La autenticación en dos pasos ya está activada."), 409

    secret = generate_totp_secret()
    user.totp_secret = secret
    store_backup_codes(user, [])
    error = _commit("No se pudo generar la configuración de 2FA.", "2fa.setup_failed")
    if error:
        return error

    otpauth = build_otpauth_url(user, secret)
    return jsonify(secret=secret, otpauth_url=otpauth, qr=build_qr_data_url(otpauth))


@api.post("/account/2fa/enable")
@require_session
def two_factor_enable():
    user = g.current_user
    data = request.get_json(silent=True) or {}
    code = str(data.get("code") or data.get("otp") or "").strip()

    if not verify_totp_code(user, code):
        return jsonify(error="El código proporcionado no es válido."), 400

    backup_codes = generate_backup_codes()
    store_backup_codes(user, backup_codes)
    user.is_2fa_enabled = True
    log_2fa_event("enabled", user, {"backup_codes_issued": len(backup_codes), "method": "totp"})
    create_notification(
        user.id,
        category="security",
        title="Autenticación en dos pasos activada",
        body="La verificación en dos pasos quedó habilitada para tu cuenta.",
    )
    error = _commit("No se pudo activar la autenticación de dos pasos.", "2fa.enable_failed")
    if error:
        return error
    return jsonify(message="Autenticación en dos pasos activada.", backup_codes=backup_codes)


@api.post("/account/2fa/disable")
@require_session
def two_factor_disable():
    user = g.current_user
    data = request.get_json(silent=True) or {}
    code = str(data.get("code") or "").strip()

    valid, _ = verify_2fa_or_backup(user, code)
    if not valid:
        return jsonify(error="El código proporcionado no es válido."), 400

    user.is_2fa_enabled = False
    user.totp_secret = None
    store_backup_codes(user, [])
    log_2fa_event("disabled", user, {"method": "totp"})
    create_notification(
        user.id,
        category="security",
        title="Autenticación en dos pasos desactivada",
        body="La verificación en dos pasos se deshabilitó. Te recomendamos reactivarla cuanto antes.",
    )
    error = _commit("No se pudo desactivar la autenticación en dos pasos.", "2fa.disable_failed")
    if error:
        return error
    return jsonify(message="Autenticación en dos pasos desactivada.")
