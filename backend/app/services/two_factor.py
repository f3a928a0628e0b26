"""
Autenticación en dos pasos: TOTP (RFC 6238) y códigos de respaldo.
"""
import base64
import hashlib
import hmac
import secrets
import string
import struct
import time
from io import BytesIO
from urllib.parse import quote

import qrcode
from flask import current_app
from sqlalchemy import delete, func

from ..extensions import bcrypt, db
from ..models import TwoFactorBackupCode, utcnow

TOTP_PERIOD = 30
TOTP_DIGITS = 6
BACKUP_CODE_COUNT = 8
BACKUP_CODE_LENGTH = 10


def _normalize_base32(secret):
    value = (secret or "").strip().upper()
    return value + "=" * ((8 - len(value) % 8) % 8)


def totp_value(secret, timestamp):
    """Código TOTP del secreto para el instante ``timestamp``."""
    key = base64.b32decode(_normalize_base32(secret), casefold=True)
    counter = int(timestamp // TOTP_PERIOD)
    digest = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code = (struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF) % (10 ** TOTP_DIGITS)
    return f"{code:0{TOTP_DIGITS}d}"


def verify_totp_code(user, code):
    """Acepta el código de la ventana actual y de las adyacentes."""
    secret = getattr(user, "totp_secret", None)
    candidate = str(code or "").strip()
    if not secret or not candidate.isdigit() or len(candidate) != TOTP_DIGITS:
        return False
    now = time.time()
    return any(
        hmac.compare_digest(totp_value(secret, now + step * TOTP_PERIOD), candidate)
        for step in (-1, 0, 1)
    )


def find_backup_code(user, code):
    if not code:
        return None
    candidate = str(code).strip().upper()
    entries = db.session.execute(
        db.select(TwoFactorBackupCode).where(
            TwoFactorBackupCode.user_id == user.id,
            TwoFactorBackupCode.used_at.is_(None),
        )
    ).scalars()
    for entry in entries:
        if bcrypt.check_password_hash(entry.code_hash, candidate):
            return entry
    return None


def verify_2fa_or_backup(user, code):
    """Devuelve ``(válido, código_de_respaldo_consumido)``."""
    if verify_totp_code(user, code):
        return True, None
    entry = find_backup_code(user, code)
    if entry is not None:
        entry.used_at = utcnow()
        return True, entry
    return False, None


def generate_backup_codes(count=BACKUP_CODE_COUNT):
    alphabet = string.ascii_uppercase + string.digits
    return ["".join(secrets.choice(alphabet) for _ in range(BACKUP_CODE_LENGTH)) for _ in range(count)]


def store_backup_codes(user, codes):
    """Reemplaza los códigos de respaldo del usuario por ``codes`` (hasheados)."""
    db.session.execute(delete(TwoFactorBackupCode).where(TwoFactorBackupCode.user_id == user.id))
    for code in codes:
        db.session.add(
            TwoFactorBackupCode(user_id=user.id, code_hash=bcrypt.generate_password_hash(code).decode("utf-8"))
        )


def remaining_backup_codes(user):
    return int(
        db.session.execute(
            db.select(func.count()).select_from(TwoFactorBackupCode).where(
                TwoFactorBackupCode.user_id == user.id,
                TwoFactorBackupCode.used_at.is_(None),
            )
        ).scalar() or 0
    )


def generate_totp_secret():
    return base64.b32encode(secrets.token_bytes(20)).decode("utf-8").rstrip("=")


def build_otpauth_url(user, secret):
    issuer = current_app.config.get("TOTP_ISSUER", "CMS Admin")
    label = quote(f"{issuer}:{user.email}")
    return (
        f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"
        f"&digits={TOTP_DIGITS}&period={TOTP_PERIOD}"
    )


def build_qr_data_url(otpauth_url):
    """QR en PNG como data URL."""
    qr = qrcode.QRCode(border=1, box_size=6)
    qr.add_data(otpauth_url)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
