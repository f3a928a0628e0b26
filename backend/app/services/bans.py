"""
Servicio de suspensiones (baneos) de usuarios.

Funciones:
- calculate_ban_expiration: convierte la duración elegida en fecha de fin.
- ban_user / modify_ban / unban_user: ciclo de vida del baneo con auditoría.
- get_ban_history: historial completo de un usuario.
"""
from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..models import UserBan, as_utc, utcnow
from .audit import record_audit
from .errors import BanError
from .impersonation import end_sessions_targeting
from .sessions import revoke_user_sessions

BAN_DURATIONS = {
    "1_hour": timedelta(hours=1),
    "1_day": timedelta(days=1),
    "1_week": timedelta(weeks=1),
    "1_month": timedelta(days=30),
    "3_months": timedelta(days=90),
    "6_months": timedelta(days=180),
    "1_year": timedelta(days=365),
}

BAN_REASON_MAX_LENGTH = 1000


def calculate_ban_expiration(duration, custom_expiration=None):
    """Fecha de expiración para ``duration``; None significa baneo permanente."""
    if not duration or duration == "permanent":
        return None

    if duration == "custom":
        if not custom_expiration:
            raise BanError("Debes indicar la fecha de expiración personalizada.")
        try:
            return as_utc(datetime.fromisoformat(str(custom_expiration).replace("Z", "+00:00")))
        except ValueError as exc:
            raise BanError("La fecha de expiración personalizada no es válida.") from exc

    delta = BAN_DURATIONS.get(duration)
    if delta is None:
        return None
    return utcnow() + delta


def _truthy(value):
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _clean_reason(data):
    reason = (data.get("reason") or "").strip()
    if not reason:
        raise BanError("Debes indicar el motivo del baneo.")
    if len(reason) > BAN_REASON_MAX_LENGTH:
        raise BanError(f"El motivo no puede exceder {BAN_REASON_MAX_LENGTH} caracteres.")
    return reason


def get_active_ban(user):
    return user.current_ban()


def serialize_ban(ban):
    if ban is None:
        return None
    expires_at = as_utc(ban.expires_at)
    remaining = None
    if expires_at is not None and ban.is_active:
        remaining = max(0, int((expires_at - utcnow()).total_seconds()))
    return {
        "id": str(ban.id),
        "reason": ban.reason,
        "banned_at": as_utc(ban.banned_at).isoformat() if ban.banned_at else None,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "is_active": bool(ban.is_active),
        "is_current": ban.is_current(),
        "is_permanent": ban.is_permanent(),
        "is_irrevocable": bool(ban.is_irrevocable),
        "remaining_seconds": remaining,
        "banned_by": ban.banner.name if ban.banner is not None else "Sistema",
    }


def ban_user(user, data, admin):
    """Crea un baneo; revoca las sesiones del usuario y cierra impersonaciones sobre él."""
    if user.id == admin.id:
        raise BanError("No puedes suspender tu propia cuenta.", 403)

    blocked_roles = current_app.config.get("IMPERSONATION_BLOCKED_ROLES") or []
    if blocked_roles and user.has_role(*blocked_roles):
        raise BanError("No puedes suspender a otros administradores.", 403)

    if user.current_ban() is not None:
        raise BanError("El usuario ya tiene un baneo activo.", 409)

    reason = _clean_reason(data)
    expires_at = calculate_ban_expiration(data.get("duration"), data.get("custom_expires_at") or data.get("expires_at"))
    if expires_at is not None and expires_at <= utcnow():
        raise BanError("La fecha de expiración debe estar en el futuro.")

    is_irrevocable = _truthy(data.get("is_irrevocable", False))
    admin_notes = (data.get("admin_notes") or "").strip() or None
    if is_irrevocable and expires_at is not None:
        raise BanError("Los baneos irrevocables deben ser permanentes.")
    if is_irrevocable and not admin_notes:
        raise BanError("Los baneos irrevocables requieren notas internas obligatorias.")

    ban = UserBan(
        user_id=user.id,
        banned_by=admin.id,
        reason=reason,
        admin_notes=admin_notes,
        is_irrevocable=is_irrevocable,
        banned_at=utcnow(),
        expires_at=expires_at,
        is_active=True,
    )
    db.session.add(ban)
    user.status = "suspended"
    db.session.flush()

    ended = end_sessions_targeting(user.id)
    revoked = revoke_user_sessions(user)

    record_audit(
        "ban.create",
        description="Usuario suspendido por un administrador",
        severity="high",
        target_entity_type="user",
        target_entity_id=user.id,
        details={
            "ban_id": str(ban.id),
            "user_email": user.email,
            "user_name": user.name,
            "reason": reason,
            "duration": data.get("duration") or "permanent",
            "expires_at": expires_at.isoformat() if expires_at else None,
            "is_irrevocable": is_irrevocable,
            "revoked_sessions": revoked,
            "ended_impersonations": ended,
        },
    )
    current_app.logger.info(
        "Usuario suspendido",
        extra={
            "event": "ban.created",
            "ban_id": str(ban.id),
            "target_id": str(user.id),
            "banned_by": str(admin.id),
        },
    )
    return ban


def modify_ban(user, data, admin):
    ban = user.current_ban()
    if ban is None:
        raise BanError("El usuario no tiene un baneo activo.", 404)
    if ban.is_irrevocable:
        raise BanError("Este baneo es irrevocable y no puede modificarse.", 403)

    reason = _clean_reason(data)
    expires_at = calculate_ban_expiration(data.get("duration"), data.get("custom_expires_at") or data.get("expires_at"))
    if expires_at is not None and expires_at <= utcnow():
        raise BanError("La fecha de expiración debe estar en el futuro.")

    ban.reason = reason
    ban.expires_at = expires_at
    if "admin_notes" in data:
        ban.admin_notes = (data.get("admin_notes") or "").strip() or None
    db.session.flush()

    record_audit(
        "ban.modify",
        description="Baneo modificado por un administrador",
        severity="medium",
        target_entity_type="user",
        target_entity_id=user.id,
        details={
            "ban_id": str(ban.id),
            "reason": reason,
            "duration": data.get("duration") or "permanent",
            "expires_at": expires_at.isoformat() if expires_at else None,
        },
    )
    return ban


def deactivate_ban(ban, admin=None, reason=None):
    ban.is_active = False
    ban.unbanned_at = utcnow()
    ban.unbanned_by = getattr(admin, "id", None)
    ban.unban_reason = reason
    user = ban.user
    if user is not None:
        user.status = "active"
    db.session.flush()
    return ban


def unban_user(user, admin, reason=None):
    """Levanta el baneo activo; devuelve False si no había ninguno."""
    ban = user.current_ban()
    if ban is None:
        return False
    if ban.is_irrevocable:
        raise BanError("Este baneo es irrevocable y no puede levantarse.", 403)

    deactivate_ban(ban, admin, reason)
    record_audit(
        "ban.remove",
        description="Usuario rehabilitado por un administrador",
        severity="medium",
        target_entity_type="user",
        target_entity_id=user.id,
        details={"ban_id": str(ban.id), "user_email": user.email, "user_name": user.name, "reason": reason},
    )
    return True


def get_ban_history(user):
    bans = db.session.execute(
        db.select(UserBan).where(UserBan.user_id == user.id).order_by(UserBan.banned_at.desc())
    ).scalars()
    return [serialize_ban(ban) for ban in bans]
