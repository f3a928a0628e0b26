"""
Ciclo de vida de la impersonación de usuarios por parte de administradores.

El contexto vive en la columna ``impersonation`` de la sesión bearer y se
refleja en un registro ``ImpersonationSession``. Mientras dura, la sesión
pertenece al usuario objetivo; al terminar se restaura el administrador.
"""
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

from flask import current_app, has_request_context, request
from sqlalchemy import func

from ..extensions import db
from ..models import ImpersonationSession, UserSessions, Users, as_utc, parse_uuid, utcnow
from .errors import ImpersonationError
from .request_utils import get_client_ip, get_user_agent
from .sessions import hash_token, refresh_signature, rotate_session_token

TOKEN_PREFIX_LENGTH = 8


def parse_datetime(value):
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        return None


def load_user(user_id):
    """Usuario vigente (no eliminado) o None."""
    uid = parse_uuid(user_id)
    if uid is None:
        return None
    user = db.session.get(Users, uid)
    if user is None or user.is_deleted:
        return None
    return user


def user_summary(user):
    return {"id": str(user.id), "name": user.name, "email": user.email}


def _active_filter(query, now=None):
    now = now or utcnow()
    return query.where(
        ImpersonationSession.ended_at.is_(None),
        ImpersonationSession.expires_at > now,
    )


def count_active_sessions():
    stmt = _active_filter(db.select(func.count()).select_from(ImpersonationSession))
    return int(db.session.execute(stmt).scalar() or 0)


def count_active_sessions_by_user(user_id):
    stmt = _active_filter(
        db.select(func.count()).select_from(ImpersonationSession)
    ).where(ImpersonationSession.impersonator_id == user_id)
    return int(db.session.execute(stmt).scalar() or 0)


def get_active_sessions():
    stmt = _active_filter(db.select(ImpersonationSession)).order_by(
        ImpersonationSession.started_at.desc()
    )
    return list(db.session.execute(stmt).scalars())


def assert_authorized(actor, target):
    """Lanza ImpersonationError si ``actor`` no puede impersonar a ``target``."""
    config = current_app.config

    if actor.id == target.id:
        raise ImpersonationError("No puedes impersonarte a ti mismo.", code="self_impersonation")

    blocked_roles = config.get("IMPERSONATION_BLOCKED_ROLES") or []
    if blocked_roles and target.has_role(*blocked_roles):
        raise ImpersonationError(
            "No puedes impersonar a otros administradores. "
            "Solo se pueden impersonar usuarios con rol de usuario o editor.",
            code="blocked_role",
        )

    ban = target.current_ban()
    if ban is not None:
        ban_type = "permanentemente" if ban.is_permanent() else "temporalmente"
        raise ImpersonationError(
            f"No puedes impersonar a usuarios suspendidos. Este usuario está {ban_type} suspendido. "
            "Debes levantar la suspensión antes de poder impersonarlo.",
            code="target_banned",
        )

    if config.get("IMPERSONATION_REQUIRE_2FA", True):
        if not (actor.is_2fa_enabled and actor.totp_secret):
            raise ImpersonationError(
                "Debes activar la autenticación de dos factores antes de impersonar usuarios.",
                code="2fa_required",
            )

    max_sessions = int(config.get("IMPERSONATION_MAX_CONCURRENT_SESSIONS", 5))
    if count_active_sessions() >= max_sessions:
        raise ImpersonationError(
            f"Se alcanzó el máximo de sesiones de impersonación simultáneas ({max_sessions}). "
            "Espera a que expiren o termínalas manualmente.",
            409,
            code="global_limit",
        )

    max_per_user = int(config.get("IMPERSONATION_MAX_SESSIONS_PER_USER", 2))
    if count_active_sessions_by_user(actor.id) >= max_per_user:
        raise ImpersonationError(
            f"Alcanzaste el máximo de sesiones de impersonación simultáneas ({max_per_user}). "
            "Termina una sesión existente antes de iniciar otra.",
            409,
            code="user_limit",
        )


def generate_token(actor_id, target_id):
    data = "|".join([
        str(actor_id),
        str(target_id),
        str(int(datetime.now(timezone.utc).timestamp())),
        secrets.token_hex(16),
    ])
    key = str(current_app.config["SECRET_KEY"]).encode("utf-8")
    return hmac.new(key, data.encode("utf-8"), hashlib.sha256).hexdigest()


def context(session):
    if session is None:
        return None
    return session.impersonation or None


def is_active(session):
    """True si la sesión tiene contexto de impersonación, aunque haya expirado."""
    return bool(context(session))


def has_expired(session, now=None):
    ctx = context(session)
    if not ctx:
        return False
    expires_at = parse_datetime(ctx.get("expires_at"))
    if expires_at is None:
        return True
    return expires_at <= (now or utcnow())


def get_record(session):
    ctx = context(session)
    if not ctx:
        return None
    record_id = parse_uuid(ctx.get("db_session_id"))
    if record_id is None:
        return None
    return db.session.get(ImpersonationSession, record_id)


def begin(session, actor, target):
    """Inicia la impersonación sobre la sesión bearer y devuelve la sesión rotada."""
    if is_active(session):
        raise ImpersonationError(
            "Ya existe una impersonación activa en esta sesión. Termínala antes de iniciar otra.",
            409,
            code="already_impersonating",
        )

    assert_authorized(actor, target)

    token = generate_token(actor.id, target.id)
    token_hash = hash_token(token)
    now = utcnow()
    expires_at = now + timedelta(minutes=int(current_app.config.get("IMPERSONATION_TIMEOUT_MINUTES", 30)))

    record = ImpersonationSession(
        impersonator_id=actor.id,
        target_id=target.id,
        token_hash=token_hash,
        started_at=now,
        expires_at=expires_at,
        ip_address=get_client_ip(request) if has_request_context() else None,
        user_agent=get_user_agent(request) if has_request_context() else None,
    )
    db.session.add(record)
    db.session.flush([record])

    session.impersonation = {
        "impersonator_id": str(actor.id),
        "target_id": str(target.id),
        "started_at": now.isoformat(),
        "expires_at": expires_at.isoformat(),
        "session_token": token,
        "session_token_hash": token_hash,
        "db_session_id": str(record.id),
    }
    session.user_id = target.id
    record.session_hash = session.session_hash
    db.session.flush()

    rotated = rotate_session_token(session)
    current_app.logger.info(
        "Impersonación iniciada",
        extra={
            "event": "impersonation.started",
            "impersonator_id": str(actor.id),
            "target_id": str(target.id),
            "impersonation_id": str(record.id),
        },
    )
    return rotated


def terminate(session, reason=None, rotate=True):
    """Termina la impersonación de la sesión y restaura al administrador.

    Devuelve la sesión resultante (rotada si ``rotate``) o la misma sesión sin
    cambios cuando no hay contexto.
    """
    ctx = context(session)
    if not ctx:
        return session

    record = get_record(session)
    if record is not None and record.ended_at is None:
        record.end(reason or (ImpersonationSession.END_EXPIRED if has_expired(session) else ImpersonationSession.END_MANUAL))

    impersonator_id = parse_uuid(ctx.get("impersonator_id"))
    session.user_id = impersonator_id
    session.impersonation = None
    refresh_signature(session)
    db.session.flush()

    current_app.logger.info(
        "Impersonación terminada",
        extra={
            "event": "impersonation.ended",
            "impersonator_id": str(impersonator_id),
            "target_id": ctx.get("target_id"),
            "end_reason": record.end_reason if record is not None else reason,
        },
    )

    if rotate:
        return rotate_session_token(session)
    return session


def terminate_session_by_id(session_id, reason=ImpersonationSession.END_ADMIN_TERMINATED):
    record_id = parse_uuid(session_id)
    if record_id is None:
        return False
    record = db.session.get(ImpersonationSession, record_id)
    if record is None or not record.is_active():
        return False
    record.end(reason)
    db.session.flush()
    return True


def record_was_terminated(session):
    """True si el registro de la impersonación fue cerrado fuera de esta sesión."""
    record = get_record(session)
    if record is None:
        return bool(context(session))
    return record.ended_at is not None


def time_remaining_seconds(session, now=None):
    ctx = context(session)
    expires_at = parse_datetime(ctx.get("expires_at")) if ctx else None
    if expires_at is None:
        return 0
    return max(0, int((expires_at - (now or utcnow())).total_seconds()))


def get_sanitized_context(session):
    ctx = context(session)
    if not ctx:
        return None

    impersonator = load_user(ctx.get("impersonator_id"))
    target = load_user(ctx.get("target_id"))
    if impersonator is None or target is None:
        # El cierre queda para stop, que restaura al administrador
        return None

    return {
        "active": True,
        "impersonator": user_summary(impersonator),
        "target": user_summary(target),
        "started_at": ctx.get("started_at"),
        "expires_at": ctx.get("expires_at"),
        "time_remaining_seconds": time_remaining_seconds(session),
        "session_token_hash": (ctx.get("session_token") or "")[:TOKEN_PREFIX_LENGTH],
    }


def expire_stale_sessions():
    """Cierra como ``expired`` los registros vencidos que siguen abiertos."""
    now = utcnow()
    stale = db.session.execute(
        db.select(ImpersonationSession).where(
            ImpersonationSession.ended_at.is_(None),
            ImpersonationSession.expires_at <= now,
        )
    ).scalars().all()
    for record in stale:
        record.end(ImpersonationSession.END_EXPIRED)
    db.session.flush()
    return len(stale)


def end_sessions_targeting(user_id, reason="target_banned"):
    """Cierra las impersonaciones cuyo objetivo es ``user_id``.

    Las sesiones bearer que las sostienen vuelven a su administrador.
    """
    bearer_sessions = db.session.execute(
        db.select(UserSessions).where(UserSessions.user_id == user_id)
    ).scalars().all()
    ended = 0
    for session in bearer_sessions:
        if context(session):
            terminate(session, reason=reason, rotate=False)
            ended += 1

    records = db.session.execute(
        _active_filter(db.select(ImpersonationSession)).where(ImpersonationSession.target_id == user_id)
    ).scalars().all()
    for record in records:
        record.end(reason)
        ended += 1
    db.session.flush()
    return ended
