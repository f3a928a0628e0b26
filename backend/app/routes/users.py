"""Administración de usuarios y suspensiones."""

from flask import current_app, g, jsonify, request
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from . import api
from ..auth import require_permission, require_session
from ..extensions import bcrypt, db
from ..models import Roles, Users, as_utc, user_roles_table
from ..notifications import create_notification
from ..services.audit import record_audit
from ..services.bans import ban_user, get_ban_history, modify_ban, serialize_ban, unban_user
from ..services.impersonation import load_user
from ..services.pagination import pagination_meta, pagination_params, paginate
from ..services.passwords import password_strength_error
from ..services.permissions import ROLE_USER, get_role
from ..services.sessions import get_session_count
from ..services.validate import normalize_email, validate_user_payload


def _commit(error_message, event):
    try:
        db.session.commit()
        return None
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("%s: %s", error_message, exc, extra={"event": event})
        return jsonify(error=error_message), 500


def serialize_admin_user(user, *, detailed=False):
    ban = user.current_ban()
    payload = {
        "id": str(user.id),
        "name": user.name,
        "email": user.email,
        "role": user.role.name if user.role is not None else None,
        "roles": sorted(user.role_names()),
        "status": user.status,
        "is_banned": ban is not None,
        "two_factor_enabled": bool(user.is_2fa_enabled),
        "last_active_at": as_utc(user.last_active_at).isoformat() if user.last_active_at else None,
        "created_at": as_utc(user.created_at).isoformat() if user.created_at else None,
    }
    if detailed:
        payload["ban"] = serialize_ban(ban)
        payload["active_sessions"] = get_session_count(user)
        payload["permissions"] = sorted(user.permission_names())
    return payload


@api.get("/admin/users")
@require_session
@require_permission("users.view")
def admin_list_users():
    params = pagination_params()
    stmt = db.select(Users).where(Users.deleted_at.is_(None))

    search = (request.args.get("search") or request.args.get("q") or "").strip()
    if search:
        pattern = f"%{search.lower()}%"
        stmt = stmt.where(or_(db.func.lower(Users.name).like(pattern), Users.email.like(pattern)))

    role_name = (request.args.get("role") or "").strip().lower()
    if role_name:
        role_id = db.select(Roles.id).where(Roles.name == role_name).scalar_subquery()
        secondary = db.select(user_roles_table.c.user_id).where(user_roles_table.c.role_id == role_id)
        stmt = stmt.where(or_(Users.role_id == role_id, Users.id.in_(secondary)))

    status = (request.args.get("status") or "").strip().lower()
    if status in {"active", "suspended"}:
        stmt = stmt.where(Users.status == status)

    result = paginate(stmt.order_by(Users.created_at.desc()), **params)
    return jsonify(
        users=[serialize_admin_user(user) for user in result["items"]],
        **pagination_meta(result),
    ), 200


@api.post("/admin/users")
@require_session
@require_permission("users.create")
def admin_create_user():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify(error="No se proporcionaron datos JSON."), 400

    errors = validate_user_payload(data)
    if errors:
        return jsonify(error="Datos de usuario inválidos.", errors=errors), 400

    password = data.get("password") or ""
    strength_error = password_strength_error(password)
    if strength_error:
        return jsonify(error=strength_error), 400

    email = normalize_email(data.get("email"))
    exists = db.session.execute(db.select(Users.id).where(Users.email == email)).first()
    if exists:
        return jsonify(error="El correo electrónico ya está registrado."), 409

    role = get_role((data.get("role") or ROLE_USER).strip().lower())
    if role is None:
        return jsonify(error="Rol inválido."), 400

    user = Users(
        name=data["name"].strip(),
        email=email,
        password_hash=bcrypt.generate_password_hash(password).decode("utf-8"),
        role_id=role.id,
        is_verified=True,
    )
    user.roles.append(role)
    db.session.add(user)
    db.session.flush([user])

    record_audit(
        "user.create",
        description=f"Usuario {user.email} creado desde el panel",
        severity="medium",
        target_entity_type="user",
        target_entity_id=user.id,
        details={"email": user.email, "role": role.name},
    )
    error = _commit("No se pudo crear el usuario.", "users.create_failed")
    if error:
        return error
    return jsonify(message="Usuario creado correctamente.", user=serialize_admin_user(user)), 201


@api.get("/admin/users/<user_id>")
@require_session
@require_permission("users.view")
def admin_get_user(user_id):
    user = load_user(user_id)
    if user is None:
        return jsonify(error="Usuario no encontrado."), 404
    return jsonify(user=serialize_admin_user(user, detailed=True)), 200


@api.post("/admin/users/<user_id>/ban")
@require_session
@require_permission("users.ban")
def admin_ban_user(user_id):
    user = load_user(user_id)
    if user is None:
        return jsonify(error="Usuario no encontrado."), 404

    data = request.get_json(silent=True) or {}
    ban = ban_user(user, data, g.current_user)
    create_notification(
        user.id,
        category="account",
        title="Tu cuenta fue suspendida",
        body=ban.reason,
        payload={"ban_id": str(ban.id), "expires_at": as_utc(ban.expires_at).isoformat() if ban.expires_at else None},
    )
    error = _commit("No se pudo suspender al usuario.", "users.ban_failed")
    if error:
        return error
    return jsonify(message=f"El usuario {user.name} fue suspendido.", ban=serialize_ban(ban)), 201


@api.patch("/admin/users/<user_id>/ban")
@require_session
@require_permission("users.ban")
def admin_modify_ban(user_id):
    user = load_user(user_id)
    if user is None:
        return jsonify(error="Usuario no encontrado."), 404

    ban = modify_ban(user, request.get_json(silent=True) or {}, g.current_user)
    error = _commit("No se pudo modificar el baneo.", "users.ban_modify_failed")
    if error:
        return error
    return jsonify(message="Baneo actualizado.", ban=serialize_ban(ban)), 200


@api.delete("/admin/users/<user_id>/ban")
@require_session
@require_permission("users.ban")
def admin_unban_user(user_id):
    user = load_user(user_id)
    if user is None:
        return jsonify(error="Usuario no encontrado."), 404

    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip() or None
    if not unban_user(user, g.current_user, reason):
        return jsonify(error="El usuario no tiene un baneo activo."), 404

    create_notification(
        user.id,
        category="account",
        title="Tu cuenta fue rehabilitada",
        body=reason,
    )
    error = _commit("No se pudo levantar el baneo.", "users.unban_failed")
    if error:
        return error
    return jsonify(message=f"El usuario {user.name} fue rehabilitado."), 200


@api.get("/admin/users/<user_id>/bans")
@require_session
@require_permission("users.ban")
def admin_ban_history(user_id):
    user = load_user(user_id)
    if user is None:
        return jsonify(error="Usuario no encontrado."), 404
    history = get_ban_history(user)
    return jsonify(bans=history, total=len(history)), 200
