"""
Roles y cadenas de permiso del panel.

Los permisos se guardan en la tabla ``permissions`` y se asignan a roles;
``seed_roles_and_permissions`` deja la base en el estado esperado y es
idempotente.
"""
from ..extensions import db
from ..models import Permissions, Roles

ROLE_ADMIN = "admin"
ROLE_EDITOR = "editor"
ROLE_MODERATOR = "moderator"
ROLE_USER = "user"

# Roles con timeout de sesión reducido
PRIVILEGED_ROLES = (ROLE_ADMIN, ROLE_EDITOR)
ADMIN_PANEL_ROLES = (ROLE_ADMIN, ROLE_MODERATOR, ROLE_EDITOR)

ROLE_DESCRIPTIONS = {
    ROLE_ADMIN: "Administración completa del sistema",
    ROLE_EDITOR: "Gestión de contenido",
    ROLE_MODERATOR: "Moderación de usuarios y apelaciones",
    ROLE_USER: "Cuenta estándar",
}

PERMISSIONS = {
    "users.view": "Ver usuarios",
    "users.create": "Crear usuarios",
    "users.ban": "Suspender y rehabilitar usuarios",
    "users.impersonate": "Impersonar usuarios",
    "impersonation.manage": "Gestionar sesiones de impersonación",
    "ban_appeals.review": "Revisar apelaciones de baneo",
    "audit_logs.view": "Consultar la auditoría",
    "sessions.manage": "Gestionar sesiones propias",
    "settings.update": "Modificar la configuración del panel",
}

ROLE_PERMISSIONS = {
    ROLE_ADMIN: tuple(PERMISSIONS),
    ROLE_MODERATOR: ("users.view", "users.ban", "ban_appeals.review", "audit_logs.view", "sessions.manage"),
    ROLE_EDITOR: ("users.view", "sessions.manage"),
    ROLE_USER: ("sessions.manage",),
}


def get_role(name):
    return db.session.execute(
        db.select(Roles).where(Roles.name == name)
    ).scalar_one_or_none()


def seed_roles_and_permissions():
    """Crea roles y permisos faltantes y sincroniza sus asignaciones."""
    permissions = {
        perm.name: perm
        for perm in db.session.execute(db.select(Permissions)).scalars()
    }
    for name, description in PERMISSIONS.items():
        if name not in permissions:
            permission = Permissions(name=name, description=description)
            db.session.add(permission)
            permissions[name] = permission

    roles = {}
    for role_name, description in ROLE_DESCRIPTIONS.items():
        role = get_role(role_name)
        if role is None:
            role = Roles(name=role_name, description=description)
            db.session.add(role)
        wanted = [permissions[name] for name in ROLE_PERMISSIONS.get(role_name, ())]
        for permission in wanted:
            if permission not in role.permissions:
                role.permissions.append(permission)
        roles[role_name] = role

    db.session.flush()
    return roles
