from .app import create_app
import click

from .app.extensions import db
from .app.services.impersonation import expire_stale_sessions
from .app.services.permissions import ROLE_PERMISSIONS, seed_roles_and_permissions
from .app.services.sessions import purge_expired_sessions

app = create_app()


@app.cli.command("seed-roles")
def seed_roles():
    """
    Crea los roles y permisos iniciales y sincroniza sus asignaciones.
    """
    roles = seed_roles_and_permissions()
    db.session.commit()
    for name, role in roles.items():
        click.echo(f"Rol '{name}': {len(ROLE_PERMISSIONS.get(name, ()))} permisos ({len(role.permissions)} asignados).")


@app.cli.command("expire-impersonations")
def expire_impersonations():
    """Cierra las sesiones de impersonación vencidas."""
    expired = expire_stale_sessions()
    db.session.commit()
    click.echo(f"Impersonaciones expiradas: {expired}.")


@app.cli.command("purge-sessions")
@click.option("--dry-run", is_flag=True, help="Cuenta sin borrar.")
def purge_sessions(dry_run: bool = False):
    """Elimina sesiones vencidas y candados del panel caducados."""
    sessions, locks = purge_expired_sessions()
    if dry_run:
        db.session.rollback()
    else:
        db.session.commit()
    suffix = " (dry-run)" if dry_run else ""
    click.echo(f"Sesiones eliminadas: {sessions}; candados eliminados: {locks}{suffix}.")


@app.shell_context_processor
def make_shell_context():
    from .app import models

    return {
        "app": app,
        "db": db,
        "Users": models.Users,
        "Roles": models.Roles,
        "UserSessions": models.UserSessions,
        "ImpersonationSession": models.ImpersonationSession,
        "UserBan": models.UserBan,
        "BanAppeal": models.BanAppeal,
        "AuditLog": models.AuditLog,
    }


if __name__ == "__main__":
    app.run(debug=True)
