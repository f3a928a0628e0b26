"""
Tests para backend/app/routes/twofa.py
Alta, activación y baja de la autenticación en dos pasos.
"""
import time

from backend.app.extensions import db
from backend.app.models import AuditLog, TwoFactorBackupCode, Users
from backend.app.services.two_factor import totp_value


def _headers(token):
    return {"Authorization": f"Bearer {token}"}


def test_status_for_new_user(client, auth_headers):
    res = client.get("/api/account/2fa/status", headers=auth_headers)
    assert res.status_code == 200
    assert res.get_json() == {"enabled": False, "has_backup_codes": False, "backup_codes_remaining": 0}


def test_setup_and_enable_flow(app, client, session_token_factory):
    """El secreto generado en setup activa 2FA con un código válido."""
    token, user = session_token_factory()
    headers = _headers(token)

    setup = client.post("/api/account/2fa/setup", headers=headers)
    assert setup.status_code == 200
    data = setup.get_json()
    assert data["otpauth_url"].startswith("otpauth://totp/")
    assert data["qr"].startswith("data:image/png;base64,")
    secret = data["secret"]

    bad = client.post("/api/account/2fa/enable", headers=headers, json={"code": "123"})
    assert bad.status_code == 400

    res = client.post("/api/account/2fa/enable", headers=headers, json={"code": totp_value(secret, time.time())})
    assert res.status_code == 200
    codes = res.get_json()["backup_codes"]
    assert len(codes) == 8

    status = client.get("/api/account/2fa/status", headers=headers).get_json()
    assert status["enabled"] is True
    assert status["backup_codes_remaining"] == 8

    with app.app_context():
        assert db.session.get(Users, user.id).is_2fa_enabled is True
        stored = db.session.execute(db.select(TwoFactorBackupCode.code_hash)).scalars().all()
        assert codes[0] not in stored
        assert db.session.execute(
            db.select(AuditLog).where(AuditLog.action == "2fa_enabled")
        ).scalar_one().user_id == user.id


def test_setup_rejected_when_enabled(client, session_token_factory):
    token, _ = session_token_factory(two_factor=True)
    assert client.post("/api/account/2fa/setup", headers=_headers(token)).status_code == 409


def test_disable_with_backup_code(app, client, session_token_factory):
    token, user = session_token_factory()
    headers = _headers(token)
    secret = client.post("/api/account/2fa/setup", headers=headers).get_json()["secret"]
    codes = client.post(
        "/api/account/2fa/enable", headers=headers, json={"code": totp_value(secret, time.time())}
    ).get_json()["backup_codes"]

    assert client.post("/api/account/2fa/disable", headers=headers, json={"code": "NOVALIDO00"}).status_code == 400

    res = client.post("/api/account/2fa/disable", headers=headers, json={"code": codes[0]})

    assert res.status_code == 200
    with app.app_context():
        stored = db.session.get(Users, user.id)
        assert stored.is_2fa_enabled is False
        assert stored.totp_secret is None
        remaining = db.session.execute(
            db.select(db.func.count()).select_from(TwoFactorBackupCode)
        ).scalar()
        assert remaining == 0
