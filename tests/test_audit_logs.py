"""
Tests para backend/app/routes/audit_logs.py y services/audit.py
"""
from datetime import timedelta

import pytest

from backend.app.extensions import db
from backend.app.models import AuditLog, utcnow
from backend.app.services.audit import record_audit


def _headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def moderator_headers(session_token_factory):
    token, moderator = session_token_factory(role="moderator")
    return _headers(token), moderator


@pytest.fixture()
def seeded_logs(app, user_factory):
    """Entradas de auditoría de ejemplo; devuelve el usuario actor."""
    actor = user_factory()
    with app.app_context():
        record_audit("impersonation.start", severity="critical", user_id=actor.id)
        record_audit("impersonation.stop", severity="info", user_id=actor.id)
        record_audit("ban.create", severity="high", details={"reason": "spam"}, user_id=None)
        # El registro no admite updates: la entrada antigua se inserta con su fecha
        db.session.add(AuditLog(
            action="ban.remove",
            severity="medium",
            details={},
            created_at=utcnow() - timedelta(days=30),
        ))
        db.session.commit()
    return actor


class TestListAuditLogs:
    """GET /api/admin/audit-logs"""

    def test_lists_newest_first(self, client, moderator_headers, seeded_logs):
        headers, _ = moderator_headers
        res = client.get("/api/admin/audit-logs", headers=headers)
        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 4
        assert data["per_page"] == 25
        assert data["logs"][-1]["action"] == "ban.remove"

    def test_action_prefix_filter(self, client, moderator_headers, seeded_logs):
        headers, _ = moderator_headers
        data = client.get("/api/admin/audit-logs?action=impersonation.", headers=headers).get_json()
        assert sorted(entry["action"] for entry in data["logs"]) == ["impersonation.start", "impersonation.stop"]

    def test_exact_action_filter(self, client, moderator_headers, seeded_logs):
        headers, _ = moderator_headers
        data = client.get("/api/admin/audit-logs?action=ban.create", headers=headers).get_json()
        assert data["total"] == 1
        assert data["logs"][0]["details"] == {"reason": "spam"}

    def test_severity_and_user_filters(self, client, moderator_headers, seeded_logs):
        headers, _ = moderator_headers
        critical = client.get("/api/admin/audit-logs?severity=critical", headers=headers).get_json()
        assert [entry["action"] for entry in critical["logs"]] == ["impersonation.start"]

        by_user = client.get(f"/api/admin/audit-logs?user_id={seeded_logs.id}", headers=headers).get_json()
        assert by_user["total"] == 2
        assert by_user["logs"][0]["user"]["id"] == str(seeded_logs.id)

    def test_days_filter(self, client, moderator_headers, seeded_logs):
        headers, _ = moderator_headers
        data = client.get("/api/admin/audit-logs?days=7", headers=headers).get_json()
        assert data["total"] == 3

    def test_invalid_filters(self, client, moderator_headers):
        headers, _ = moderator_headers
        assert client.get("/api/admin/audit-logs?severity=grave", headers=headers).status_code == 400
        assert client.get("/api/admin/audit-logs?user_id=123", headers=headers).status_code == 400

    def test_single_entry(self, app, client, moderator_headers, seeded_logs):
        headers, _ = moderator_headers
        with app.app_context():
            entry_id = db.session.execute(
                db.select(AuditLog.id).where(AuditLog.action == "ban.create")
            ).scalar_one()
        res = client.get(f"/api/admin/audit-logs/{entry_id}", headers=headers)
        assert res.status_code == 200
        assert res.get_json()["log"]["severity"] == "high"
        assert client.get("/api/admin/audit-logs/no-existe", headers=headers).status_code == 404


class TestAuditStats:
    """GET /api/admin/audit-logs/stats"""

    def test_stats_last_week(self, client, moderator_headers, seeded_logs):
        headers, _ = moderator_headers
        res = client.get("/api/admin/audit-logs/stats", headers=headers)
        assert res.status_code == 200
        data = res.get_json()
        assert data["days"] == 7
        assert data["total"] == 3
        assert data["by_severity"]["critical"] == 1
        assert data["by_severity"]["medium"] == 0
        assert {item["action"] for item in data["top_actions"]} == {
            "impersonation.start", "impersonation.stop", "ban.create",
        }

    def test_days_are_clamped(self, client, moderator_headers, seeded_logs):
        headers, _ = moderator_headers
        data = client.get("/api/admin/audit-logs/stats?days=9999", headers=headers).get_json()
        assert data["days"] == 365
        assert data["total"] == 4


class TestRecordAudit:
    """record_audit y la inmutabilidad del registro."""

    def test_unknown_severity_falls_back_to_info(self, app):
        with app.app_context():
            entry = record_audit("custom.event", severity="extrema", user_id=None)
            db.session.commit()
            assert entry.severity == "info"

    def test_entries_are_append_only(self, app):
        with app.app_context():
            entry = record_audit("custom.event", user_id=None)
            db.session.commit()
            entry.description = "editado"
            with pytest.raises(ValueError):
                db.session.flush()
            db.session.rollback()
