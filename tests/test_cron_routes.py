"""
Tests for scheduled job endpoints
"""
from datetime import date, datetime, timedelta

import pytest

from truck_command.config import config
from truck_command.db import ComplianceItem, EldConnection, Notification
from truck_command.services.eld.sync import EldSyncService, SyncInProgress


class TestCronAuth:

    def test_open_without_secret_in_test(self, client, monkeypatch):
        monkeypatch.setattr(config, "CRON_SECRET", None)
        assert client.get("/api/cron/cleanup").status_code == 200

    def test_closed_without_secret_in_prod(self, client, monkeypatch):
        monkeypatch.setattr(config, "CRON_SECRET", None)
        monkeypatch.setattr(config, "ENV", "prod")
        assert client.get("/api/cron/cleanup").status_code == 401

    def test_bearer_required_when_secret_set(self, client, monkeypatch):
        monkeypatch.setattr(config, "CRON_SECRET", "cron-secret")
        assert client.post("/api/cron/cleanup").status_code == 401
        assert client.post("/api/cron/cleanup", headers={"Authorization": "Bearer wrong"}).status_code == 401
        response = client.post("/api/cron/cleanup", headers={"Authorization": "Bearer cron-secret"})
        assert response.status_code == 200
        assert response.json()["deleted"] == 0


class TestCronJobs:

    @pytest.fixture(autouse=True)
    def no_secret(self, monkeypatch):
        monkeypatch.setattr(config, "CRON_SECRET", None)

    def test_notifications(self, client, db_session, test_user):
        db_session.add(ComplianceItem(
            user_id=test_user.id,
            title="IFTA License",
            compliance_type="License",
            status="Active",
            expiration_date=date.today() + timedelta(days=3),
        ))
        db_session.commit()

        response = client.post("/api/cron/notifications")
        assert response.status_code == 200
        assert response.json()["results"]["compliance"] == 1
        assert db_session.query(Notification).filter(Notification.notification_type == "DOCUMENT_EXPIRY").count() == 1

    def test_eld_sync_counts(self, client, db_session, premium_user, monkeypatch):
        fresh = EldConnection(user_id=premium_user.id, status="active", last_sync_at=datetime.utcnow())
        stale = EldConnection(user_id=premium_user.id, status="active", last_sync_at=datetime.utcnow() - timedelta(hours=3))
        busy = EldConnection(user_id=premium_user.id, status="active")
        broken = EldConnection(user_id=premium_user.id, status="active")
        db_session.add_all([fresh, stale, busy, broken])
        db_session.commit()

        def fake_run(self, connection, sync_type):
            if connection.id == busy.id:
                raise SyncInProgress("already running")
            if connection.id == broken.id:
                return {"success": False, "error": "Token expired"}
            return {"success": True}

        monkeypatch.setattr(EldSyncService, "run", fake_run)

        results = client.get("/api/cron/eld-sync").json()["results"]
        assert results["processed"] == 3
        assert results["succeeded"] == 1
        assert results["skipped"] == 1
        assert results["failed"] == 1
        assert results["errors"] == [{"connectionId": broken.id, "error": "Token expired"}]

    def test_trial_reminders(self, client):
        response = client.post("/api/cron/trial-reminders")
        assert response.status_code == 200
        assert response.json()["results"] == {"sent": 0, "skipped": 0, "errors": []}
