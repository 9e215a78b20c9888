"""
Tests for notification service - generators, delivery gating and housekeeping
"""
import pytest
from datetime import date, datetime, timedelta

from truck_command.db import ComplianceItem, Invoice, Notification, Subscription
from truck_command.services.notification_service import NotificationService


@pytest.fixture
def service(db_session):
    return NotificationService(db_session)


class TestGenerators:

    def test_compliance_expiry_notification_is_deduplicated(self, service, db_session, test_user):
        db_session.add(ComplianceItem(
            user_id=test_user.id,
            title="UCR Permit",
            compliance_type="Permit",
            status="Active",
            expiration_date=date.today() + timedelta(days=5),
        ))
        db_session.flush()

        assert service.generate_compliance_notifications() == 1
        assert service.generate_compliance_notifications() == 0

        notification = db_session.query(Notification).one()
        assert notification.notification_type == "DOCUMENT_EXPIRY"
        assert notification.urgency == "HIGH"
        assert notification.title == "UCR Permit Expiring Soon"

    def test_expired_document_is_critical(self, service, db_session, test_user):
        db_session.add(ComplianceItem(
            user_id=test_user.id,
            title="Annual Inspection",
            compliance_type="Inspection",
            status="Active",
            expiration_date=date.today() - timedelta(days=2),
        ))
        db_session.flush()

        service.generate_compliance_notifications()
        assert db_session.query(Notification).one().urgency == "CRITICAL"

    def test_overdue_invoice_marks_status(self, service, db_session, test_user):
        invoice = Invoice(
            user_id=test_user.id,
            invoice_number="INV-2024-0001",
            customer="Acme Freight",
            invoice_date=date.today() - timedelta(days=25),
            due_date=date.today() - timedelta(days=10),
            total=1200,
            status="Pending",
        )
        db_session.add(invoice)
        db_session.flush()

        assert service.generate_overdue_invoice_notifications() == 1
        assert invoice.status == "Overdue"
        notification = db_session.query(Notification).one()
        assert notification.urgency == "HIGH"
        assert "10 days past due" in notification.message

    def test_ifta_deadline_reminder_days(self, service, db_session, test_user):
        assert service.generate_ifta_deadline_notifications(today=date(2024, 4, 20)) == 0
        assert service.generate_ifta_deadline_notifications(today=date(2024, 4, 23)) == 1

        notification = db_session.query(Notification).one()
        assert notification.title == "IFTA Q1 Filing Due in 7 Days"
        assert notification.urgency == "HIGH"
        assert notification.entity_id == "2024-Q1"

    def test_q4_deadline_files_previous_year(self, service, db_session, test_user):
        service.generate_ifta_deadline_notifications(today=date(2025, 1, 30))
        notification = db_session.query(Notification).one()
        assert notification.entity_id == "2024-Q4"
        assert notification.urgency == "CRITICAL"

    def test_trial_reminders(self, service, db_session, test_user):
        now = datetime(2024, 5, 1, 12, 0)
        db_session.add(Subscription(
            user_id=test_user.id,
            status="trialing",
            plan="basic",
            trial_ends_at=now + timedelta(days=2, hours=12),
        ))
        db_session.flush()

        first = service.send_trial_reminders(now=now)
        assert first["sent"] == 1
        notification = db_session.query(Notification).one()
        assert notification.notification_type == "TRIAL_ENDING"
        assert notification.entity_id == "trial-3"


class TestDelivery:

    def test_basic_tier_gets_no_email(self, service, test_user):
        notification = service.create(test_user.id, "SYSTEM", "Hello", "Welcome aboard")
        assert service.deliver(notification) == {"email": False, "sms": False}

    def test_premium_tier_gets_email(self, service, premium_user):
        notification = service.create(premium_user.id, "SYSTEM", "Hello", "Welcome aboard")
        result = service.deliver(notification)
        assert result["email"] is True
        assert result["sms"] is False
        assert notification.email_sent

    def test_quiet_hours_hold_non_critical(self, service, premium_user):
        hour = datetime.utcnow().hour
        service.update_preferences(premium_user.id, quiet_hours_start=hour, quiet_hours_end=(hour + 1) % 24)

        normal = service.create(premium_user.id, "SYSTEM", "Hello", "Later")
        assert service.deliver(normal)["email"] is False

        critical = service.create(premium_user.id, "SYSTEM", "Alert", "Now", urgency="CRITICAL")
        assert service.deliver(critical)["email"] is True

    def test_disabled_type_is_not_delivered(self, service, premium_user):
        service.update_preferences(premium_user.id, disabled_types=["SYSTEM"])
        notification = service.create(premium_user.id, "SYSTEM", "Hello", "Muted")
        assert service.deliver(notification)["email"] is False


class TestInbox:

    def test_read_state(self, service, test_user):
        first = service.create(test_user.id, "SYSTEM", "One", "First")
        service.create(test_user.id, "SYSTEM", "Two", "Second")
        assert service.unread_count(test_user.id) == 2

        service.mark_read(test_user.id, first.id)
        assert service.unread_count(test_user.id) == 1
        assert first.read_at is not None

        assert service.mark_all_read(test_user.id) == 1
        assert service.unread_count(test_user.id) == 0

    def test_mark_read_other_user(self, service, test_user):
        notification = service.create(test_user.id, "SYSTEM", "One", "First")
        assert service.mark_read("someone-else", notification.id) is None

    def test_cleanup_only_old_read(self, service, db_session, test_user):
        old_read = service.create(test_user.id, "SYSTEM", "Old", "Read")
        old_read.is_read = True
        old_read.created_at = datetime.utcnow() - timedelta(days=45)
        old_unread = service.create(test_user.id, "SYSTEM", "Old", "Unread")
        old_unread.created_at = datetime.utcnow() - timedelta(days=45)
        db_session.flush()

        assert service.cleanup_read_notifications(days=30) == 1
        assert db_session.query(Notification).count() == 1


class TestNotificationRoutes:

    def test_list_and_read(self, client, db_session, test_user, auth_headers):
        notification = NotificationService(db_session).create(test_user.id, "SYSTEM", "Hello", "Welcome")
        db_session.commit()

        listed = client.get("/api/notifications", headers=auth_headers).json()
        assert listed["unreadCount"] == 1
        assert listed["notifications"][0]["title"] == "Hello"

        assert client.post(f"/api/notifications/{notification.id}/read", headers=auth_headers).status_code == 200
        assert client.get("/api/notifications/unread-count", headers=auth_headers).json() == {"count": 0}

    def test_missing_notification(self, client, auth_headers):
        response = client.post("/api/notifications/9999/read", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["error"] == "Notification not found"

    def test_preferences(self, client, auth_headers):
        assert client.get("/api/notifications/preferences", headers=auth_headers).json()["emailEnabled"] is True

        updated = client.put("/api/notifications/preferences",
                             json={"quiet_hours_start": 22, "quiet_hours_end": 6, "disabled_types": ["SYSTEM"]},
                             headers=auth_headers).json()
        assert updated["quietHoursStart"] == 22
        assert updated["disabledTypes"] == ["SYSTEM"]

    def test_quiet_hours_range_validated(self, client, auth_headers):
        response = client.put("/api/notifications/preferences", json={"quiet_hours_start": 24}, headers=auth_headers)
        assert response.status_code == 422
