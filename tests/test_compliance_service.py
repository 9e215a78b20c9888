"""
Tests for compliance status tracking
"""
import pytest
from datetime import date, timedelta

from truck_command.services.compliance_service import ComplianceService, derive_status


TODAY = date(2024, 6, 1)


class TestDeriveStatus:

    def test_expired(self):
        assert derive_status(TODAY - timedelta(days=1), TODAY) == "Expired"

    def test_expiring_soon_boundary(self):
        assert derive_status(TODAY + timedelta(days=30), TODAY) == "Expiring Soon"
        assert derive_status(TODAY, TODAY) == "Expiring Soon"

    def test_active(self):
        assert derive_status(TODAY + timedelta(days=31), TODAY) == "Active"

    def test_no_expiration_is_active(self):
        assert derive_status(None, TODAY) == "Active"


class TestComplianceService:

    @pytest.fixture
    def service(self, db_session):
        return ComplianceService(db_session)

    def test_create_derives_status(self, service, test_user):
        item = service.create_item(test_user.id, {
            "title": "IRP Registration",
            "compliance_type": "Registration",
            "expiration_date": date.today() + timedelta(days=10),
        })
        assert item.status == "Expiring Soon"

    def test_update_rederives_status(self, service, test_user):
        item = service.create_item(test_user.id, {
            "title": "Insurance", "compliance_type": "Insurance",
            "expiration_date": date.today() + timedelta(days=90),
        })
        service.update_item(test_user.id, item.id, {"expiration_date": date.today() - timedelta(days=2)})
        assert item.status == "Expired"

    def test_summary_and_upcoming(self, service, test_user):
        for days in (-5, 7, 120):
            service.create_item(test_user.id, {
                "title": f"Doc {days}", "compliance_type": "Permit",
                "expiration_date": date.today() + timedelta(days=days),
            })

        summary = service.get_summary(test_user.id)
        assert summary == {"total": 3, "active": 1, "expiringSoon": 1, "expired": 1}
        upcoming = service.get_upcoming_expirations(test_user.id, days=30)
        assert [i.title for i in upcoming] == ["Doc 7"]
