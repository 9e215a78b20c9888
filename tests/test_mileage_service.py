"""
Tests for the state mileage tracker
"""
import pytest
from datetime import datetime, date

from truck_command.db import MileageCrossing
from truck_command.services.mileage_service import MileageService, calculate_state_mileage


def crossing(state, odometer):
    return MileageCrossing(state=state, odometer=odometer)


class TestCalculateStateMileage:

    def test_delta_credited_to_earlier_state(self):
        result = calculate_state_mileage([
            crossing("TX", 1000),
            crossing("OK", 1250),
            crossing("KS", 1400),
        ])
        assert result == [
            {"state": "TX", "state_name": "Texas", "miles": 250},
            {"state": "OK", "state_name": "Oklahoma", "miles": 150},
        ]

    def test_reentering_a_state_accumulates(self):
        result = calculate_state_mileage([
            crossing("TX", 0),
            crossing("OK", 100),
            crossing("TX", 150),
            crossing("NM", 400),
        ])
        assert {r["state"]: r["miles"] for r in result} == {"TX": 350, "OK": 50}
        assert result[0]["state"] == "TX"

    def test_single_crossing_has_no_mileage(self):
        assert calculate_state_mileage([crossing("TX", 1000)]) == []


class TestMileageService:

    @pytest.fixture
    def service(self, db_session):
        return MileageService(db_session)

    @pytest.fixture
    def trip(self, service, test_user):
        trip = service.create_trip(test_user.id, name="Dallas run", start_date=date(2024, 5, 1))
        service.add_crossing(test_user.id, trip.id, "tx", 1000, datetime(2024, 5, 1, 8))
        service.add_crossing(test_user.id, trip.id, "OK", 1300, datetime(2024, 5, 1, 13))
        return trip

    def test_crossing_normalizes_state(self, trip):
        assert trip.crossings[0].state == "TX"
        assert trip.crossings[0].state_name == "Texas"

    def test_odometer_cannot_go_backwards(self, service, test_user, trip):
        with pytest.raises(ValueError):
            service.add_crossing(test_user.id, trip.id, "KS", 1200)

    def test_completed_trip_rejects_crossings(self, service, test_user, trip):
        service.complete_trip(test_user.id, trip.id)
        assert trip.status == "completed"
        with pytest.raises(ValueError):
            service.add_crossing(test_user.id, trip.id, "KS", 1500)

    def test_report_totals(self, service, test_user, trip):
        service.add_crossing(test_user.id, trip.id, "KS", 1450, datetime(2024, 5, 1, 16))
        report = service.generate_report(test_user.id, trip.id)
        assert report["total_miles"] == 450
        assert report["state_mileage"][0]["state"] == "TX"

    def test_export_csv(self, service, test_user, trip):
        csv_text = service.export_csv(test_user.id, trip.id)
        lines = csv_text.split("\n")
        assert lines[0] == "State,State Name,Miles"
        assert lines[1] == "TX,Texas,300.0"
        assert lines[-1] == "TOTAL,,300.0"

    def test_delete_crossing(self, service, test_user, trip):
        crossing_id = trip.crossings[-1].id
        assert service.delete_crossing(test_user.id, trip.id, crossing_id)
        assert len(trip.crossings) == 1
        assert not service.delete_crossing(test_user.id, trip.id, 99999)


class TestMileageRoutes:

    def test_requires_premium(self, client, auth_headers):
        assert client.get("/api/mileage/trips", headers=auth_headers).status_code == 403

    def test_trip_flow(self, client, premium_headers):
        trip = client.post("/api/mileage/trips", json={"name": "Amarillo run"}, headers=premium_headers).json()
        base = f"/api/mileage/trips/{trip['id']}"

        client.post(f"{base}/crossings", json={"state": "TX", "odometer": 500, "timestamp": "2024-05-01T08:00:00"},
                    headers=premium_headers)
        client.post(f"{base}/crossings", json={"state": "NM", "odometer": 620, "timestamp": "2024-05-01T10:00:00"},
                    headers=premium_headers)
        backwards = client.post(f"{base}/crossings", json={"state": "AZ", "odometer": 600}, headers=premium_headers)
        assert backwards.status_code == 400

        detail = client.get(base, headers=premium_headers).json()
        assert detail["stateMileage"] == [{"state": "TX", "state_name": "Texas", "miles": 120}]

        export = client.get(f"{base}/export", headers=premium_headers)
        assert export.headers["content-type"].startswith("text/csv")
        assert "TOTAL,,120.0" in export.text

    def test_missing_trip(self, client, premium_headers):
        assert client.get("/api/mileage/trips/9999", headers=premium_headers).status_code == 404
