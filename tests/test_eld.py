"""
Tests for ELD integration helpers, the Terminal client and webhooks
"""
import hashlib
import hmac
import json
from datetime import date, datetime, timedelta
from unittest.mock import patch

import httpx
import pytest

from truck_command.config import config
from truck_command.db import EldConnection, Notification, Driver, Vehicle, MileageTrip, MileageCrossing
from truck_command.db.models import EldHosDailyLog, EldIftaMileage, EldSyncJob, EldVehicleLocation
from truck_command.services.eld import EldIftaService, EldSyncService, GpsService, HosService, SyncInProgress
from truck_command.services.eld.connection import decode_state, encode_state
from truck_command.services.eld.diagnostics import determine_severity
from truck_command.services.eld.gps import calculate_bounds, extract_state, haversine_km, to_mph
from truck_command.services.eld.hos import format_minutes
from truck_command.services.eld.terminal_client import (
    TerminalAPIError,
    TerminalAuthError,
    TerminalClient,
    TerminalRateLimitError,
    month_to_quarter,
    normalize_duty_status,
    parse_timestamp,
    quarter_month_list,
)
from truck_command.services.eld.webhooks import EldWebhookHandler, verify_signature


REQUEST = "truck_command.services.eld.terminal_client.httpx.request"


class TestHelpers:

    def test_format_minutes(self):
        assert format_minutes(125) == "2h 5m"
        assert format_minutes(0) == "0h 0m"
        assert format_minutes(None) == "--:--"

    def test_duty_status(self):
        assert normalize_duty_status("on_duty_not_driving") == "ON"
        assert normalize_duty_status("DRIVING") == "D"
        assert normalize_duty_status("YARD_MOVE") == "OFF"
        assert normalize_duty_status(None) == "OFF"

    def test_quarter_conversions(self):
        assert month_to_quarter("2024-05") == "2024-Q2"
        assert quarter_month_list("2024-Q4") == ["2024-10", "2024-11", "2024-12"]

    def test_parse_timestamp(self):
        assert parse_timestamp("2024-03-01T12:00:00Z") == datetime(2024, 3, 1, 12, 0)
        assert parse_timestamp("2024-03-01T07:00:00-05:00") == datetime(2024, 3, 1, 12, 0)
        assert parse_timestamp("yesterday") is None

    def test_fault_severity(self):
        assert determine_severity("ENGINE_FAULT_P0300") == "critical"
        assert determine_severity("LOW_OIL_PRESSURE") == "warning"
        assert determine_severity("TIRE_PRESSURE") == "info"
        assert determine_severity("ENGINE_FAULT", provided="Moderate") == "warning"

    def test_gps_helpers(self):
        # Dallas to Oklahoma City is roughly 300 km
        assert 290 < haversine_km(32.7767, -96.7970, 35.4676, -97.5164) < 310
        assert to_mph(100) == 62
        assert to_mph(None) is None
        assert extract_state("1200 Main St, Dallas, TX 75201") == "TX"
        assert extract_state("I-64, West Virginia") == "West Virginia"

    def test_bounds(self):
        bounds = calculate_bounds([{"lat": 30, "lng": -100}, {"lat": 40, "lng": -90}])
        assert bounds["center"] == {"lat": 35, "lng": -95}
        assert calculate_bounds([]) is None

    def test_oauth_state(self):
        state = encode_state({"userId": "u1", "provider": "motive"})
        assert decode_state(state) == {"userId": "u1", "provider": "motive"}
        assert decode_state("not base64 json") is None
        assert decode_state(None) is None


class TestTerminalClient:

    @pytest.fixture
    def client(self):
        return TerminalClient("conn_token", base_url="https://terminal.test/v1")

    def test_success_returns_json(self, client):
        with patch(REQUEST, return_value=httpx.Response(200, json={"results": [{"id": "veh_1"}]})) as request:
            assert client.request("GET", "/vehicles") == {"results": [{"id": "veh_1"}]}
        args, kwargs = request.call_args
        assert args == ("GET", "https://terminal.test/v1/vehicles")
        assert kwargs["headers"]["Authorization"] == "Bearer conn_token"

    def test_rate_limit(self, client):
        with patch(REQUEST, return_value=httpx.Response(429, headers={"Retry-After": "12"})):
            with pytest.raises(TerminalRateLimitError) as exc_info:
                client.request("GET", "/vehicles")
        assert exc_info.value.retry_after == 12

    def test_auth_error(self, client):
        with patch(REQUEST, return_value=httpx.Response(401)):
            with pytest.raises(TerminalAuthError):
                client.request("GET", "/vehicles")

    def test_not_found_is_none(self, client):
        with patch(REQUEST, return_value=httpx.Response(404)):
            assert client.request("GET", "/vehicles/missing") is None

    def test_server_error(self, client):
        with patch(REQUEST, return_value=httpx.Response(503, text="down")):
            with pytest.raises(TerminalAPIError) as exc_info:
                client.request("GET", "/vehicles")
        assert exc_info.value.status_code == 503

    def test_transport_error(self, client):
        with patch(REQUEST, side_effect=httpx.ConnectError("refused")):
            with pytest.raises(TerminalAPIError):
                client.request("GET", "/vehicles")

    def test_paginate_follows_cursor(self, client):
        pages = [
            httpx.Response(200, json={"results": [{"id": 1}], "next": "c2"}),
            httpx.Response(200, json={"results": [{"id": 2}]}),
        ]
        with patch(REQUEST, side_effect=pages) as request:
            assert [item["id"] for item in client.paginate("/drivers")] == [1, 2]
        assert request.call_args.kwargs["params"] == {"cursor": "c2"}


class TestWebhooks:

    @pytest.fixture
    def connection(self, db_session, premium_user):
        connection = EldConnection(
            user_id=premium_user.id,
            eld_provider="motive",
            eld_provider_name="Motive",
            external_connection_id="conn_123",
            access_token="tok",
            status="active",
        )
        db_session.add(connection)
        db_session.commit()
        return connection

    def test_signature(self):
        body = b'{"type":"sync.completed"}'
        signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
        assert verify_signature(body, signature, "whsec")
        assert not verify_signature(body, "bad", "whsec")
        assert not verify_signature(body, None, "whsec")

    def test_disconnect_event(self, db_session, connection):
        handled = EldWebhookHandler(db_session).handle({
            "type": "connection.disconnected",
            "data": {"connectionId": "conn_123", "reason": "Token revoked"},
        })
        assert handled
        assert connection.status == "disconnected"
        assert connection.access_token is None
        notification = db_session.query(Notification).one()
        assert notification.notification_type == "ELD_DISCONNECTED"

    def test_sync_failed_event(self, db_session, connection):
        EldWebhookHandler(db_session).handle({
            "type": "sync.failed",
            "data": {"connectionId": "conn_123", "error": "Provider timeout"},
        })
        assert connection.status == "error"
        assert connection.error_message == "Provider timeout"

    def test_unknown_connection_ignored(self, db_session):
        assert not EldWebhookHandler(db_session).handle({"type": "sync.completed", "data": {"connectionId": "nope"}})

    def test_webhook_route_checks_signature(self, client, connection, monkeypatch):
        monkeypatch.setattr(config, "TERMINAL_WEBHOOK_SECRET", "whsec")
        body = json.dumps({"type": "connection.status_changed",
                           "data": {"connectionId": "conn_123", "status": "inactive"}}).encode()

        rejected = client.post("/api/eld/webhook", content=body, headers={"x-terminal-signature": "bad"})
        assert rejected.status_code == 401

        signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
        accepted = client.post("/api/eld/webhook", content=body, headers={"x-terminal-signature": signature})
        assert accepted.status_code == 200
        assert accepted.json() == {"received": True}


class TestEldRoutes:

    def test_basic_user_blocked(self, client, auth_headers):
        response = client.get("/api/eld/connections", headers=auth_headers)
        assert response.status_code == 403
        assert response.json()["feature"] == "eldIntegration"

    def test_invalid_quarter(self, client, premium_headers):
        response = client.get("/api/eld/ifta/summary?quarter=2024-Q9", headers=premium_headers)
        assert response.status_code == 400
        assert "YYYY-Q#" in response.json()["error"]

    def test_missing_quarter(self, client, premium_headers):
        response = client.get("/api/eld/ifta/summary", headers=premium_headers)
        assert response.status_code == 400


@pytest.fixture
def active_connection(db_session):
    def build(user):
        connection = EldConnection(
            user_id=user.id,
            eld_provider="samsara",
            eld_provider_name="Samsara",
            external_connection_id=f"conn_{user.id[:6]}",
            access_token="tok",
            status="active",
        )
        db_session.add(connection)
        db_session.commit()
        return connection
    return build


class TestSyncJobs:

    def test_job_row_committed_before_provider_calls(self, db_session, premium_user, active_connection):
        connection = active_connection(premium_user)
        service = EldSyncService(db_session)
        seen = {}

        def dispatch(conn, sync_type):
            # Anything not yet committed is lost here
            db_session.rollback()
            seen["job"] = service.find_running_job(conn, sync_type)
            return 3

        service._dispatch = dispatch
        result = service.run(connection, "vehicles")

        assert seen["job"] is not None
        assert seen["job"].id == result["syncJobId"]
        assert result["success"] is True
        assert result["recordsSynced"] == 3
        job = db_session.query(EldSyncJob).one()
        assert job.status == "completed"
        assert job.records_synced == 3

    def test_second_run_rejected_while_running(self, db_session, premium_user, active_connection):
        connection = active_connection(premium_user)
        db_session.add(EldSyncJob(user_id=premium_user.id, connection_id=connection.id,
                                  sync_type="drivers", status="running", started_at=datetime.utcnow()))
        db_session.commit()

        with pytest.raises(SyncInProgress):
            EldSyncService(db_session).run(connection, "drivers")

    def test_stale_running_job_does_not_block(self, db_session, premium_user, active_connection):
        connection = active_connection(premium_user)
        db_session.add(EldSyncJob(user_id=premium_user.id, connection_id=connection.id, sync_type="drivers",
                                  status="running", started_at=datetime.utcnow() - timedelta(minutes=30)))
        db_session.commit()
        assert EldSyncService(db_session).find_running_job(connection, "drivers") is None

    def test_sync_route_returns_429_while_running(self, client, db_session, premium_user, premium_headers,
                                                  active_connection):
        connection = active_connection(premium_user)
        db_session.add(EldSyncJob(user_id=premium_user.id, connection_id=connection.id,
                                  sync_type="vehicles", status="running", started_at=datetime.utcnow()))
        db_session.commit()

        response = client.post("/api/eld/sync", json={"syncType": "vehicles"}, headers=premium_headers)
        assert response.status_code == 429
        assert "already in progress" in response.json()["error"]


class TestHosDashboard:

    @pytest.fixture
    def drivers(self, db_session, premium_user, active_connection):
        connection = active_connection(premium_user)
        driving = Driver(user_id=premium_user.id, first_name="Ana", last_name="Ruiz", eld_external_id="drv_1",
                         hos_status="D", hos_available_drive_minutes=90)
        resting = Driver(user_id=premium_user.id, first_name="Ben", last_name="Cole", eld_external_id="drv_2",
                         hos_status="OFF", hos_available_drive_minutes=600)
        unlinked = Driver(user_id=premium_user.id, first_name="Cy", hos_status="D")
        db_session.add_all([driving, resting, unlinked])
        db_session.flush()
        db_session.add(EldHosDailyLog(
            user_id=premium_user.id, connection_id=connection.id, driver_id=driving.id,
            log_date=date.today(), drive_minutes=620, on_duty_minutes=700,
            has_violation=True, violations=["11 hour driving limit"],
        ))
        db_session.commit()
        return driving, resting

    def test_summary_counts(self, db_session, premium_user, drivers):
        dashboard = HosService(db_session).get_dashboard(premium_user.id)
        summary = dashboard["summary"]

        assert summary["totalDrivers"] == 2
        assert summary["statusCounts"]["driving"] == 1
        assert summary["statusCounts"]["offDuty"] == 1
        assert summary["driversOnDuty"] == 1
        assert summary["driversLowOnTime"] == 1
        assert summary["lowOnTimeDrivers"][0]["name"] == "Ana Ruiz"
        assert summary["lowOnTimeDrivers"][0]["remainingTime"] == "1h 30m"
        assert summary["violationCount"] == 1
        assert summary["recentViolations"][0]["driverName"] == "Ana Ruiz"
        assert summary["warnings"][0]["severity"] == "warning"

        ana = next(d for d in dashboard["drivers"] if d["fullName"] == "Ana Ruiz")
        assert ana["dailyLog"]["driveMinutes"] == 620
        assert ana["dailyLog"]["hasViolation"] is True

    def test_dashboard_route(self, client, premium_headers, drivers):
        response = client.get("/api/eld/hos/dashboard", headers=premium_headers)
        assert response.status_code == 200
        assert response.json()["summary"]["totalDrivers"] == 2

    def test_dashboard_without_connection(self, client, premium_headers):
        response = client.get("/api/eld/hos/dashboard", headers=premium_headers)
        assert response.status_code == 404


class TestGpsDashboard:

    @pytest.fixture
    def locations(self, db_session, fleet_user, active_connection):
        connection = active_connection(fleet_user)
        db_session.add_all([
            Vehicle(user_id=fleet_user.id, name="Truck 1", eld_external_id="veh_1"),
            Vehicle(user_id=fleet_user.id, name="Truck 2", eld_external_id="veh_2"),
        ])
        now = datetime.utcnow()

        def location(external_id, minutes_ago, lat, lng, speed, address):
            return EldVehicleLocation(
                user_id=fleet_user.id, connection_id=connection.id, external_vehicle_id=external_id,
                latitude=lat, longitude=lng, speed=speed, address=address,
                recorded_at=now - timedelta(minutes=minutes_ago),
            )

        db_session.add_all([
            location("veh_1", 90, 38.0, -119.0, 0, "Old Stop, Fernley, NV 89408"),
            location("veh_1", 5, 39.5, -119.8, 80, "I-80, Reno, NV 89501"),
            location("veh_2", 60, 40.7, -111.9, 0, "Main St, Salt Lake City, Utah"),
        ])
        db_session.commit()

    def test_latest_position_per_vehicle(self, db_session, fleet_user, locations):
        dashboard = GpsService(db_session).get_dashboard(fleet_user.id)

        assert dashboard["totalVehicles"] == 2
        assert dashboard["movingCount"] == 1
        assert dashboard["stoppedCount"] == 1
        assert dashboard["staleCount"] == 1
        assert dashboard["movingVehicles"] == [
            {"id": dashboard["vehicles"][0]["localVehicleId"], "name": "Truck 1",
             "speed": 50, "location": "I-80, Reno, NV 89501"},
        ]
        assert dashboard["stoppedVehicles"][0]["name"] == "Truck 2"
        assert {r["region"] for r in dashboard["vehiclesByRegion"]} == {"NV", "Utah"}
        assert dashboard["bounds"]["southwest"] == {"lat": 39.5, "lng": -119.8}
        assert dashboard["bounds"]["northeast"] == {"lat": 40.7, "lng": -111.9}

    def test_route_requires_fleet(self, client, premium_headers):
        response = client.get("/api/eld/gps/dashboard", headers=premium_headers)
        assert response.status_code == 403
        assert response.json()["feature"] == "eldGpsTracking"

    def test_route_for_fleet(self, client, fleet_headers, locations):
        response = client.get("/api/eld/gps/dashboard", headers=fleet_headers)
        assert response.status_code == 200
        assert response.json()["totalVehicles"] == 2


class TestEldIftaComparison:

    @pytest.fixture
    def mileage(self, db_session, premium_user, active_connection):
        connection = active_connection(premium_user)
        for month, jurisdiction, vehicle, miles in [
            ("2024-01", "TX", "veh_1", 600),
            ("2024-02", "TX", "veh_2", 400),
            ("2024-01", "OK", "veh_1", 200),
            ("2024-04", "OK", "veh_1", 999),
        ]:
            db_session.add(EldIftaMileage(
                user_id=premium_user.id, connection_id=connection.id, external_vehicle_id=vehicle,
                jurisdiction=jurisdiction, month=month, quarter="2024-Q1" if month < "2024-04" else "2024-Q2",
                total_miles=miles,
            ))

        trip = MileageTrip(user_id=premium_user.id, status="completed",
                           start_date=date(2024, 2, 1), end_date=date(2024, 2, 2))
        trip.crossings = [
            MileageCrossing(state="TX", odometer=1000, timestamp=datetime(2024, 2, 1, 8)),
            MileageCrossing(state="OK", odometer=1500, timestamp=datetime(2024, 2, 1, 16)),
            MileageCrossing(state="AR", odometer=1600, timestamp=datetime(2024, 2, 2, 9)),
        ]
        db_session.add(trip)
        db_session.commit()

    def test_summary_compares_sources(self, db_session, premium_user, mileage):
        comparison = EldIftaService(db_session).get_summary(premium_user.id, "2024-Q1")

        assert comparison["eldMiles"] == 1200
        assert comparison["manualMiles"] == 600
        assert comparison["difference"] == 600
        assert comparison["differencePercent"] == 100
        assert comparison["jurisdictionCount"] == 2
        assert comparison["recommendation"]["source"] == "eld"
        assert "fallback" in comparison["recommendation"]["reason"]

    def test_combined_reports_overlaps(self, db_session, premium_user, mileage):
        combined = EldIftaService(db_session).get_jurisdiction_mileage(premium_user.id, "2024-Q1", "combined")

        assert combined["totalMiles"] == 1200
        assert combined["stats"] == {"eldOnly": 0, "manualOnly": 0, "both": 2}
        differences = {o["jurisdiction"]: o["difference"] for o in combined["overlaps"]}
        assert differences == {"OK": 100, "TX": 500}

    def test_summary_route(self, client, premium_headers, mileage):
        response = client.get("/api/eld/ifta/summary?quarter=2024-Q1", headers=premium_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["comparison"]["difference"] == 600
        assert [j["jurisdiction"] for j in data["eldMileage"]["data"]] == ["OK", "TX"]
        assert data["eldMileage"]["data"][1]["vehicleCount"] == 2
        assert data["lastImportedAt"] is None

    def test_manual_only_recommendation(self, db_session, premium_user):
        trip = MileageTrip(user_id=premium_user.id, status="completed", start_date=date(2024, 1, 5))
        trip.crossings = [
            MileageCrossing(state="NM", odometer=10, timestamp=datetime(2024, 1, 5, 8)),
            MileageCrossing(state="AZ", odometer=60, timestamp=datetime(2024, 1, 5, 9)),
        ]
        db_session.add(trip)
        db_session.commit()

        comparison = EldIftaService(db_session).get_summary(premium_user.id, "2024-Q1")
        assert comparison["hasEld"] is False
        assert comparison["recommendation"]["source"] == "manual"
