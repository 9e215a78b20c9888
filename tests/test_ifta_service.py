"""
Tests for the IFTA calculator service
"""
import pytest
from datetime import date

from truck_command.db import FuelEntry, Load, IftaTrip
from truck_command.services.ifta_service import IftaService, extract_state, split_by_jurisdiction


QUARTER = "2024-Q1"


@pytest.fixture
def service(db_session):
    return IftaService(db_session)


def add_fuel(db_session, user, state, gallons, on=date(2024, 1, 10), fuel_type="Diesel"):
    entry = FuelEntry(
        user_id=user.id,
        date=on,
        state=state,
        gallons=gallons,
        price_per_gallon=4.0,
        total_amount=gallons * 4.0,
        fuel_type=fuel_type,
    )
    db_session.add(entry)
    db_session.flush()
    return entry


def add_trip(service, user, start, end, miles, gallons=0, on=date(2024, 2, 1)):
    return service.create_trip(user.id, {
        "start_date": on,
        "start_jurisdiction": start,
        "end_jurisdiction": end,
        "total_miles": miles,
        "gallons": gallons,
    })


class TestJurisdictionSplit:

    def test_same_state_trip_counts_in_full(self):
        trip = IftaTrip(start_jurisdiction="TX", end_jurisdiction="TX", total_miles=600)
        assert split_by_jurisdiction([trip], "total_miles") == {"TX": 600}

    def test_crossing_trip_splits_in_half(self):
        trip = IftaTrip(start_jurisdiction="TX", end_jurisdiction="OK", total_miles=400)
        assert split_by_jurisdiction([trip], "total_miles") == {"TX": 200, "OK": 200}

    def test_extract_state(self):
        assert extract_state("Dallas, TX 75201") == "TX"
        assert extract_state("Somewhere") == ""
        assert extract_state(None) == ""


class TestTrips:

    def test_quarter_derived_from_start_date(self, service, test_user):
        trip = add_trip(service, test_user, "TX", "TX", 100, on=date(2024, 5, 3))
        assert trip.quarter == "2024-Q2"
        assert trip.source == "manual"

    def test_end_jurisdiction_defaults_to_start(self, service, test_user):
        trip = service.create_trip(test_user.id, {
            "start_date": date(2024, 1, 5), "start_jurisdiction": "TX", "total_miles": 50,
        })
        assert trip.end_jurisdiction == "TX"


class TestFuelReconciliation:

    def test_only_diesel_and_gasoline_are_counted(self, service, db_session, test_user):
        add_fuel(db_session, test_user, "TX", 100)
        add_fuel(db_session, test_user, "TX", 40, fuel_type="DEF")
        fuel = service.fetch_fuel_by_state(test_user.id, QUARTER)
        assert len(fuel) == 1
        assert fuel[0]["gallons"] == 100

    def test_purchases_outside_quarter_ignored(self, service, db_session, test_user):
        add_fuel(db_session, test_user, "TX", 100, on=date(2024, 4, 1))
        assert service.fetch_fuel_by_state(test_user.id, QUARTER) == []

    def test_discrepancy_detected(self, service, db_session, test_user):
        add_fuel(db_session, test_user, "TX", 100)
        add_fuel(db_session, test_user, "OK", 50)
        add_trip(service, test_user, "TX", "TX", 600, gallons=100)

        result = service.sync_fuel_data(test_user.id, QUARTER)

        assert result["hasDiscrepancies"]
        assert [d["jurisdiction"] for d in result["discrepancies"]] == ["OK"]
        assert result["discrepancies"][0]["discrepancy"] == pytest.approx(50)

    def test_within_tolerance_is_not_a_discrepancy(self, service, db_session, test_user):
        add_fuel(db_session, test_user, "TX", 100.0005)
        add_trip(service, test_user, "TX", "TX", 600, gallons=100)
        assert not service.sync_fuel_data(test_user.id, QUARTER)["hasDiscrepancies"]

    def test_fuel_only_trips_for_positive_discrepancies(self, service, test_user):
        discrepancies = [
            {"jurisdiction": "OK", "stateName": "Oklahoma", "discrepancy": 50.0},
            {"jurisdiction": "KS", "stateName": "Kansas", "discrepancy": -12.0},
        ]
        result = service.create_missing_fuel_only_trips(test_user.id, QUARTER, discrepancies)

        assert len(result["createdTrips"]) == 1
        trip = service.list_trips(test_user.id, QUARTER)[0]
        assert trip.start_jurisdiction == "OK"
        assert trip.gallons == 50
        assert trip.total_miles == 0
        assert trip.is_fuel_only
        assert trip.source == "fuel"
        assert trip.start_date == date(2024, 2, 15)
        assert "50.000 gallons" in trip.notes


class TestSummary:

    def test_summary_math(self, service, db_session, test_user):
        add_fuel(db_session, test_user, "TX", 100)
        add_fuel(db_session, test_user, "OK", 50)
        add_trip(service, test_user, "TX", "TX", 600, gallons=100)
        add_trip(service, test_user, "TX", "OK", 400)

        summary = service.get_summary(test_user.id, QUARTER)

        assert summary["totalMiles"] == 1000
        assert summary["totalGallons"] == 150
        assert summary["avgMpg"] == pytest.approx(1000 / 150)

        rows = {row["jurisdiction"]: row for row in summary["jurisdictionSummary"]}
        assert [row["jurisdiction"] for row in summary["jurisdictionSummary"]] == ["OK", "TX"]
        assert rows["TX"]["miles"] == 800
        assert rows["TX"]["taxableGallons"] == pytest.approx(120)
        assert rows["TX"]["netTaxableGallons"] == pytest.approx(20)
        assert rows["OK"]["taxableGallons"] == pytest.approx(30)
        assert rows["OK"]["netTaxableGallons"] == pytest.approx(-20)

    def test_summary_without_fuel(self, service, test_user):
        add_trip(service, test_user, "TX", "TX", 300)
        summary = service.get_summary(test_user.id, QUARTER)
        assert summary["avgMpg"] == 0
        assert summary["jurisdictionSummary"][0]["taxableGallons"] == 0

    def test_summary_rejects_bad_quarter(self, service, test_user):
        with pytest.raises(ValueError):
            service.get_summary(test_user.id, "2024-Q9")


class TestReports:

    def test_save_report_upserts_by_quarter(self, service, test_user):
        service.save_report(test_user.id, {"quarter": QUARTER, "totalMiles": 100, "totalTax": 5})
        service.save_report(test_user.id, {"quarter": QUARTER, "totalMiles": 250, "status": "submitted"})

        reports = service.list_reports(test_user.id)
        assert len(reports) == 1
        assert reports[0].total_miles == 250
        assert reports[0].year == 2024
        assert reports[0].submitted_at is not None


class TestLoadImport:

    @pytest.fixture
    def completed_load(self, db_session, test_user):
        load = Load(
            user_id=test_user.id,
            load_number="L12345",
            origin="Dallas, TX",
            destination="Tulsa, OK",
            status="Completed",
            rate=1500,
            distance=250,
            actual_delivery_date=date(2024, 3, 10),
        )
        db_session.add(load)
        db_session.flush()
        return load

    def test_importable_loads_flag_imports(self, service, test_user, completed_load):
        loads = service.get_importable_loads(test_user.id, QUARTER)
        assert [l["alreadyImported"] for l in loads] == [False]

        trips = service.import_loads(test_user.id, QUARTER, [completed_load.id])

        assert trips[0].start_jurisdiction == "TX"
        assert trips[0].end_jurisdiction == "OK"
        assert trips[0].total_miles == 250
        assert trips[0].is_imported
        assert trips[0].source == "load"
        assert service.get_load_import_stats(test_user.id, QUARTER) == {"total": 1, "imported": 1, "available": 0}

    def test_missing_distance_imports_zero_miles(self, service, db_session, test_user, completed_load):
        completed_load.distance = None
        db_session.flush()
        trips = service.import_loads(test_user.id, QUARTER, [completed_load.id])
        assert trips[0].total_miles == 0

    def test_import_requires_load_ids(self, service, test_user):
        with pytest.raises(ValueError):
            service.import_loads(test_user.id, QUARTER, [])

    def test_import_rejects_unknown_loads(self, service, test_user):
        with pytest.raises(ValueError, match="No valid loads"):
            service.import_loads(test_user.id, QUARTER, [9999])
