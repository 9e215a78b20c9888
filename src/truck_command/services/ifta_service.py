"""
IFTA service - quarterly mileage and fuel reconciliation

Fuel purchased per jurisdiction comes from fuel entries; miles come from
IFTA trip records. Trips crossing two jurisdictions split their miles and
gallons evenly between the start and end jurisdiction.
"""
from typing import Optional, List, Dict, Any
from datetime import datetime, date
from sqlalchemy.orm import Session
import re
import logging

from ..db.models import IftaTrip, IftaReport, FuelEntry, Load, LoadStatus, TripSource
from .jurisdictions import (
    get_state_name,
    parse_quarter,
    quarter_date_range,
    quarter_for_date,
    mid_quarter_date,
)
from .money import ZERO, money_to_float, round_money, to_decimal

logger = logging.getLogger(__name__)

IFTA_FUEL_TYPES = ("Diesel", "Gasoline")
DISCREPANCY_TOLERANCE = 0.001

TRIP_FIELDS = (
    "quarter", "start_date", "end_date", "vehicle_id", "driver_id", "load_id", "start_jurisdiction",
    "end_jurisdiction", "total_miles", "gallons", "fuel_cost", "notes", "is_fuel_only",
)

STATE_CODE_PATTERN = re.compile(r",\s*([A-Z]{2})\b")


class IftaTripNotFound(Exception):
    pass


def extract_state(location: Optional[str]) -> str:
    """State code from 'City, ST' style locations, '' when absent"""
    if not location:
        return ""
    match = STATE_CODE_PATTERN.search(location)
    return match.group(1) if match else ""


def split_by_jurisdiction(trips: List[IftaTrip], attribute: str) -> Dict[str, float]:
    """
    Sum a trip attribute per jurisdiction

    Same-jurisdiction trips credit the full value; crossing trips credit half
    to each end. Trips missing either jurisdiction are skipped.
    """
    totals: Dict[str, float] = {}
    for trip in trips:
        value = getattr(trip, attribute) or 0
        start, end = trip.start_jurisdiction, trip.end_jurisdiction
        if start and start == end:
            totals[start] = totals.get(start, 0.0) + value
        elif start and end:
            totals[start] = totals.get(start, 0.0) + value / 2
            totals[end] = totals.get(end, 0.0) + value / 2
    return totals


def trip_to_dict(trip: IftaTrip) -> Dict[str, Any]:
    data = {
        field: (value.isoformat() if isinstance(value, date) else value)
        for field, value in ((f, getattr(trip, f)) for f in TRIP_FIELDS)
    }
    data.update({
        "id": trip.id,
        "fuel_cost": money_to_float(trip.fuel_cost),
        "is_imported": trip.is_imported,
        "is_eld_data": trip.is_eld_data,
        "source": trip.source,
    })
    return data


def report_to_dict(report: IftaReport) -> Dict[str, Any]:
    return {
        "id": report.id,
        "quarter": report.quarter,
        "year": report.year,
        "totalMiles": report.total_miles,
        "totalGallons": report.total_gallons,
        "totalTax": money_to_float(report.total_tax),
        "status": report.status,
        "submittedAt": report.submitted_at.isoformat() if report.submitted_at else None,
        "jurisdictionData": report.jurisdiction_data or [],
        "updatedAt": report.updated_at.isoformat() if report.updated_at else None,
    }


class IftaService:
    def __init__(self, db: Session):
        self.db = db

    # Trips

    def list_trips(self, user_id: str, quarter: str) -> List[IftaTrip]:
        return self.db.query(IftaTrip).filter(
            IftaTrip.user_id == user_id, IftaTrip.quarter == quarter
        ).order_by(IftaTrip.start_date.asc()).all()

    def get_trip(self, user_id: str, trip_id: int) -> IftaTrip:
        trip = self.db.query(IftaTrip).filter(IftaTrip.id == trip_id, IftaTrip.user_id == user_id).first()
        if not trip:
            raise IftaTripNotFound("Trip not found")
        return trip

    def create_trip(self, user_id: str, data: Dict[str, Any]) -> IftaTrip:
        values = {k: v for k, v in data.items() if k in TRIP_FIELDS and v is not None}
        if not values.get("quarter"):
            values["quarter"] = quarter_for_date(values["start_date"])
        parse_quarter(values["quarter"])
        values.setdefault("end_jurisdiction", values["start_jurisdiction"])
        trip = IftaTrip(user_id=user_id, source=TripSource.MANUAL.value, **values)
        self.db.add(trip)
        self.db.flush()
        return trip

    def update_trip(self, user_id: str, trip_id: int, data: Dict[str, Any]) -> IftaTrip:
        trip = self.get_trip(user_id, trip_id)
        for field in TRIP_FIELDS:
            if field in data and data[field] is not None:
                setattr(trip, field, data[field])
        self.db.flush()
        return trip

    def delete_trip(self, user_id: str, trip_id: int) -> None:
        self.db.delete(self.get_trip(user_id, trip_id))
        self.db.flush()

    # Fuel reconciliation

    def fetch_fuel_by_state(self, user_id: str, quarter: str) -> List[Dict[str, Any]]:
        """Diesel and gasoline purchases in the quarter grouped by jurisdiction"""
        start, end = quarter_date_range(quarter)
        entries = self.db.query(FuelEntry).filter(
            FuelEntry.user_id == user_id,
            FuelEntry.date >= start,
            FuelEntry.date <= end,
            FuelEntry.fuel_type.in_(IFTA_FUEL_TYPES),
        ).order_by(FuelEntry.date.asc()).all()

        by_state: Dict[str, Dict[str, Any]] = {}
        for entry in entries:
            if not entry.state:
                continue
            state = by_state.setdefault(entry.state, {
                "jurisdiction": entry.state,
                "stateName": entry.state_name or get_state_name(entry.state),
                "gallons": 0.0,
                "amount": ZERO,
                "entries": [],
            })
            state["gallons"] += entry.gallons or 0
            state["amount"] += to_decimal(entry.total_amount)
            state["entries"].append({
                "id": entry.id,
                "date": entry.date.isoformat(),
                "gallons": entry.gallons or 0,
                "amount": money_to_float(entry.total_amount),
                "location": entry.location,
                "vehicle": entry.vehicle_id,
            })
        for state in by_state.values():
            state["amount"] = money_to_float(state["amount"])
        return list(by_state.values())

    def sync_fuel_data(self, user_id: str, quarter: str) -> Dict[str, Any]:
        """Compare purchased gallons with gallons recorded on trips, per jurisdiction"""
        fuel_data = self.fetch_fuel_by_state(user_id, quarter)
        trips = self.list_trips(user_id, quarter)
        trip_gallons = split_by_jurisdiction([t for t in trips if (t.gallons or 0) > 0], "gallons")

        fuel_by_state = {}
        discrepancies = []
        for state in fuel_data:
            jurisdiction = state["jurisdiction"]
            from_trips = trip_gallons.get(jurisdiction, 0.0)
            fuel_by_state[jurisdiction] = {
                "gallonsFromPurchases": state["gallons"],
                "gallonsFromTrips": from_trips,
                "entries": state["entries"],
            }
            discrepancy = state["gallons"] - from_trips
            if abs(discrepancy) > DISCREPANCY_TOLERANCE:
                discrepancies.append({
                    "jurisdiction": jurisdiction,
                    "stateName": state["stateName"],
                    "gallonsFromPurchases": state["gallons"],
                    "gallonsFromTrips": from_trips,
                    "discrepancy": discrepancy,
                })

        return {
            "fuelData": fuel_data,
            "existingTrips": [trip_to_dict(t) for t in trips],
            "fuelByState": fuel_by_state,
            "discrepancies": discrepancies,
            "hasDiscrepancies": bool(discrepancies),
        }

    def create_missing_fuel_only_trips(self, user_id: str, quarter: str,
                                       discrepancies: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Zero-mile trips absorbing purchased gallons no trip accounts for"""
        parse_quarter(quarter)
        trip_date = mid_quarter_date(quarter)
        created = []
        for disc in discrepancies:
            gallons = disc.get("discrepancy") or 0
            if gallons <= 0:
                continue
            jurisdiction = disc["jurisdiction"]
            state_name = disc.get("stateName") or get_state_name(jurisdiction)
            trip = IftaTrip(
                user_id=user_id,
                quarter=quarter,
                start_date=trip_date,
                end_date=trip_date,
                start_jurisdiction=jurisdiction,
                end_jurisdiction=jurisdiction,
                total_miles=0,
                gallons=gallons,
                fuel_cost=0,
                is_fuel_only=True,
                source=TripSource.FUEL.value,
                notes=(f"Auto-generated to account for {gallons:.3f} gallons of fuel purchased in "
                       f"{state_name} ({jurisdiction}) but not associated with trips."),
            )
            self.db.add(trip)
            created.append(trip)
        self.db.flush()
        return {"createdTrips": [trip_to_dict(t) for t in created], "errors": []}

    def get_summary(self, user_id: str, quarter: str) -> Dict[str, Any]:
        """
        Quarterly IFTA summary

        avgMpg is total miles over total purchased gallons. Each
        jurisdiction's taxable gallons are its miles over avgMpg, and net
        taxable gallons subtract what was purchased there.
        """
        parse_quarter(quarter)
        sync = self.sync_fuel_data(user_id, quarter)
        trips = self.list_trips(user_id, quarter)

        miles_by_jurisdiction = split_by_jurisdiction(trips, "total_miles")
        total_miles = sum(miles_by_jurisdiction.values())
        total_gallons = sum(state["gallons"] for state in sync["fuelData"])
        avg_mpg = total_miles / total_gallons if total_miles > 0 and total_gallons > 0 else 0

        state_names = {state["jurisdiction"]: state["stateName"] for state in sync["fuelData"]}
        jurisdictions = set(miles_by_jurisdiction) | set(state_names)

        summary = []
        for jurisdiction in sorted(jurisdictions):
            miles = miles_by_jurisdiction.get(jurisdiction, 0.0)
            purchased = sync["fuelByState"].get(jurisdiction, {}).get("gallonsFromPurchases", 0.0)
            taxable = miles / avg_mpg if avg_mpg > 0 else 0
            summary.append({
                "jurisdiction": jurisdiction,
                "stateName": state_names.get(jurisdiction) or get_state_name(jurisdiction),
                "miles": miles,
                "taxableGallons": taxable,
                "fuelPurchased": purchased,
                "netTaxableGallons": taxable - purchased,
            })

        return {
            "quarter": quarter,
            "totalMiles": total_miles,
            "totalGallons": total_gallons,
            "avgMpg": avg_mpg,
            "jurisdictionSummary": summary,
            "hasDiscrepancies": sync["hasDiscrepancies"],
            "discrepancies": sync["discrepancies"],
        }

    # Reports

    def save_report(self, user_id: str, report_data: Dict[str, Any]) -> IftaReport:
        """Insert or update the user's report for the quarter"""
        quarter = report_data.get("quarter")
        year, _ = parse_quarter(quarter)
        report = self.db.query(IftaReport).filter(
            IftaReport.user_id == user_id, IftaReport.quarter == quarter
        ).first()
        if not report:
            report = IftaReport(user_id=user_id, quarter=quarter)
            self.db.add(report)

        report.year = year
        report.total_miles = report_data.get("totalMiles") or 0
        report.total_gallons = report_data.get("totalGallons") or 0
        report.total_tax = round_money(report_data.get("totalTax"))
        report.status = report_data.get("status") or "draft"
        report.submitted_at = report_data.get("submittedAt")
        if report.status == "submitted" and not report.submitted_at:
            report.submitted_at = datetime.utcnow()
        report.jurisdiction_data = report_data.get("jurisdictionSummary") or []
        self.db.flush()
        logger.info(f"Saved IFTA report {quarter} for user {user_id}")
        return report

    def list_reports(self, user_id: str) -> List[IftaReport]:
        return self.db.query(IftaReport).filter(
            IftaReport.user_id == user_id
        ).order_by(IftaReport.quarter.desc()).all()

    # Load import

    def get_importable_loads(self, user_id: str, quarter: str) -> List[Dict[str, Any]]:
        """Completed loads delivered in the quarter, flagged when already imported"""
        start, end = quarter_date_range(quarter)
        loads = self.db.query(Load).filter(
            Load.user_id == user_id,
            Load.status == LoadStatus.COMPLETED.value,
            Load.actual_delivery_date >= start,
            Load.actual_delivery_date <= end,
        ).order_by(Load.actual_delivery_date.desc()).all()

        imported = set()
        if loads:
            imported = {
                load_id for (load_id,) in self.db.query(IftaTrip.load_id).filter(
                    IftaTrip.user_id == user_id,
                    IftaTrip.quarter == quarter,
                    IftaTrip.load_id.in_([l.id for l in loads]),
                ).all()
            }
        return [
            {
                "id": load.id,
                "loadNumber": load.load_number,
                "origin": load.origin,
                "destination": load.destination,
                "deliveryDate": load.actual_delivery_date.isoformat(),
                "distance": load.distance or 0,
                "alreadyImported": load.id in imported,
            }
            for load in loads
        ]

    def import_loads(self, user_id: str, quarter: str, load_ids: List[int]) -> List[IftaTrip]:
        """
        Convert loads into IFTA trips

        Each trip lands in the quarter of its delivery date; miles are the
        load distance, or 0 when unknown.
        """
        parse_quarter(quarter)
        if not load_ids:
            raise ValueError("User ID, quarter, and load IDs are required")
        loads = self.db.query(Load).filter(Load.user_id == user_id, Load.id.in_(load_ids)).all()
        if not loads:
            raise ValueError("No valid loads found to import")

        trips = []
        for load in loads:
            trip_date = load.actual_delivery_date or load.delivery_date or date.today()
            trip_quarter = quarter_for_date(trip_date)
            if trip_quarter != quarter:
                logger.warning(f"Load {load.id} delivered in {trip_quarter}, not {quarter}")
            trip = IftaTrip(
                user_id=user_id,
                quarter=trip_quarter,
                start_date=trip_date,
                end_date=trip_date,
                vehicle_id=str(load.truck_id) if load.truck_id else "unknown",
                driver_id=load.driver,
                load_id=load.id,
                start_jurisdiction=extract_state(load.origin),
                end_jurisdiction=extract_state(load.destination),
                total_miles=load.distance or 0,
                gallons=0,
                fuel_cost=0,
                is_imported=True,
                source=TripSource.LOAD.value,
                notes=f"Imported from Load #{load.load_number}: {load.origin or ''} to {load.destination or ''}",
            )
            self.db.add(trip)
            trips.append(trip)
        self.db.flush()
        logger.info(f"Imported {len(trips)} loads into IFTA for user {user_id}")
        return trips

    def get_load_import_stats(self, user_id: str, quarter: str) -> Dict[str, int]:
        loads = self.get_importable_loads(user_id, quarter)
        imported = sum(1 for l in loads if l["alreadyImported"])
        return {"total": len(loads), "imported": imported, "available": len(loads) - imported}
