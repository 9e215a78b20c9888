"""
State mileage tracker service
"""
from typing import Optional, List, Dict, Any
from datetime import datetime, date
from sqlalchemy.orm import Session
import csv
import io
import logging

from ..db.models import MileageTrip, MileageCrossing
from .jurisdictions import get_state_name

logger = logging.getLogger(__name__)


class MileageTripNotFound(Exception):
    pass


def calculate_state_mileage(crossings: List[MileageCrossing]) -> List[Dict[str, Any]]:
    """
    Miles per state for an ordered list of crossings

    The odometer delta between consecutive crossings is credited to the
    earlier crossing's state. Results are sorted by miles, highest first.
    """
    if len(crossings) < 2:
        return []
    by_state: Dict[str, Dict[str, Any]] = {}
    for current, following in zip(crossings, crossings[1:]):
        entry = by_state.setdefault(current.state, {
            "state": current.state,
            "state_name": current.state_name or get_state_name(current.state),
            "miles": 0.0,
        })
        entry["miles"] += (following.odometer or 0) - (current.odometer or 0)
    return sorted(by_state.values(), key=lambda e: e["miles"], reverse=True)


def crossing_to_dict(crossing: MileageCrossing) -> Dict[str, Any]:
    return {
        "id": crossing.id,
        "state": crossing.state,
        "state_name": crossing.state_name,
        "odometer": crossing.odometer,
        "timestamp": crossing.timestamp.isoformat() if crossing.timestamp else None,
    }


def trip_to_dict(trip: MileageTrip) -> Dict[str, Any]:
    return {
        "id": trip.id,
        "name": trip.name,
        "vehicle_id": trip.vehicle_id,
        "status": trip.status,
        "start_date": trip.start_date.isoformat() if trip.start_date else None,
        "end_date": trip.end_date.isoformat() if trip.end_date else None,
        "notes": trip.notes,
        "crossings": [crossing_to_dict(c) for c in trip.crossings],
    }


class MileageService:
    def __init__(self, db: Session):
        self.db = db

    def list_trips(self, user_id: str, status: Optional[str] = None) -> List[MileageTrip]:
        query = self.db.query(MileageTrip).filter(MileageTrip.user_id == user_id)
        if status:
            query = query.filter(MileageTrip.status == status)
        return query.order_by(MileageTrip.created_at.desc()).all()

    def get_trip(self, user_id: str, trip_id: int) -> MileageTrip:
        trip = self.db.query(MileageTrip).filter(MileageTrip.id == trip_id, MileageTrip.user_id == user_id).first()
        if not trip:
            raise MileageTripNotFound("Trip not found")
        return trip

    def create_trip(self, user_id: str, name: Optional[str] = None, vehicle_id: Optional[str] = None,
                    start_date: Optional[date] = None, notes: Optional[str] = None) -> MileageTrip:
        trip = MileageTrip(
            user_id=user_id,
            name=name,
            vehicle_id=vehicle_id,
            start_date=start_date or date.today(),
            notes=notes,
            status="active",
        )
        self.db.add(trip)
        self.db.flush()
        return trip

    def add_crossing(self, user_id: str, trip_id: int, state: str, odometer: float,
                     timestamp: Optional[datetime] = None) -> MileageCrossing:
        """Record entering a state; the odometer may not go backwards"""
        trip = self.get_trip(user_id, trip_id)
        if trip.status != "active":
            raise ValueError("Cannot add crossings to a completed trip")
        if trip.crossings and odometer < trip.crossings[-1].odometer:
            raise ValueError("Odometer reading must not be less than the previous crossing")
        crossing = MileageCrossing(
            state=state.upper(),
            state_name=get_state_name(state),
            odometer=odometer,
            timestamp=timestamp or datetime.utcnow(),
        )
        trip.crossings.append(crossing)
        self.db.flush()
        return crossing

    def delete_crossing(self, user_id: str, trip_id: int, crossing_id: int) -> bool:
        trip = self.get_trip(user_id, trip_id)
        for crossing in trip.crossings:
            if crossing.id == crossing_id:
                trip.crossings.remove(crossing)
                self.db.flush()
                return True
        return False

    def complete_trip(self, user_id: str, trip_id: int, end_date: Optional[date] = None) -> MileageTrip:
        trip = self.get_trip(user_id, trip_id)
        trip.status = "completed"
        trip.end_date = end_date or date.today()
        self.db.flush()
        return trip

    def delete_trip(self, user_id: str, trip_id: int) -> None:
        self.db.delete(self.get_trip(user_id, trip_id))
        self.db.flush()

    def generate_report(self, user_id: str, trip_id: int) -> Dict[str, Any]:
        trip = self.get_trip(user_id, trip_id)
        crossings = list(trip.crossings)
        state_mileage = calculate_state_mileage(crossings)
        return {
            "trip": trip_to_dict(trip),
            "state_mileage": state_mileage,
            "total_miles": sum(s["miles"] for s in state_mileage),
            "trip_start": crossings[0].timestamp.isoformat() if crossings else None,
            "trip_end": crossings[-1].timestamp.isoformat() if crossings else None,
            "generated_at": datetime.utcnow().isoformat(),
        }

    def export_csv(self, user_id: str, trip_id: int) -> str:
        state_mileage = calculate_state_mileage(list(self.get_trip(user_id, trip_id).crossings))
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(["State", "State Name", "Miles"])
        for state in state_mileage:
            writer.writerow([state["state"], state["state_name"], f"{state['miles']:.1f}"])
        writer.writerow(["TOTAL", "", f"{sum(s['miles'] for s in state_mileage):.1f}"])
        return buffer.getvalue().rstrip("\n")
