"""
ELD IFTA service
Compares provider-reported jurisdiction mileage with the manual state mileage
tracker and imports ELD miles into IFTA trip records.
"""
from sqlalchemy.orm import Session
from typing import Dict, Any
import logging

from ...db.models import EldIftaMileage, IftaTrip, MileageTrip, TripSource
from ..jurisdictions import get_state_name, quarter_date_range, mid_quarter_date
from ..plan_policy import FeatureNotAvailable
from .connection import EldConnectionService, EldConnectionError
from .terminal_client import quarter_month_list

logger = logging.getLogger(__name__)

DATA_SOURCES = ("eld", "manual", "combined")


class EldIftaService:
    def __init__(self, db: Session):
        self.db = db
        self.connections = EldConnectionService(db)

    def get_eld_mileage(self, user_id: str, quarter: str) -> Dict[str, Any]:
        """Provider miles per jurisdiction, aggregated across vehicles and months"""
        connection = self.connections.get_active_connection(user_id)
        if not connection:
            return {"hasEld": False, "data": [], "totalMiles": 0, "message": "No active ELD connection"}

        rows = self.db.query(EldIftaMileage).filter(
            EldIftaMileage.connection_id == connection.id,
            EldIftaMileage.month.in_(quarter_month_list(quarter)),
        ).all()

        by_jurisdiction: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            item = by_jurisdiction.setdefault(row.jurisdiction, {
                "jurisdiction": row.jurisdiction,
                "stateName": get_state_name(row.jurisdiction),
                "miles": 0.0,
                "source": "eld",
                "months": set(),
                "vehicles": set(),
            })
            item["miles"] += row.total_miles or 0
            item["months"].add(row.month)
            if row.external_vehicle_id:
                item["vehicles"].add(row.external_vehicle_id)

        data = []
        for jurisdiction in sorted(by_jurisdiction):
            item = by_jurisdiction[jurisdiction]
            item["months"] = sorted(item["months"])
            item["vehicles"] = sorted(item["vehicles"])
            item["vehicleCount"] = len(item["vehicles"])
            data.append(item)

        return {
            "hasEld": True,
            "data": data,
            "totalMiles": sum(j["miles"] for j in data),
            "quarter": quarter,
            "connectionId": connection.id,
            "lastSyncAt": connection.last_sync_at.isoformat() if connection.last_sync_at else None,
        }

    def get_manual_mileage(self, user_id: str, quarter: str) -> Dict[str, Any]:
        """
        Miles per state from completed mileage tracker trips

        Each consecutive pair of crossings credits the odometer delta to the
        state of the earlier crossing.
        """
        start, end = quarter_date_range(quarter)
        trips = self.db.query(MileageTrip).filter(
            MileageTrip.user_id == user_id,
            MileageTrip.status == "completed",
            MileageTrip.start_date <= end,
        ).all()
        trips = [t for t in trips if (t.end_date or t.start_date) >= start]
        if not trips:
            return {"hasManual": False, "data": [], "totalMiles": 0,
                    "message": "No manual mileage trips for this quarter"}

        by_jurisdiction: Dict[str, Dict[str, Any]] = {}
        for trip in trips:
            crossings = sorted(trip.crossings, key=lambda c: c.timestamp)
            for current, following in zip(crossings, crossings[1:]):
                miles = (following.odometer or 0) - (current.odometer or 0)
                if miles <= 0:
                    continue
                item = by_jurisdiction.setdefault(current.state, {
                    "jurisdiction": current.state,
                    "stateName": current.state_name or get_state_name(current.state),
                    "miles": 0.0,
                    "source": "manual",
                    "tripIds": set(),
                })
                item["miles"] += miles
                item["tripIds"].add(trip.id)

        data = []
        for jurisdiction in sorted(by_jurisdiction):
            item = by_jurisdiction[jurisdiction]
            item["tripIds"] = sorted(item["tripIds"])
            item["tripCount"] = len(item["tripIds"])
            data.append(item)

        return {
            "hasManual": True,
            "data": data,
            "totalMiles": sum(j["miles"] for j in data),
            "quarter": quarter,
            "tripCount": len(trips),
        }

    def get_jurisdiction_mileage(self, user_id: str, quarter: str, source: str = "eld",
                                 has_eld_access: bool = True) -> Dict[str, Any]:
        if source not in DATA_SOURCES:
            raise ValueError("Invalid data source")

        eld = self.get_eld_mileage(user_id, quarter) if has_eld_access else {"hasEld": False, "data": []}
        manual = self.get_manual_mileage(user_id, quarter)

        if source == "eld":
            if not has_eld_access:
                raise FeatureNotAvailable("eldIftaSync", "ELD IFTA sync requires Premium or higher plan")
            if not eld["hasEld"] or not eld["data"]:
                return {**manual, "dataSource": "manual", "fallback": True,
                        "fallbackReason": "No ELD data available for this quarter"}
            return {**eld, "dataSource": "eld"}

        if source == "manual":
            return {**manual, "dataSource": "manual"}

        combined: Dict[str, Dict[str, Any]] = {}
        overlaps = []
        for item in eld["data"]:
            combined[item["jurisdiction"]] = {
                **item, "eldMiles": item["miles"], "manualMiles": 0,
                "combinedMiles": item["miles"], "sources": ["eld"],
            }
        for item in manual["data"]:
            existing = combined.get(item["jurisdiction"])
            if existing:
                # ELD stays primary, the overlap is reported for review
                existing["manualMiles"] = item["miles"]
                existing["sources"].append("manual")
                overlaps.append({
                    "jurisdiction": item["jurisdiction"],
                    "stateName": item["stateName"],
                    "eldMiles": existing["eldMiles"],
                    "manualMiles": item["miles"],
                    "difference": existing["eldMiles"] - item["miles"],
                })
            else:
                combined[item["jurisdiction"]] = {
                    **item, "eldMiles": 0, "manualMiles": item["miles"],
                    "combinedMiles": item["miles"], "sources": ["manual"],
                }

        data = [combined[k] for k in sorted(combined)]
        return {
            "dataSource": "combined",
            "data": data,
            "totalMiles": sum(j["combinedMiles"] for j in data),
            "quarter": quarter,
            "overlaps": overlaps,
            "hasOverlaps": bool(overlaps),
            "stats": {
                "eldOnly": len([j for j in data if j["sources"] == ["eld"]]),
                "manualOnly": len([j for j in data if j["sources"] == ["manual"]]),
                "both": len(overlaps),
            },
        }

    def import_to_ifta(self, user_id: str, quarter: str) -> Dict[str, Any]:
        """Upsert one ELD trip per jurisdiction, dated mid-quarter"""
        eld = self.get_eld_mileage(user_id, quarter)
        if not eld["hasEld"] or not eld["data"]:
            raise EldConnectionError("No ELD mileage data available for this quarter")

        trip_date = mid_quarter_date(quarter)
        created, updated = [], []
        for item in eld["data"]:
            if item["miles"] <= 0:
                continue

            trip = self.db.query(IftaTrip).filter(
                IftaTrip.user_id == user_id,
                IftaTrip.quarter == quarter,
                IftaTrip.start_jurisdiction == item["jurisdiction"],
                IftaTrip.end_jurisdiction == item["jurisdiction"],
                IftaTrip.is_eld_data == True,  # noqa: E712
            ).first()
            is_new = trip is None
            if is_new:
                trip = IftaTrip(user_id=user_id, quarter=quarter, is_eld_data=True, source=TripSource.ELD.value)
                self.db.add(trip)

            trip.start_date = trip_date
            trip.end_date = trip_date
            trip.start_jurisdiction = item["jurisdiction"]
            trip.end_jurisdiction = item["jurisdiction"]
            trip.total_miles = round(item["miles"])
            trip.gallons = 0
            trip.fuel_cost = 0
            trip.eld_connection_id = eld["connectionId"]
            trip.notes = (
                f"ELD-synced mileage for {item['stateName']} ({item['jurisdiction']}). "
                f"Vehicles: {item['vehicleCount']}. Last sync: {eld['lastSyncAt']}"
            )
            (created if is_new else updated).append(trip)

        self.db.flush()
        logger.info(f"Imported ELD mileage for {quarter}: {len(created)} created, {len(updated)} updated")
        return {
            "success": True,
            "recordsCreated": len(created),
            "recordsUpdated": len(updated),
            "records": [
                {"id": t.id, "jurisdiction": t.start_jurisdiction, "miles": t.total_miles} for t in created + updated
            ],
            "errors": [],
            "hasErrors": False,
        }

    def get_summary(self, user_id: str, quarter: str) -> Dict[str, Any]:
        eld = self.get_eld_mileage(user_id, quarter)
        manual = self.get_manual_mileage(user_id, quarter)
        eld_total = eld["totalMiles"]
        manual_total = manual["totalMiles"]

        return {
            "quarter": quarter,
            "hasEld": eld["hasEld"],
            "hasManual": manual["hasManual"],
            "eldMiles": round(eld_total),
            "manualMiles": round(manual_total),
            "difference": round(eld_total - manual_total),
            "differencePercent": round((eld_total - manual_total) / manual_total * 100) if manual_total > 0 else 0,
            "jurisdictionCount": len({j["jurisdiction"] for j in eld["data"] + manual["data"]}),
            "eldJurisdictions": len(eld["data"]),
            "manualJurisdictions": len(manual["data"]),
            "lastEldSync": eld.get("lastSyncAt"),
            "recommendation": get_recommendation(eld, manual),
        }

    def last_imported_at(self, user_id: str, quarter: str):
        trip = self.db.query(IftaTrip).filter(
            IftaTrip.user_id == user_id,
            IftaTrip.quarter == quarter,
            IftaTrip.is_eld_data == True,  # noqa: E712
        ).order_by(IftaTrip.updated_at.desc()).first()
        return trip.updated_at.isoformat() if trip else None


def get_recommendation(eld: Dict[str, Any], manual: Dict[str, Any]) -> Dict[str, str]:
    if eld.get("hasEld") and eld.get("data"):
        if not manual.get("hasManual") or not manual.get("data"):
            return {"source": "eld", "reason": "ELD data available and recommended for accuracy"}
        return {
            "source": "eld",
            "reason": "ELD data recommended for GPS-verified accuracy. Manual data available as fallback.",
        }
    if manual.get("hasManual") and manual.get("data"):
        return {"source": "manual", "reason": "No ELD data available. Using manual State Mileage Tracker data."}
    return {
        "source": "none",
        "reason": "No mileage data available. Connect an ELD provider or use the State Mileage Tracker.",
    }
