"""
GPS tracking service
Latest vehicle positions, location history and the fleet map dashboard.
"""
from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List
import math
import re
import logging

from ...db.models import Vehicle, EldVehicleLocation
from .connection import EldConnectionService, EldConnectionError
from .mapping import EldMappingService
from .terminal_client import TerminalClient, parse_timestamp

logger = logging.getLogger(__name__)

KMH_TO_MPH = 0.621371
STALE_AFTER_MINUTES = 30
MOVING_SPEED_KMH = 5
EARTH_RADIUS_KM = 6371

US_STATE_NAMES = [
    "Alabama", "Alaska", "Arizona", "Arkansas", "California", "Colorado", "Connecticut",
    "Delaware", "Florida", "Georgia", "Hawaii", "Idaho", "Illinois", "Indiana", "Iowa", "Kansas",
    "Kentucky", "Louisiana", "Maine", "Maryland", "Massachusetts", "Michigan", "Minnesota",
    "Mississippi", "Missouri", "Montana", "Nebraska", "Nevada", "New Hampshire", "New Jersey",
    "New Mexico", "New York", "North Carolina", "North Dakota", "Ohio", "Oklahoma", "Oregon",
    "Pennsylvania", "Rhode Island", "South Carolina", "South Dakota", "Tennessee", "Texas",
    "Utah", "Vermont", "Virginia", "Washington", "West Virginia", "Wisconsin", "Wyoming",
]


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometers"""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def to_mph(speed_kmh: Optional[float]) -> Optional[int]:
    return round(speed_kmh * KMH_TO_MPH) if speed_kmh else None


def extract_state(address: Optional[str]) -> Optional[str]:
    """State abbreviation before a ZIP code, else a full state name"""
    if not address:
        return None
    match = re.search(r"\b([A-Z]{2})\s*\d{5}", address)
    if match:
        return match.group(1)
    # Longest first so "West Virginia" wins over "Virginia"
    for state in sorted(US_STATE_NAMES, key=len, reverse=True):
        if state in address:
            return state
    return None


def calculate_bounds(points: List[Dict[str, float]]) -> Optional[Dict[str, Any]]:
    if not points:
        return None
    lats = [p["lat"] for p in points]
    lngs = [p["lng"] for p in points]
    return {
        "southwest": {"lat": min(lats), "lng": min(lngs)},
        "northeast": {"lat": max(lats), "lng": max(lngs)},
        "center": {"lat": (min(lats) + max(lats)) / 2, "lng": (min(lngs) + max(lngs)) / 2},
    }


class GpsService:
    def __init__(self, db: Session):
        self.db = db
        self.connections = EldConnectionService(db)
        self.mapping = EldMappingService(db)

    def _require_connection(self, user_id: str):
        connection = self.connections.get_active_connection(user_id)
        if not connection:
            raise EldConnectionError("No active ELD connection")
        return connection

    def get_all_vehicle_locations(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        connection = self._require_connection(user_id)
        now = now or datetime.utcnow()

        rows = self.db.query(EldVehicleLocation).filter(
            EldVehicleLocation.connection_id == connection.id
        ).order_by(EldVehicleLocation.recorded_at.desc()).all()

        latest: Dict[str, EldVehicleLocation] = {}
        for row in rows:
            latest.setdefault(row.external_vehicle_id, row)

        vehicles_by_external = {
            v.eld_external_id: v
            for v in self.db.query(Vehicle).filter(
                Vehicle.user_id == user_id, Vehicle.eld_external_id.isnot(None)
            ).all()
        }

        vehicles = []
        for external_id, loc in latest.items():
            vehicle = vehicles_by_external.get(external_id)
            age_minutes = round((now - loc.recorded_at).total_seconds() / 60)
            vehicles.append({
                "externalVehicleId": external_id,
                "localVehicleId": vehicle.id if vehicle else None,
                "vehicleName": (vehicle.name or vehicle.license_plate) if vehicle else "Unknown Vehicle",
                "vehicleInfo": {
                    "id": vehicle.id,
                    "name": vehicle.name,
                    "licensePlate": vehicle.license_plate,
                    "make": vehicle.make,
                    "model": vehicle.model,
                    "year": vehicle.year,
                } if vehicle else None,
                "location": {
                    "lat": loc.latitude,
                    "lng": loc.longitude,
                    "heading": loc.heading,
                    "speed": loc.speed,
                    "speedMph": to_mph(loc.speed),
                    "address": loc.address,
                },
                "recordedAt": loc.recorded_at.isoformat(),
                "ageMinutes": age_minutes,
                "isStale": age_minutes > STALE_AFTER_MINUTES,
                "isMoving": (loc.speed or 0) > MOVING_SPEED_KMH,
            })

        vehicles.sort(key=lambda v: v["vehicleName"].lower())
        return {
            "vehicles": vehicles,
            "totalVehicles": len(vehicles),
            "movingVehicles": len([v for v in vehicles if v["isMoving"]]),
            "staleLocations": len([v for v in vehicles if v["isStale"]]),
            "lastSyncAt": connection.last_sync_at.isoformat() if connection.last_sync_at else None,
        }

    def get_vehicle_history(self, user_id: str, vehicle_id: int, start: Optional[datetime] = None,
                            end: Optional[datetime] = None) -> Dict[str, Any]:
        vehicle = self.db.query(Vehicle).filter(Vehicle.id == vehicle_id, Vehicle.user_id == user_id).first()
        if not vehicle:
            raise EldConnectionError("Vehicle not found")
        if not vehicle.eld_external_id:
            raise EldConnectionError("Vehicle not linked to ELD")
        connection = self._require_connection(user_id)

        end = end or datetime.utcnow()
        start = start or end - timedelta(hours=24)

        rows = self.db.query(EldVehicleLocation).filter(
            EldVehicleLocation.connection_id == connection.id,
            EldVehicleLocation.external_vehicle_id == vehicle.eld_external_id,
            EldVehicleLocation.recorded_at >= start,
            EldVehicleLocation.recorded_at <= end,
        ).order_by(EldVehicleLocation.recorded_at.asc()).all()

        total_km = 0.0
        max_speed = 0.0
        points = []
        for i, loc in enumerate(rows):
            points.append({
                "lat": loc.latitude,
                "lng": loc.longitude,
                "time": loc.recorded_at.isoformat(),
                "speed": loc.speed,
                "speedMph": to_mph(loc.speed),
                "heading": loc.heading,
                "address": loc.address,
            })
            max_speed = max(max_speed, loc.speed or 0)
            if i > 0:
                prev = rows[i - 1]
                total_km += haversine_km(prev.latitude, prev.longitude, loc.latitude, loc.longitude)

        return {
            "vehicle": {"id": vehicle.id, "name": vehicle.name or vehicle.license_plate},
            "timeRange": {"start": start.isoformat(), "end": end.isoformat()},
            "points": points,
            "pointCount": len(points),
            "statistics": {
                "totalDistanceMiles": round(total_km * KMH_TO_MPH, 1),
                "totalDistanceKm": round(total_km, 1),
                "maxSpeedMph": round(max_speed * KMH_TO_MPH),
                "maxSpeedKmh": round(max_speed),
                "avgSpeedMph": round(sum(p["speedMph"] or 0 for p in points) / len(points)) if points else 0,
            },
            "startLocation": points[0] if points else None,
            "endLocation": points[-1] if points else None,
        }

    def refresh_locations(self, user_id: str) -> Dict[str, Any]:
        """Pull the latest positions from the provider and store them"""
        connection = self._require_connection(user_id)
        response = TerminalClient(connection.access_token).get_latest_vehicle_locations()
        if response is None:
            raise EldConnectionError("Failed to get locations from provider")

        now = datetime.utcnow()
        saved = self.store_locations(user_id, connection, response.get("results", response.get("data", [])) or [], now)
        self.connections.mark_synced(connection)
        return {"success": True, "locationsUpdated": saved, "refreshedAt": now.isoformat()}

    def store_locations(self, user_id: str, connection, items: List[Dict[str, Any]], now: datetime) -> int:
        saved = 0
        for item in items:
            external_id = item.get("vehicleId") or (item.get("vehicle") or {}).get("id")
            location = item.get("location") or item
            lat, lng = location.get("latitude"), location.get("longitude")
            if not external_id or lat is None or lng is None:
                continue

            recorded_at = parse_timestamp(item.get("time") or item.get("locatedAt")) or now
            address = location.get("address") or location.get("formattedAddress")
            vehicle_id = self.mapping.local_vehicle_id(user_id, external_id)
            self.db.add(EldVehicleLocation(
                user_id=user_id,
                connection_id=connection.id,
                vehicle_id=vehicle_id,
                external_vehicle_id=str(external_id),
                latitude=lat,
                longitude=lng,
                heading=location.get("heading"),
                speed=location.get("speed"),
                address=address,
                recorded_at=recorded_at,
                extra={"source": "terminal", "refreshedAt": now.isoformat()},
            ))
            saved += 1

            if vehicle_id:
                vehicle = self.db.query(Vehicle).filter(Vehicle.id == vehicle_id).first()
                vehicle.last_known_location = {
                    "lat": lat, "lng": lng, "address": address, "speed": location.get("speed"),
                }
                vehicle.last_location_at = recorded_at
        self.db.flush()
        return saved

    def get_vehicles_near(self, user_id: str, lat: float, lng: float, radius_miles: float = 50) -> Dict[str, Any]:
        locations = self.get_all_vehicle_locations(user_id)
        radius_km = radius_miles * 1.60934

        nearby = []
        for vehicle in locations["vehicles"]:
            distance = haversine_km(lat, lng, vehicle["location"]["lat"], vehicle["location"]["lng"])
            if distance <= radius_km:
                nearby.append({
                    **vehicle,
                    "distanceKm": round(distance, 1),
                    "distanceMiles": round(distance * KMH_TO_MPH, 1),
                })
        nearby.sort(key=lambda v: v["distanceKm"])
        return {
            "center": {"lat": lat, "lng": lng},
            "radiusMiles": radius_miles,
            "vehicles": nearby,
            "vehicleCount": len(nearby),
        }

    def get_dashboard(self, user_id: str) -> Dict[str, Any]:
        locations = self.get_all_vehicle_locations(user_id)
        vehicles = locations["vehicles"]
        moving = [v for v in vehicles if v["isMoving"]]
        stopped = [v for v in vehicles if not v["isMoving"]]

        by_region: Dict[str, List[Dict[str, Any]]] = {}
        for v in vehicles:
            by_region.setdefault(extract_state(v["location"]["address"]) or "Unknown", []).append(v)

        return {
            "totalVehicles": len(vehicles),
            "movingCount": len(moving),
            "stoppedCount": len(stopped),
            "staleCount": len([v for v in vehicles if v["isStale"]]),
            "vehicles": vehicles,
            "movingVehicles": [
                {"id": v["localVehicleId"], "name": v["vehicleName"],
                 "speed": v["location"]["speedMph"], "location": v["location"]["address"]}
                for v in moving
            ],
            "stoppedVehicles": [
                {"id": v["localVehicleId"], "name": v["vehicleName"],
                 "location": v["location"]["address"], "stoppedFor": v["ageMinutes"]}
                for v in stopped[:10]
            ],
            "vehiclesByRegion": sorted(
                [
                    {"region": region, "count": len(vs), "moving": len([v for v in vs if v["isMoving"]])}
                    for region, vs in by_region.items()
                ],
                key=lambda r: r["count"],
                reverse=True,
            ),
            "lastUpdated": locations["lastSyncAt"],
            "bounds": calculate_bounds([v["location"] for v in vehicles]),
        }
