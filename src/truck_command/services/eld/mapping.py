"""
ELD entity mapping
Links provider vehicles and drivers to local fleet rows through eld_external_id.
"""
from sqlalchemy.orm import Session
from typing import Optional, Dict, Any
import re
import logging

from ...db.models import Vehicle, Driver

logger = logging.getLogger(__name__)


def _normalize(value: Optional[str]) -> str:
    return re.sub(r"[\s-]", "", value or "").upper()


def _digits(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")


class EldMappingService:
    """Match external ELD entities to the user's vehicles and drivers"""

    def __init__(self, db: Session):
        self.db = db

    def local_vehicle_id(self, user_id: str, external_id: Optional[str]) -> Optional[int]:
        if not external_id:
            return None
        vehicle = self.db.query(Vehicle).filter(
            Vehicle.user_id == user_id,
            Vehicle.eld_external_id == str(external_id),
        ).first()
        return vehicle.id if vehicle else None

    def local_driver_id(self, user_id: str, external_id: Optional[str]) -> Optional[int]:
        if not external_id:
            return None
        driver = self.db.query(Driver).filter(
            Driver.user_id == user_id,
            Driver.eld_external_id == str(external_id),
        ).first()
        return driver.id if driver else None

    def map_vehicle(self, user_id: str, external: Dict[str, Any]) -> Dict[str, Any]:
        """
        Link an external vehicle by VIN, then license plate, then name

        Returns:
            {"vehicleId", "matchedBy", "existing"} or {"noMatch": True, ...}
        """
        external_id = str(external.get("id"))
        existing = self.local_vehicle_id(user_id, external_id)
        if existing:
            return {"vehicleId": existing, "existing": True}

        vehicles = self.db.query(Vehicle).filter(
            Vehicle.user_id == user_id,
            Vehicle.eld_external_id.is_(None),
        ).all()

        match, matched_by = None, None
        vin = _normalize(external.get("vin"))
        if vin:
            match = next((v for v in vehicles if _normalize(v.vin) == vin), None)
            matched_by = "vin"
        plate = _normalize(external.get("licensePlate"))
        if not match and plate:
            match = next((v for v in vehicles if v.license_plate and plate in _normalize(v.license_plate)), None)
            matched_by = "license_plate"
        name = (external.get("name") or "").lower()
        if not match and name:
            match = next(
                (v for v in vehicles if v.name and (name in v.name.lower() or v.name.lower() in name)),
                None,
            )
            matched_by = "name"

        if not match:
            return {
                "noMatch": True,
                "externalVehicle": {
                    "externalId": external_id,
                    "vin": external.get("vin"),
                    "licensePlate": external.get("licensePlate"),
                    "name": external.get("name"),
                },
            }

        match.eld_external_id = external_id
        self.db.flush()
        logger.info(f"Mapped ELD vehicle {external_id} to vehicle {match.id} by {matched_by}")
        return {"vehicleId": match.id, "matchedBy": matched_by, "existing": False}

    def map_driver(self, user_id: str, external: Dict[str, Any]) -> Dict[str, Any]:
        """Link an external driver by license number, email, phone, then name"""
        external_id = str(external.get("id"))
        existing = self.local_driver_id(user_id, external_id)
        if existing:
            return {"driverId": existing, "existing": True}

        drivers = self.db.query(Driver).filter(
            Driver.user_id == user_id,
            Driver.eld_external_id.is_(None),
        ).all()

        full_name = (
            external.get("name")
            or f"{external.get('firstName') or ''} {external.get('lastName') or ''}".strip()
        ).lower()

        match, matched_by = None, None
        license_number = _normalize(external.get("licenseNumber"))
        if license_number:
            match = next((d for d in drivers if _normalize(d.license_number) == license_number), None)
            matched_by = "license_number"
        email = (external.get("email") or "").lower()
        if not match and email:
            match = next((d for d in drivers if (d.email or "").lower() == email), None)
            matched_by = "email"
        phone = _digits(external.get("phone"))
        if not match and phone:
            match = next((d for d in drivers if _digits(d.phone) == phone), None)
            matched_by = "phone"
        if not match and full_name:
            match = next((d for d in drivers if d.full_name.lower() == full_name), None)
            matched_by = "name"

        if not match:
            return {"noMatch": True, "externalDriver": {"externalId": external_id, "name": full_name}}

        match.eld_external_id = external_id
        self.db.flush()
        logger.info(f"Mapped ELD driver {external_id} to driver {match.id} by {matched_by}")
        return {"driverId": match.id, "matchedBy": matched_by, "existing": False}

    def manual_map(self, user_id: str, entity_type: str, external_id: str, local_id: int) -> bool:
        model = Vehicle if entity_type == "vehicle" else Driver
        row = self.db.query(model).filter(model.id == local_id, model.user_id == user_id).first()
        if not row:
            return False
        row.eld_external_id = str(external_id)
        self.db.flush()
        return True
