"""
Fleet service - vehicles and drivers
"""
from typing import Optional, List, Dict, Any
from datetime import date, timedelta
from sqlalchemy.orm import Session
import logging

from ..db.models import Vehicle, Driver

logger = logging.getLogger(__name__)

EXPIRY_WARNING_DAYS = 30

VEHICLE_FIELDS = ("name", "vehicle_type", "vin", "make", "model", "year", "license_plate", "status", "notes")
DRIVER_FIELDS = (
    "first_name", "last_name", "email", "phone", "license_number", "license_state",
    "license_expiry", "medical_card_expiry", "hire_date", "status", "notes",
)


class FleetRecordNotFound(Exception):
    pass


def document_status(expiry: Optional[date], today: Optional[date] = None) -> str:
    """'expired', 'warning' inside the 30 day window, otherwise 'valid'"""
    if not expiry:
        return "valid"
    days = (expiry - (today or date.today())).days
    if days < 0:
        return "expired"
    if days < EXPIRY_WARNING_DAYS:
        return "warning"
    return "valid"


def vehicle_to_dict(vehicle: Vehicle) -> Dict[str, Any]:
    data = {field: getattr(vehicle, field) for field in VEHICLE_FIELDS}
    data.update({
        "id": vehicle.id,
        "eldExternalId": vehicle.eld_external_id,
        "lastKnownLocation": vehicle.last_known_location,
        "lastLocationAt": vehicle.last_location_at.isoformat() if vehicle.last_location_at else None,
    })
    return data


def driver_to_dict(driver: Driver, today: Optional[date] = None) -> Dict[str, Any]:
    data = {
        field: (value.isoformat() if isinstance(value, date) else value)
        for field, value in ((f, getattr(driver, f)) for f in DRIVER_FIELDS)
    }
    data.update({
        "id": driver.id,
        "fullName": driver.full_name,
        "licenseStatus": document_status(driver.license_expiry, today),
        "medicalCardStatus": document_status(driver.medical_card_expiry, today),
        "hosStatus": driver.hos_status,
        "hosAvailableDriveMinutes": driver.hos_available_drive_minutes,
    })
    return data


class FleetService:
    def __init__(self, db: Session):
        self.db = db

    # Vehicles

    def list_vehicles(self, user_id: str, status: Optional[str] = None) -> List[Vehicle]:
        query = self.db.query(Vehicle).filter(Vehicle.user_id == user_id)
        if status:
            query = query.filter(Vehicle.status == status)
        return query.order_by(Vehicle.name).all()

    def count_vehicles(self, user_id: str) -> int:
        return self.db.query(Vehicle).filter(Vehicle.user_id == user_id).count()

    def get_vehicle(self, user_id: str, vehicle_id: int) -> Vehicle:
        vehicle = self.db.query(Vehicle).filter(Vehicle.id == vehicle_id, Vehicle.user_id == user_id).first()
        if not vehicle:
            raise FleetRecordNotFound("Vehicle not found")
        return vehicle

    def create_vehicle(self, user_id: str, data: Dict[str, Any]) -> Vehicle:
        vehicle = Vehicle(user_id=user_id, **{k: v for k, v in data.items() if k in VEHICLE_FIELDS and v is not None})
        self.db.add(vehicle)
        self.db.flush()
        logger.info(f"Created vehicle {vehicle.id} for user {user_id}")
        return vehicle

    def update_vehicle(self, user_id: str, vehicle_id: int, data: Dict[str, Any]) -> Vehicle:
        vehicle = self.get_vehicle(user_id, vehicle_id)
        for field in VEHICLE_FIELDS:
            if field in data and data[field] is not None:
                setattr(vehicle, field, data[field])
        self.db.flush()
        return vehicle

    def delete_vehicle(self, user_id: str, vehicle_id: int) -> None:
        self.db.delete(self.get_vehicle(user_id, vehicle_id))
        self.db.flush()

    # Drivers

    def list_drivers(self, user_id: str, status: Optional[str] = None) -> List[Driver]:
        query = self.db.query(Driver).filter(Driver.user_id == user_id)
        if status:
            query = query.filter(Driver.status == status)
        return query.order_by(Driver.first_name).all()

    def count_drivers(self, user_id: str) -> int:
        return self.db.query(Driver).filter(Driver.user_id == user_id).count()

    def get_driver(self, user_id: str, driver_id: int) -> Driver:
        driver = self.db.query(Driver).filter(Driver.id == driver_id, Driver.user_id == user_id).first()
        if not driver:
            raise FleetRecordNotFound("Driver not found")
        return driver

    def create_driver(self, user_id: str, data: Dict[str, Any]) -> Driver:
        driver = Driver(user_id=user_id, **{k: v for k, v in data.items() if k in DRIVER_FIELDS and v is not None})
        self.db.add(driver)
        self.db.flush()
        logger.info(f"Created driver {driver.id} for user {user_id}")
        return driver

    def update_driver(self, user_id: str, driver_id: int, data: Dict[str, Any]) -> Driver:
        driver = self.get_driver(user_id, driver_id)
        for field in DRIVER_FIELDS:
            if field in data and data[field] is not None:
                setattr(driver, field, data[field])
        self.db.flush()
        return driver

    def delete_driver(self, user_id: str, driver_id: int) -> None:
        self.db.delete(self.get_driver(user_id, driver_id))
        self.db.flush()

    def get_expiring_documents(self, user_id: str, today: Optional[date] = None,
                               days: int = EXPIRY_WARNING_DAYS) -> Dict[str, Any]:
        """Drivers whose license or medical card expires within the window (not already expired)"""
        today = today or date.today()
        horizon = today + timedelta(days=days)
        drivers = self.list_drivers(user_id)

        def expiring(value: Optional[date]) -> bool:
            return bool(value and today <= value <= horizon)

        licenses = [d for d in drivers if expiring(d.license_expiry)]
        medical = [d for d in drivers if expiring(d.medical_card_expiry)]
        return {
            "expiringLicense": len(licenses),
            "expiringMedical": len(medical),
            "drivers": [
                {
                    "id": d.id,
                    "name": d.full_name,
                    "licenseExpiry": d.license_expiry.isoformat() if d.license_expiry else None,
                    "medicalCardExpiry": d.medical_card_expiry.isoformat() if d.medical_card_expiry else None,
                }
                for d in drivers if d in licenses or d in medical
            ],
        }

    def get_stats(self, user_id: str) -> Dict[str, Any]:
        vehicles = self.list_vehicles(user_id)
        drivers = self.list_drivers(user_id)
        expiring = self.get_expiring_documents(user_id)
        return {
            "trucks": {
                "total": len(vehicles),
                "active": sum(1 for v in vehicles if v.status == "Active"),
                "maintenance": sum(1 for v in vehicles if v.status == "In Maintenance"),
                "outOfService": sum(1 for v in vehicles if v.status == "Out of Service"),
            },
            "drivers": {
                "total": len(drivers),
                "active": sum(1 for d in drivers if d.status == "Active"),
                "expiringLicense": expiring["expiringLicense"],
                "expiringMedical": expiring["expiringMedical"],
            },
        }
