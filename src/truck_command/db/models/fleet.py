"""
Fleet models: vehicles and drivers
"""
from sqlalchemy import Column, Integer, String, Date, DateTime, ForeignKey, Text, JSON
from datetime import datetime

from ..base import Base


class Vehicle(Base):
    """Truck or trailer in the user's fleet"""
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    vehicle_type = Column(String, default="Truck", nullable=True)
    vin = Column(String(17), nullable=True)
    make = Column(String, nullable=True)
    model = Column(String, nullable=True)
    year = Column(Integer, nullable=True)
    license_plate = Column(String, nullable=True)
    status = Column(String, default="Active", nullable=False)
    notes = Column(Text, nullable=True)

    # ELD link
    eld_external_id = Column(String, nullable=True, index=True)
    last_known_location = Column(JSON, nullable=True)
    last_location_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Driver(Base):
    """Driver employed or contracted by the user"""
    __tablename__ = "drivers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    license_number = Column(String, nullable=True)
    license_state = Column(String(2), nullable=True)
    license_expiry = Column(Date, nullable=True)
    medical_card_expiry = Column(Date, nullable=True)
    hire_date = Column(Date, nullable=True)
    status = Column(String, default="Active", nullable=False)
    notes = Column(Text, nullable=True)

    # ELD link and cached HOS state
    eld_external_id = Column(String, nullable=True, index=True)
    hos_status = Column(String(10), nullable=True)  # OFF, SB, D, ON
    hos_available_drive_minutes = Column(Integer, nullable=True)
    hos_last_updated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in [self.first_name, self.last_name] if part)
