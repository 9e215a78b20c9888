"""
State mileage tracker models: a driver trip with ordered state line crossings
"""
from sqlalchemy import Column, Integer, String, Float, Date, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship
from datetime import datetime

from ..base import Base


class MileageTrip(Base):
    __tablename__ = "mileage_trips"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=True)
    vehicle_id = Column(String, nullable=True)
    status = Column(String(20), default="active", nullable=False, index=True)  # active, completed
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    crossings = relationship("MileageCrossing", back_populates="trip", cascade="all, delete-orphan",
                             order_by="MileageCrossing.timestamp")


class MileageCrossing(Base):
    """Odometer reading taken when entering a state"""
    __tablename__ = "mileage_crossings"

    id = Column(Integer, primary_key=True, index=True)
    trip_id = Column(Integer, ForeignKey("mileage_trips.id", ondelete="CASCADE"), nullable=False, index=True)
    state = Column(String(2), nullable=False)
    state_name = Column(String, nullable=True)
    odometer = Column(Float, nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

    trip = relationship("MileageTrip", back_populates="crossings")
