"""
IFTA trip and quarterly report models
"""
from sqlalchemy import Column, Integer, String, Float, Numeric, Boolean, Date, DateTime, ForeignKey, Text, JSON, UniqueConstraint
from datetime import datetime
import enum

from ..base import Base


class TripSource(str, enum.Enum):
    MANUAL = "manual"
    ELD = "eld"
    LOAD = "load"
    FUEL = "fuel"


class IftaTrip(Base):
    """A trip or trip segment counted toward a quarter's IFTA return"""
    __tablename__ = "ifta_trips"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    quarter = Column(String(7), nullable=False, index=True)  # YYYY-Q#
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    vehicle_id = Column(String, nullable=True)
    driver_id = Column(String, nullable=True)
    load_id = Column(Integer, ForeignKey("loads.id", ondelete="SET NULL"), nullable=True, index=True)
    start_jurisdiction = Column(String(2), nullable=False)
    end_jurisdiction = Column(String(2), nullable=True)
    total_miles = Column(Float, default=0.0, nullable=False)
    gallons = Column(Float, default=0.0, nullable=False)
    fuel_cost = Column(Numeric(12, 2), default=0, nullable=False)
    notes = Column(Text, nullable=True)

    is_fuel_only = Column(Boolean, default=False, nullable=False)
    is_imported = Column(Boolean, default=False, nullable=False)
    is_eld_data = Column(Boolean, default=False, nullable=False)
    eld_connection_id = Column(Integer, ForeignKey("eld_connections.id", ondelete="SET NULL"), nullable=True)
    source = Column(String(10), default=TripSource.MANUAL.value, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class IftaReport(Base):
    """Saved quarterly IFTA summary"""
    __tablename__ = "ifta_reports"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    quarter = Column(String(7), nullable=False)
    year = Column(Integer, nullable=False)
    total_miles = Column(Float, default=0.0, nullable=False)
    total_gallons = Column(Float, default=0.0, nullable=False)
    total_tax = Column(Numeric(12, 2), default=0, nullable=False)
    status = Column(String(20), default="draft", nullable=False)
    submitted_at = Column(DateTime, nullable=True)
    jurisdiction_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "quarter", name="uq_ifta_reports_user_quarter"),
    )
