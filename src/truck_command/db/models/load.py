"""
Load (dispatch) and earning models
"""
from sqlalchemy import Column, Integer, String, Float, Numeric, Boolean, Date, DateTime, ForeignKey, Text, JSON
from datetime import datetime
import enum

from ..base import Base


class LoadStatus(str, enum.Enum):
    """Load status enum"""
    PENDING = "Pending"
    ASSIGNED = "Assigned"
    IN_TRANSIT = "In Transit"
    COMPLETED = "Completed"


class Load(Base):
    """A dispatched load from origin to destination"""
    __tablename__ = "loads"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    load_number = Column(String(30), nullable=False, index=True)
    customer = Column(String, nullable=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    origin = Column(String, nullable=False)
    destination = Column(String, nullable=False)
    pickup_date = Column(Date, nullable=True)
    delivery_date = Column(Date, nullable=True)
    status = Column(String(20), default=LoadStatus.PENDING.value, nullable=False, index=True)

    driver = Column(String, nullable=True)  # Driver display name
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=True)
    truck_id = Column(Integer, ForeignKey("vehicles.id"), nullable=True)

    rate = Column(Numeric(12, 2), default=0, nullable=False)
    distance = Column(Float, nullable=True)
    description = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    # Completion
    actual_delivery_date = Column(Date, nullable=True)
    actual_delivery_time = Column(String(10), nullable=True)
    received_by = Column(String, nullable=True)
    completion_notes = Column(Text, nullable=True)
    delivery_rating = Column(Integer, nullable=True)
    pod_documents = Column(JSON, nullable=True)
    additional_mileage = Column(Float, nullable=True)
    additional_charges = Column(Numeric(12, 2), default=0, nullable=False)
    additional_charges_description = Column(String, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    final_rate = Column(Numeric(12, 2), nullable=True)

    # Factoring
    factored = Column(Boolean, default=False, nullable=False)
    factoring_company = Column(String, nullable=True)
    factored_at = Column(DateTime, nullable=True)
    factored_amount = Column(Numeric(12, 2), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Earning(Base):
    """Income that did not flow through an invoice (factored loads)"""
    __tablename__ = "earnings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    load_id = Column(Integer, ForeignKey("loads.id"), nullable=True, index=True)
    source = Column(String(30), nullable=False)  # 'Factoring'
    amount = Column(Numeric(12, 2), nullable=False)
    date = Column(Date, nullable=False, index=True)
    description = Column(String, nullable=True)
    factoring_company = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
