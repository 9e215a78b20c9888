"""
Fuel purchase model
"""
from sqlalchemy import Column, Integer, String, Float, Numeric, Date, DateTime, ForeignKey, Text
from datetime import datetime

from ..base import Base


class FuelEntry(Base):
    __tablename__ = "fuel_entries"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    state = Column(String(2), nullable=False, index=True)
    state_name = Column(String, nullable=True)
    location = Column(String, nullable=True)
    gallons = Column(Float, nullable=False)
    price_per_gallon = Column(Numeric(10, 3), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    vehicle_id = Column(String, nullable=True)
    odometer = Column(Float, nullable=True)
    fuel_type = Column(String, default="Diesel", nullable=False)
    payment_method = Column(String, nullable=True)
    receipt_image = Column(String, nullable=True)
    expense_id = Column(Integer, ForeignKey("expenses.id", ondelete="SET NULL"), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
