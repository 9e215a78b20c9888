"""
Expense model
"""
from sqlalchemy import Column, Integer, String, Numeric, Boolean, Date, DateTime, ForeignKey, Text
from datetime import datetime

from ..base import Base

EXPENSE_CATEGORIES = ["Fuel", "Maintenance", "Insurance", "Tolls", "Office", "Permits", "Meals", "Other"]


class Expense(Base):
    __tablename__ = "expenses"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    description = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    date = Column(Date, nullable=False, index=True)
    category = Column(String, nullable=False, index=True)
    payment_method = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    receipt_image = Column(String, nullable=True)
    vehicle_id = Column(String, nullable=True)
    deductible = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
