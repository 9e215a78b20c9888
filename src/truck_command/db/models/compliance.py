"""
Compliance document model (registrations, permits, inspections, medical cards)
"""
from sqlalchemy import Column, Integer, String, Date, DateTime, ForeignKey, Text
from datetime import datetime
import enum

from ..base import Base


class ComplianceStatus(str, enum.Enum):
    ACTIVE = "Active"
    EXPIRING_SOON = "Expiring Soon"
    EXPIRED = "Expired"


class ComplianceItem(Base):
    __tablename__ = "compliance_items"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    compliance_type = Column(String, nullable=False)
    entity_type = Column(String, nullable=True)  # 'Vehicle', 'Driver', 'Company'
    entity_name = Column(String, nullable=True)
    document_number = Column(String, nullable=True)
    issue_date = Column(Date, nullable=True)
    expiration_date = Column(Date, nullable=True, index=True)
    issuing_authority = Column(String, nullable=True)
    status = Column(String(20), default=ComplianceStatus.ACTIVE.value, nullable=False)
    notes = Column(Text, nullable=True)
    document_url = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
