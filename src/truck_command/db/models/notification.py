"""
In-app notification and per-user channel preference models
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text, JSON
from datetime import datetime
import enum

from ..base import Base


class NotificationType(str, enum.Enum):
    """Notification type enum"""
    DOCUMENT_EXPIRY = "DOCUMENT_EXPIRY"
    INVOICE_OVERDUE = "INVOICE_OVERDUE"
    IFTA_DEADLINE = "IFTA_DEADLINE"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    TRIAL_ENDING = "TRIAL_ENDING"
    ELD_SYNC_COMPLETED = "ELD_SYNC_COMPLETED"
    ELD_SYNC_FAILED = "ELD_SYNC_FAILED"
    ELD_CONNECTION_ERROR = "ELD_CONNECTION_ERROR"
    ELD_DISCONNECTED = "ELD_DISCONNECTED"
    SYSTEM = "SYSTEM"


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    notification_type = Column(String(30), nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    urgency = Column(String(10), default="NORMAL", nullable=False)  # LOW, NORMAL, HIGH, CRITICAL
    entity_type = Column(String(30), nullable=True)
    entity_id = Column(String, nullable=True)
    link_to = Column(String, nullable=True)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False, index=True)
    read_at = Column(DateTime, nullable=True)
    email_sent = Column(Boolean, default=False, nullable=False)
    sms_sent = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, unique=True, index=True)
    email_enabled = Column(Boolean, default=True, nullable=False)
    sms_enabled = Column(Boolean, default=False, nullable=False)
    phone_number = Column(String, nullable=True)
    quiet_hours_start = Column(Integer, nullable=True)  # hour of day, 0-23
    quiet_hours_end = Column(Integer, nullable=True)
    disabled_types = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
