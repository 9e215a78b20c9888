"""
ELD integration models

The connection row holds the provider credentials. The remaining tables cache
telemetry pulled from the provider during sync.
"""
from sqlalchemy import (
    Column, Integer, String, Float, Boolean, Date, DateTime, ForeignKey, Text, JSON, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..base import Base


class EldConnectionStatus(str, enum.Enum):
    """ELD connection status enum"""
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class SyncJobStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class EldConnection(Base):
    """A user's link to an ELD provider through Terminal"""
    __tablename__ = "eld_connections"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String(30), default="terminal", nullable=False)
    eld_provider = Column(String(30), nullable=True)  # motive, samsara
    eld_provider_name = Column(String, nullable=True)
    external_connection_id = Column(String, nullable=True, index=True)
    company_name = Column(String, nullable=True)
    access_token = Column(String, nullable=True)
    status = Column(String(20), default=EldConnectionStatus.ACTIVE.value, nullable=False, index=True)
    error_message = Column(Text, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    sync_frequency_minutes = Column(Integer, default=60, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    sync_jobs = relationship("EldSyncJob", back_populates="connection", cascade="all, delete-orphan")


class EldVehicleLocation(Base):
    __tablename__ = "eld_vehicle_locations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("eld_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=True, index=True)
    external_vehicle_id = Column(String, nullable=False, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    heading = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)  # km/h
    address = Column(String, nullable=True)
    recorded_at = Column(DateTime, nullable=False, index=True)
    extra = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class EldHosLog(Base):
    """Single duty status segment"""
    __tablename__ = "eld_hos_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("eld_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("drivers.id", ondelete="CASCADE"), nullable=True, index=True)
    external_driver_id = Column(String, nullable=False)
    external_vehicle_id = Column(String, nullable=True)
    duty_status = Column(String(10), nullable=False)  # OFF, SB, D, ON
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    location_name = Column(String, nullable=True)
    log_date = Column(Date, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class EldHosDailyLog(Base):
    """Per driver per day duty totals"""
    __tablename__ = "eld_hos_daily_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("eld_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("drivers.id", ondelete="CASCADE"), nullable=False, index=True)
    external_driver_id = Column(String, nullable=True)
    log_date = Column(Date, nullable=False, index=True)
    drive_minutes = Column(Integer, default=0, nullable=False)
    on_duty_minutes = Column(Integer, default=0, nullable=False)
    off_duty_minutes = Column(Integer, default=0, nullable=False)
    sleeper_minutes = Column(Integer, default=0, nullable=False)
    has_violation = Column(Boolean, default=False, nullable=False)
    violations = Column(JSON, nullable=True)
    certified_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("driver_id", "log_date", name="uq_eld_hos_daily_logs_driver_date"),
    )


class EldFaultCode(Base):
    __tablename__ = "eld_fault_codes"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("eld_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column(String, nullable=False)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=True, index=True)
    code = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    severity = Column(String(10), default="info", nullable=False)  # critical, warning, info
    source = Column(String, nullable=True)
    first_observed_at = Column(DateTime, nullable=True)
    last_observed_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    raw_data = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("connection_id", "external_id", name="uq_eld_fault_codes_connection_external"),
    )


class EldIftaMileage(Base):
    """Provider-reported miles per vehicle, jurisdiction and month"""
    __tablename__ = "eld_ifta_mileage"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("eld_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True)
    external_vehicle_id = Column(String, nullable=True)
    jurisdiction = Column(String(2), nullable=False, index=True)
    month = Column(String(7), nullable=False, index=True)  # YYYY-MM
    quarter = Column(String(7), nullable=False, index=True)
    total_miles = Column(Float, default=0.0, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("connection_id", "external_vehicle_id", "jurisdiction", "month",
                         name="uq_eld_ifta_mileage_vehicle_month"),
    )


class EldSyncJob(Base):
    __tablename__ = "eld_sync_jobs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("eld_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    sync_type = Column(String(20), nullable=False)
    status = Column(String(20), default=SyncJobStatus.RUNNING.value, nullable=False, index=True)
    external_sync_id = Column(String, nullable=True, index=True)
    records_synced = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    connection = relationship("EldConnection", back_populates="sync_jobs")
