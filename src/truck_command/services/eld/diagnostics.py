"""
Vehicle diagnostics service
Fault codes reported through the provider's safety events feed.
"""
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional, Dict, Any
import logging

from ...db.models import EldConnection, EldFaultCode, Vehicle
from .connection import EldConnectionService
from .mapping import EldMappingService
from .terminal_client import TerminalClient, parse_timestamp

logger = logging.getLogger(__name__)

MAX_ACTIVE_FAULTS = 50
SEVERITY_ORDER = {"critical": 0, "warning": 1, "info": 2}

CRITICAL_TYPES = ["ENGINE_FAULT", "BRAKE_FAILURE", "TRANSMISSION_FAULT", "ABS_FAULT", "CRITICAL", "EMERGENCY"]
WARNING_TYPES = ["CHECK_ENGINE", "LOW_OIL", "LOW_COOLANT", "WARNING", "MAINTENANCE_DUE"]


def determine_severity(event_type: Optional[str], provided: Optional[str] = None) -> str:
    """Normalize a provider severity, else infer it from the event type"""
    if provided:
        normalized = provided.lower()
        if normalized in ("critical", "high", "emergency"):
            return "critical"
        if normalized in ("warning", "medium", "moderate"):
            return "warning"
        return "info"

    event_type = (event_type or "").upper()
    if any(t in event_type for t in CRITICAL_TYPES):
        return "critical"
    if any(t in event_type for t in WARNING_TYPES):
        return "warning"
    return "info"


def _empty_summary() -> Dict[str, int]:
    return {"totalFaults": 0, "criticalCount": 0, "warningCount": 0, "infoCount": 0, "vehiclesWithFaults": 0}


class DiagnosticsService:
    def __init__(self, db: Session):
        self.db = db
        self.connections = EldConnectionService(db)
        self.mapping = EldMappingService(db)

    def get_diagnostics(self, user_id: str) -> Dict[str, Any]:
        connection = self.connections.get_active_connection(user_id)
        if not connection:
            return {"faultCodes": [], "summary": _empty_summary(), "lastUpdated": datetime.utcnow().isoformat()}

        faults = self.db.query(EldFaultCode).filter(
            EldFaultCode.user_id == user_id,
            EldFaultCode.is_active == True,  # noqa: E712
        ).all()
        # Most severe first, newest first within a severity
        faults.sort(key=lambda f: f.last_observed_at or datetime.min, reverse=True)
        faults.sort(key=lambda f: SEVERITY_ORDER.get(f.severity, 3))
        faults = faults[:MAX_ACTIVE_FAULTS]

        vehicle_ids = {f.vehicle_id for f in faults if f.vehicle_id}
        vehicles = {
            v.id: v for v in self.db.query(Vehicle).filter(Vehicle.id.in_(vehicle_ids)).all()
        } if vehicle_ids else {}

        summary = {
            "totalFaults": len(faults),
            "criticalCount": len([f for f in faults if f.severity == "critical"]),
            "warningCount": len([f for f in faults if f.severity == "warning"]),
            "infoCount": len([f for f in faults if f.severity == "info"]),
            "vehiclesWithFaults": len({f.vehicle_id for f in faults}),
        }

        fault_codes = []
        for fault in faults:
            vehicle = vehicles.get(fault.vehicle_id)
            fault_codes.append({
                "id": fault.id,
                "vehicleId": fault.vehicle_id,
                "vehicleName": vehicle.name if vehicle else "Unknown Vehicle",
                "licensePlate": vehicle.license_plate if vehicle else None,
                "code": fault.code,
                "description": fault.description,
                "severity": fault.severity,
                "source": fault.source,
                "firstObservedAt": fault.first_observed_at.isoformat() if fault.first_observed_at else None,
                "lastObservedAt": fault.last_observed_at.isoformat() if fault.last_observed_at else None,
                "isActive": fault.is_active,
            })

        return {
            "faultCodes": fault_codes,
            "summary": summary,
            "lastUpdated": (connection.last_sync_at or datetime.utcnow()).isoformat(),
        }

    def sync_fault_codes(self, user_id: str, connection: EldConnection) -> int:
        """Upsert fault events for mapped vehicles, returns the count stored"""
        client = TerminalClient(connection.access_token)
        now = datetime.utcnow()
        synced = 0

        for event in client.paginate("/safety/events", params={"limit": 100}):
            external_vehicle = (event.get("vehicle") or {}).get("id") or event.get("vehicleId")
            vehicle_id = self.mapping.local_vehicle_id(user_id, external_vehicle)
            if not vehicle_id:
                logger.debug(f"Skipping fault for unmapped vehicle {external_vehicle}")
                continue

            external_id = str(event.get("id"))
            fault = self.db.query(EldFaultCode).filter(
                EldFaultCode.connection_id == connection.id,
                EldFaultCode.external_id == external_id,
            ).first()
            if not fault:
                fault = EldFaultCode(user_id=user_id, connection_id=connection.id, external_id=external_id)
                self.db.add(fault)

            started = parse_timestamp(event.get("startedAt")) or now
            ended = parse_timestamp(event.get("endedAt"))
            fault.vehicle_id = vehicle_id
            fault.code = event.get("code") or event.get("type") or "UNKNOWN"
            fault.description = event.get("description") or event.get("type") or "Unknown fault"
            fault.severity = determine_severity(event.get("type"), event.get("severity"))
            fault.source = "terminal"
            fault.first_observed_at = started
            fault.last_observed_at = ended or started
            fault.is_active = ended is None
            fault.raw_data = event
            synced += 1

        self.db.flush()
        return synced

    def clear_fault_code(self, user_id: str, fault_id: int) -> bool:
        fault = self.db.query(EldFaultCode).filter(
            EldFaultCode.id == fault_id,
            EldFaultCode.user_id == user_id,
        ).first()
        if not fault:
            return False
        fault.is_active = False
        self.db.flush()
        return True

