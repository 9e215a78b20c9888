"""
Hours of Service (HOS) service
Reads HOS state cached by the sync service and summarizes compliance.
"""
from sqlalchemy.orm import Session
from datetime import date, timedelta
from typing import Optional, Dict, Any, List
import logging

from ...db.models import Driver, EldHosDailyLog, EldHosLog
from .connection import EldConnectionService, EldConnectionError
from .terminal_client import TerminalClient, normalize_duty_status

logger = logging.getLogger(__name__)

HOS_STATUS = {
    "OFF_DUTY": "OFF",
    "SLEEPER_BERTH": "SB",
    "DRIVING": "D",
    "ON_DUTY": "ON",
}

# FMCSA property-carrying limits, in minutes
HOS_LIMITS = {
    "DAILY_DRIVE": 11 * 60,
    "DAILY_ON_DUTY": 14 * 60,
    "WEEKLY_70_HOUR": 70 * 60,
    "REST_BREAK": 30,
    "SLEEPER_BERTH": 10 * 60,
}

LOW_TIME_MINUTES = 120
CRITICAL_TIME_MINUTES = 30

STATUS_LABELS = {
    "OFF": "Off Duty",
    "SB": "Sleeper Berth",
    "D": "Driving",
    "ON": "On Duty",
    "UNKNOWN": "Unknown",
}


def format_minutes(minutes: Optional[int]) -> str:
    """125 -> '2h 5m'; None -> '--:--'"""
    if minutes is None:
        return "--:--"
    minutes = int(minutes)
    return f"{minutes // 60}h {minutes % 60}m"


def get_status_label(status: Optional[str]) -> str:
    return STATUS_LABELS.get(status, status or "Unknown")


def _daily_log_dict(log: EldHosDailyLog) -> Dict[str, Any]:
    return {
        "date": log.log_date.isoformat(),
        "driveTime": format_minutes(log.drive_minutes),
        "driveMinutes": log.drive_minutes,
        "onDutyTime": format_minutes(log.on_duty_minutes),
        "onDutyMinutes": log.on_duty_minutes,
        "offDutyTime": format_minutes(log.off_duty_minutes),
        "sleeperTime": format_minutes(log.sleeper_minutes),
        "hasViolation": log.has_violation,
        "violations": log.violations or [],
        "certifiedAt": log.certified_at.isoformat() if log.certified_at else None,
    }


class HosService:
    """HOS status, compliance and dashboard for one user"""

    def __init__(self, db: Session):
        self.db = db
        self.connections = EldConnectionService(db)

    def _require_connection(self, user_id: str):
        connection = self.connections.get_active_connection(user_id)
        if not connection:
            raise EldConnectionError("No active ELD connection")
        return connection

    def _linked_drivers(self, user_id: str) -> List[Driver]:
        return self.db.query(Driver).filter(
            Driver.user_id == user_id,
            Driver.eld_external_id.isnot(None),
        ).all()

    def get_all_drivers_status(self, user_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        connection = self._require_connection(user_id)
        today = today or date.today()

        drivers = []
        for driver in self._linked_drivers(user_id):
            daily_log = self.db.query(EldHosDailyLog).filter(
                EldHosDailyLog.connection_id == connection.id,
                EldHosDailyLog.driver_id == driver.id,
                EldHosDailyLog.log_date == today,
            ).first()
            drivers.append({
                "id": driver.id,
                "fullName": driver.full_name,
                "currentStatus": driver.hos_status or "UNKNOWN",
                "statusLabel": get_status_label(driver.hos_status),
                "availableDriveTime": format_minutes(driver.hos_available_drive_minutes),
                "availableDriveMinutes": driver.hos_available_drive_minutes,
                "lastUpdated": driver.hos_last_updated_at.isoformat() if driver.hos_last_updated_at else None,
                "dailyLog": {
                    "driveMinutes": daily_log.drive_minutes,
                    "onDutyMinutes": daily_log.on_duty_minutes,
                    "offDutyMinutes": daily_log.off_duty_minutes,
                    "sleeperMinutes": daily_log.sleeper_minutes,
                    "hasViolation": daily_log.has_violation,
                    "violations": daily_log.violations or [],
                } if daily_log else None,
            })

        return {
            "drivers": drivers,
            "lastSyncAt": connection.last_sync_at.isoformat() if connection.last_sync_at else None,
        }

    def get_driver_details(self, user_id: str, driver_id: int, start_date: Optional[date] = None,
                           end_date: Optional[date] = None) -> Dict[str, Any]:
        driver = self.db.query(Driver).filter(Driver.id == driver_id, Driver.user_id == user_id).first()
        if not driver:
            raise EldConnectionError("Driver not found")
        if not driver.eld_external_id:
            raise EldConnectionError("Driver not linked to ELD")
        connection = self._require_connection(user_id)

        end = end_date or date.today()
        start = start_date or end - timedelta(days=7)

        daily_logs = self.db.query(EldHosDailyLog).filter(
            EldHosDailyLog.connection_id == connection.id,
            EldHosDailyLog.driver_id == driver.id,
            EldHosDailyLog.log_date >= start,
            EldHosDailyLog.log_date <= end,
        ).order_by(EldHosDailyLog.log_date.desc()).all()

        entries = self.db.query(EldHosLog).filter(
            EldHosLog.connection_id == connection.id,
            EldHosLog.driver_id == driver.id,
            EldHosLog.log_date >= start,
            EldHosLog.log_date <= end,
        ).order_by(EldHosLog.start_time.desc()).all()

        total_drive = sum(log.drive_minutes or 0 for log in daily_logs)
        total_on_duty = sum(log.on_duty_minutes or 0 for log in daily_logs)
        violation_days = len([log for log in daily_logs if log.has_violation])

        return {
            "driver": {
                "id": driver.id,
                "name": driver.full_name,
                "currentStatus": driver.hos_status,
                "statusLabel": get_status_label(driver.hos_status),
                "availableDriveTime": format_minutes(driver.hos_available_drive_minutes),
            },
            "dateRange": {"start": start.isoformat(), "end": end.isoformat()},
            "dailyLogs": [_daily_log_dict(log) for log in daily_logs],
            "logEntries": [
                {
                    "time": entry.start_time.isoformat(),
                    "status": entry.duty_status,
                    "statusLabel": get_status_label(entry.duty_status),
                    "durationMinutes": entry.duration_minutes,
                    "location": entry.location_name,
                    "vehicle": entry.external_vehicle_id,
                }
                for entry in entries
            ],
            "summary": {
                "totalDriveTime": format_minutes(total_drive),
                "totalDriveMinutes": total_drive,
                "totalOnDutyTime": format_minutes(total_on_duty),
                "totalOnDutyMinutes": total_on_duty,
                "violationCount": violation_days,
                "daysWithViolations": violation_days,
                "averageDriveTimePerDay": format_minutes(round(total_drive / (len(daily_logs) or 1))),
            },
        }

    def get_available_time(self, user_id: str) -> Dict[str, Any]:
        """Live available time straight from the provider"""
        connection = self._require_connection(user_id)
        response = TerminalClient(connection.access_token).get_hos_available_time()
        items = (response or {}).get("results", (response or {}).get("data", [])) or []

        drivers_by_external = {d.eld_external_id: d for d in self._linked_drivers(user_id)}
        drivers = []
        for item in items:
            external_id = item.get("driverId") or (item.get("driver") or {}).get("id")
            local = drivers_by_external.get(external_id)
            status = normalize_duty_status(item.get("dutyStatus") or item.get("currentStatus"))
            drive = item.get("driveMinutes") or 0
            shift = item.get("shiftMinutes") or 0
            cycle = item.get("cycleMinutes") or 0
            drivers.append({
                "externalDriverId": external_id,
                "localDriverId": local.id if local else None,
                "driverName": local.full_name if local else "Unknown Driver",
                "driveMinutesRemaining": drive,
                "driveTimeRemaining": format_minutes(drive),
                "shiftMinutesRemaining": shift,
                "shiftTimeRemaining": format_minutes(shift),
                "cycleMinutesRemaining": cycle,
                "cycleTimeRemaining": format_minutes(cycle),
                "breakRequired": bool(item.get("breakRequired")),
                "currentDutyStatus": status,
                "statusLabel": get_status_label(status),
            })
        return {"drivers": drivers}

    def check_compliance(self, user_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        """Violations from the last 7 days of daily logs plus low-time warnings"""
        connection = self._require_connection(user_id)
        today = today or date.today()
        week_ago = today - timedelta(days=7)

        violation_logs = self.db.query(EldHosDailyLog).filter(
            EldHosDailyLog.connection_id == connection.id,
            EldHosDailyLog.has_violation == True,  # noqa: E712
            EldHosDailyLog.log_date >= week_ago,
        ).order_by(EldHosDailyLog.log_date.desc()).all()

        driver_names = {d.id: d.full_name for d in self.db.query(Driver).filter(Driver.user_id == user_id).all()}
        violations = [
            {
                "date": log.log_date.isoformat(),
                "driverId": log.driver_id,
                "driverName": driver_names.get(log.driver_id, "Unknown Driver"),
                "violations": log.violations or [],
                "driveTime": format_minutes(log.drive_minutes),
                "onDutyTime": format_minutes(log.on_duty_minutes),
            }
            for log in violation_logs
        ]

        warnings = [
            {
                "driverId": d.id,
                "driverName": d.full_name,
                "remainingDriveTime": format_minutes(d.hos_available_drive_minutes),
                "remainingMinutes": d.hos_available_drive_minutes,
                "severity": "critical" if d.hos_available_drive_minutes < CRITICAL_TIME_MINUTES else "warning",
            }
            for d in self._linked_drivers(user_id)
            if d.hos_available_drive_minutes is not None and d.hos_available_drive_minutes < LOW_TIME_MINUTES
        ]

        return {
            "violations": violations,
            "violationCount": len(violations),
            "warnings": warnings,
            "warningCount": len(warnings),
            "hasIssues": bool(violations or warnings),
            "periodStart": week_ago.isoformat(),
            "periodEnd": today.isoformat(),
        }

    def get_dashboard(self, user_id: str) -> Dict[str, Any]:
        status = self.get_all_drivers_status(user_id)
        compliance = self.check_compliance(user_id)
        drivers = status["drivers"]

        status_counts = {
            "driving": len([d for d in drivers if d["currentStatus"] == "D"]),
            "onDuty": len([d for d in drivers if d["currentStatus"] == "ON"]),
            "sleeper": len([d for d in drivers if d["currentStatus"] == "SB"]),
            "offDuty": len([d for d in drivers if d["currentStatus"] == "OFF"]),
            "unknown": len([d for d in drivers if d["currentStatus"] == "UNKNOWN"]),
        }
        low_on_time = [
            d for d in drivers
            if d["availableDriveMinutes"] is not None and d["availableDriveMinutes"] < LOW_TIME_MINUTES
        ]

        summary = {
            "totalDrivers": len(drivers),
            "statusCounts": status_counts,
            "driversCurrentlyDriving": status_counts["driving"],
            "driversOnDuty": status_counts["driving"] + status_counts["onDuty"],
            "driversLowOnTime": len(low_on_time),
            "lowOnTimeDrivers": [
                {
                    "id": d["id"],
                    "name": d["fullName"],
                    "remainingTime": d["availableDriveTime"],
                    "remainingMinutes": d["availableDriveMinutes"],
                }
                for d in low_on_time
            ],
            "recentViolations": compliance["violations"][:5],
            "violationCount": compliance["violationCount"],
            "warningCount": compliance["warningCount"],
            "warnings": compliance["warnings"],
        }
        return {"drivers": drivers, "summary": summary, "lastUpdated": status["lastSyncAt"]}
