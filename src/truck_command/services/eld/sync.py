"""
ELD sync service
Pulls telemetry from Terminal into the local cache tables. Every run is
recorded as an EldSyncJob.
"""
from sqlalchemy.orm import Session
from datetime import datetime, date, timedelta
from typing import Optional, Dict, Any, List
import logging

from ...db.models import (
    EldConnection,
    EldSyncJob,
    SyncJobStatus,
    EldHosLog,
    EldHosDailyLog,
    EldIftaMileage,
    Driver,
)
from ..jurisdictions import quarter_for_date, previous_quarter
from .connection import EldConnectionService
from .diagnostics import DiagnosticsService
from .gps import GpsService
from .mapping import EldMappingService
from .terminal_client import (
    TerminalClient,
    TerminalError,
    normalize_duty_status,
    quarter_to_months,
    quarter_month_list,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

SYNC_TYPES = ["all", "vehicles", "drivers", "ifta", "hos", "locations", "faults"]
DUPLICATE_WINDOW_MINUTES = 5
HOS_SYNC_DAYS = 14

DUTY_MINUTE_FIELDS = {
    "D": "drive_minutes",
    "ON": "on_duty_minutes",
    "OFF": "off_duty_minutes",
    "SB": "sleeper_minutes",
}


class SyncInProgress(Exception):
    pass


def _items(response: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not response:
        return []
    return response.get("results", response.get("data", [])) or []


def _nested_id(item: Dict[str, Any], key: str) -> Optional[str]:
    value = item.get(f"{key}Id")
    if value is None and isinstance(item.get(key), dict):
        value = item[key].get("id")
    return str(value) if value is not None else None


class EldSyncService:
    def __init__(self, db: Session):
        self.db = db
        self.connections = EldConnectionService(db)
        self.mapping = EldMappingService(db)

    # Job bookkeeping

    def find_running_job(self, connection: EldConnection, sync_type: str,
                         now: Optional[datetime] = None) -> Optional[EldSyncJob]:
        cutoff = (now or datetime.utcnow()) - timedelta(minutes=DUPLICATE_WINDOW_MINUTES)
        return self.db.query(EldSyncJob).filter(
            EldSyncJob.connection_id == connection.id,
            EldSyncJob.sync_type == sync_type,
            EldSyncJob.status == SyncJobStatus.RUNNING.value,
            EldSyncJob.started_at >= cutoff,
        ).first()

    def start_job(self, connection: EldConnection, sync_type: str) -> EldSyncJob:
        job = EldSyncJob(
            user_id=connection.user_id,
            connection_id=connection.id,
            sync_type=sync_type,
            status=SyncJobStatus.RUNNING.value,
            started_at=datetime.utcnow(),
        )
        self.db.add(job)
        self.db.flush()
        return job

    def finish_job(self, job: EldSyncJob, records: int, error: Optional[str] = None) -> EldSyncJob:
        job.status = SyncJobStatus.FAILED.value if error else SyncJobStatus.COMPLETED.value
        job.records_synced = records
        job.error_message = error
        job.completed_at = datetime.utcnow()
        self.db.flush()
        return job

    def get_sync_history(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        jobs = self.db.query(EldSyncJob).filter(
            EldSyncJob.user_id == user_id
        ).order_by(EldSyncJob.created_at.desc()).limit(limit).all()
        return [
            {
                "id": job.id,
                "syncType": job.sync_type,
                "status": job.status,
                "recordsSynced": job.records_synced,
                "errorMessage": job.error_message,
                "startedAt": job.started_at.isoformat() if job.started_at else None,
                "completedAt": job.completed_at.isoformat() if job.completed_at else None,
            }
            for job in jobs
        ]

    # Entry point

    def run(self, connection: EldConnection, sync_type: str) -> Dict[str, Any]:
        """
        Run one sync type and record it

        A provider failure is recorded on the job and the connection and
        returned with success False, so the caller can still commit it.

        Raises:
            ValueError: unknown sync type
            SyncInProgress: the same type is already running
        """
        if sync_type not in SYNC_TYPES:
            raise ValueError("Invalid sync type")
        if self.find_running_job(connection, sync_type):
            raise SyncInProgress("A sync is already in progress. Please wait a few minutes.")

        job = self.start_job(connection, sync_type)
        # Concurrent requests check for this row, so it must be visible now
        self.db.commit()
        try:
            records = self._dispatch(connection, sync_type)
        except TerminalError as e:
            logger.error(f"ELD {sync_type} sync failed for connection {connection.id}: {e}")
            self.finish_job(job, 0, str(e))
            self.connections.update_status(connection, "error", str(e))
            return {"success": False, "error": str(e), "syncJobId": job.id, "recordsSynced": 0}

        self.finish_job(job, records)
        self.connections.mark_synced(connection)
        return {
            "success": True,
            "message": f"{sync_type} sync initiated",
            "syncJobId": job.id,
            "recordsSynced": records,
        }

    def _dispatch(self, connection: EldConnection, sync_type: str) -> int:
        if sync_type == "all":
            return self.sync_all(connection)["totalRecords"]
        if sync_type == "vehicles":
            return self.sync_vehicles(connection)["count"]
        if sync_type == "drivers":
            return self.sync_drivers(connection)["count"]
        if sync_type == "ifta":
            return self.sync_ifta(connection, quarter_for_date(date.today()))
        if sync_type == "hos":
            end = date.today()
            return self.sync_hos(connection, end - timedelta(days=HOS_SYNC_DAYS), end)
        if sync_type == "locations":
            return self.sync_locations(connection)
        return self.sync_faults(connection)

    def sync_all(self, connection: EldConnection) -> Dict[str, Any]:
        """Vehicles and drivers first so the telemetry that follows can be mapped"""
        results: Dict[str, Any] = {"totalRecords": 0, "errors": []}

        def attempt(name, fn):
            try:
                count = fn()
            except TerminalError as e:
                logger.warning(f"ELD {name} sync failed for connection {connection.id}: {e}")
                results["errors"].append({"type": name, "error": str(e)})
                return
            results[name] = count
            results["totalRecords"] += count

        attempt("vehicles", lambda: self.sync_vehicles(connection)["count"])
        attempt("drivers", lambda: self.sync_drivers(connection)["count"])
        attempt("locations", lambda: self.sync_locations(connection))
        end = date.today()
        attempt("hos", lambda: self.sync_hos(connection, end - timedelta(days=HOS_SYNC_DAYS), end))
        current = quarter_for_date(end)
        attempt("ifta", lambda: self.sync_ifta(connection, current) + self.sync_ifta(connection, previous_quarter(current)))
        attempt("faults", lambda: self.sync_faults(connection))
        return results

    # Per-type syncs

    def sync_vehicles(self, connection: EldConnection) -> Dict[str, Any]:
        vehicles = list(TerminalClient(connection.access_token).paginate("/vehicles"))
        results = [self.mapping.map_vehicle(connection.user_id, v) for v in vehicles]
        unmatched = [r["externalVehicle"] for r in results if r.get("noMatch")]
        return {
            "count": len(vehicles),
            "matched": len(vehicles) - len(unmatched),
            "unmatched": len(unmatched),
            "unmatchedVehicles": unmatched,
        }

    def sync_drivers(self, connection: EldConnection) -> Dict[str, Any]:
        drivers = list(TerminalClient(connection.access_token).paginate("/drivers"))
        results = [self.mapping.map_driver(connection.user_id, d) for d in drivers]
        unmatched = [r["externalDriver"] for r in results if r.get("noMatch")]
        return {
            "count": len(drivers),
            "matched": len(drivers) - len(unmatched),
            "unmatched": len(unmatched),
            "unmatchedDrivers": unmatched,
        }

    def sync_ifta(self, connection: EldConnection, quarter: str) -> int:
        """
        Store provider jurisdiction miles for a quarter

        The summary is per quarter, so each vehicle's miles are spread evenly
        across the quarter's three months.
        """
        months = quarter_to_months(quarter)
        response = TerminalClient(connection.access_token).get_ifta_summary(months["startMonth"], months["endMonth"])
        month_list = quarter_month_list(quarter)
        stored = 0

        for item in _items(response):
            external_vehicle_id = _nested_id(item, "vehicle")
            vehicle_id = self.mapping.local_vehicle_id(connection.user_id, external_vehicle_id)
            if not vehicle_id:
                logger.debug(f"Skipping IFTA miles for unmapped vehicle {external_vehicle_id}")
                continue

            miles_by_state = dict(item.get("jurisdictionsMiles") or {})
            for entry in item.get("jurisdictions") or []:
                state = entry.get("jurisdiction") or entry.get("state")
                if state:
                    miles_by_state[state] = miles_by_state.get(state, 0) + (entry.get("miles") or entry.get("distance") or 0)

            for jurisdiction, miles in miles_by_state.items():
                if not jurisdiction or not miles:
                    continue
                for month in month_list:
                    row = self.db.query(EldIftaMileage).filter(
                        EldIftaMileage.connection_id == connection.id,
                        EldIftaMileage.external_vehicle_id == external_vehicle_id,
                        EldIftaMileage.jurisdiction == jurisdiction.upper(),
                        EldIftaMileage.month == month,
                    ).first()
                    if not row:
                        row = EldIftaMileage(
                            user_id=connection.user_id,
                            connection_id=connection.id,
                            external_vehicle_id=external_vehicle_id,
                            jurisdiction=jurisdiction.upper(),
                            month=month,
                        )
                        self.db.add(row)
                    row.vehicle_id = vehicle_id
                    row.quarter = quarter
                    row.total_miles = miles / 3
                    stored += 1

        self.db.flush()
        logger.info(f"IFTA sync for {quarter} stored {stored} records")
        return stored

    def sync_hos(self, connection: EldConnection, start: date, end: date) -> int:
        """Replace the duty segments in range and rebuild the daily totals"""
        client = TerminalClient(connection.access_token)
        user_id = connection.user_id

        self.db.query(EldHosLog).filter(
            EldHosLog.connection_id == connection.id,
            EldHosLog.log_date >= start,
            EldHosLog.log_date <= end,
        ).delete(synchronize_session=False)

        totals: Dict[tuple, Dict[str, Any]] = {}
        inserted = 0
        for item in client.paginate("/hos/logs", params={"startTime": start.isoformat(), "endTime": end.isoformat()}):
            external_driver_id = _nested_id(item, "driver")
            driver_id = self.mapping.local_driver_id(user_id, external_driver_id)
            if not driver_id:
                continue

            started = parse_timestamp(item.get("startedAt") or item.get("startTime"))
            if not started:
                continue
            ended = parse_timestamp(item.get("endedAt") or item.get("endTime"))
            duration = item.get("durationMinutes")
            if duration is None and ended:
                duration = int((ended - started).total_seconds() // 60)
            status = normalize_duty_status(item.get("status") or item.get("dutyStatus"))
            location = item.get("location")

            self.db.add(EldHosLog(
                user_id=user_id,
                connection_id=connection.id,
                driver_id=driver_id,
                external_driver_id=external_driver_id,
                external_vehicle_id=_nested_id(item, "vehicle"),
                duty_status=status,
                start_time=started,
                end_time=ended,
                duration_minutes=duration,
                location_name=location.get("name") if isinstance(location, dict) else location,
                log_date=started.date(),
            ))
            inserted += 1

            day = totals.setdefault((driver_id, started.date()), {
                "external_driver_id": external_driver_id,
                "drive_minutes": 0, "on_duty_minutes": 0, "off_duty_minutes": 0, "sleeper_minutes": 0,
            })
            day[DUTY_MINUTE_FIELDS[status]] += duration or 0

        violations = self._daily_violations(client, start, end)
        for (driver_id, log_date), minutes in totals.items():
            daily = self.db.query(EldHosDailyLog).filter(
                EldHosDailyLog.driver_id == driver_id,
                EldHosDailyLog.log_date == log_date,
            ).first()
            if not daily:
                daily = EldHosDailyLog(user_id=user_id, driver_id=driver_id, log_date=log_date)
                self.db.add(daily)
            daily.connection_id = connection.id
            for field, value in minutes.items():
                setattr(daily, field, value)
            found = violations.get((minutes["external_driver_id"], log_date), [])
            daily.violations = found
            daily.has_violation = bool(found)

        self._update_driver_status(client, user_id)
        self.db.flush()
        return inserted

    def _daily_violations(self, client: TerminalClient, start: date, end: date) -> Dict[tuple, List[Any]]:
        found: Dict[tuple, List[Any]] = {}
        response = client.list_hos_daily_logs(start.isoformat(), end.isoformat())
        for item in _items(response):
            log_date = parse_timestamp(item.get("date") or item.get("logDate"))
            if log_date and item.get("violations"):
                found[(_nested_id(item, "driver"), log_date.date())] = item["violations"]
        return found

    def _update_driver_status(self, client: TerminalClient, user_id: str) -> None:
        """Cache the current duty status and remaining drive time on each driver"""
        now = datetime.utcnow()
        for item in _items(client.get_hos_available_time()):
            driver_id = self.mapping.local_driver_id(user_id, _nested_id(item, "driver"))
            if not driver_id:
                continue
            driver = self.db.query(Driver).filter(Driver.id == driver_id).first()
            driver.hos_status = normalize_duty_status(item.get("dutyStatus") or item.get("currentStatus"))
            driver.hos_available_drive_minutes = item.get("driveMinutes")
            driver.hos_last_updated_at = now

    def sync_locations(self, connection: EldConnection) -> int:
        response = TerminalClient(connection.access_token).get_latest_vehicle_locations()
        return GpsService(self.db).store_locations(connection.user_id, connection, _items(response), datetime.utcnow())

    def sync_faults(self, connection: EldConnection) -> int:
        return DiagnosticsService(self.db).sync_fault_codes(connection.user_id, connection)
