"""
Terminal webhook handling
"""
from sqlalchemy.orm import Session
from datetime import datetime, date, timedelta
from typing import Optional, Dict, Any
import hashlib
import hmac
import logging

from ...db.models import EldConnection, EldConnectionStatus, EldSyncJob, SyncJobStatus, NotificationType
from ..notification_service import NotificationService
from .connection import EldConnectionService
from .sync import EldSyncService

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-terminal-signature", "x-webhook-signature")

TERMINAL_STATUS_MAP = {
    "active": EldConnectionStatus.ACTIVE.value,
    "inactive": EldConnectionStatus.DISCONNECTED.value,
    "error": EldConnectionStatus.ERROR.value,
}


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Hex HMAC-SHA256 of the raw body"""
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature or "")


class EldWebhookHandler:
    def __init__(self, db: Session):
        self.db = db
        self.connections = EldConnectionService(db)
        self.notifications = NotificationService(db)

    def _find_connection(self, external_id: Optional[str]) -> Optional[EldConnection]:
        if not external_id:
            return None
        return self.db.query(EldConnection).filter(EldConnection.external_connection_id == external_id).first()

    def _update_job(self, external_sync_id: Optional[str], status: str, records: int = 0,
                    error: Optional[str] = None) -> None:
        if not external_sync_id:
            return
        job = self.db.query(EldSyncJob).filter(EldSyncJob.external_sync_id == external_sync_id).first()
        if job:
            job.status = status
            job.records_synced = records
            job.error_message = error
            job.completed_at = datetime.utcnow()

    def handle(self, event: Dict[str, Any]) -> bool:
        """Apply one webhook event, False when it was ignored"""
        event_type = event.get("type")
        data = event.get("data") or {}
        connection = self._find_connection(data.get("connectionId"))
        if not connection:
            logger.info(f"Terminal webhook {event_type} for unknown connection {data.get('connectionId')}")
            return False

        if event_type == "sync.completed":
            counts = data.get("recordCounts") or {}
            total = sum(counts.values()) if isinstance(counts, dict) else 0
            self._update_job(data.get("syncId"), SyncJobStatus.COMPLETED.value, total)
            self.connections.mark_synced(connection)
            self.notifications.create(
                connection.user_id,
                NotificationType.ELD_SYNC_COMPLETED,
                "ELD Sync Complete",
                f"Successfully synced {total} records from your ELD provider.",
                data={"syncId": data.get("syncId"), "recordCounts": counts},
            )
        elif event_type == "sync.failed":
            error = data.get("error") or "Unknown error"
            self._update_job(data.get("syncId"), SyncJobStatus.FAILED.value, error=error)
            self.connections.update_status(connection, EldConnectionStatus.ERROR.value, error)
            self.notifications.create(
                connection.user_id,
                NotificationType.ELD_SYNC_FAILED,
                "ELD Sync Failed",
                f"Failed to sync data from your ELD provider: {error}",
                urgency="HIGH",
                data={"syncId": data.get("syncId"), "error": error},
            )
        elif event_type == "connection.status_changed":
            status = TERMINAL_STATUS_MAP.get(data.get("status"), EldConnectionStatus.ERROR.value)
            self.connections.update_status(connection, status, data.get("message"))
            if status == EldConnectionStatus.ERROR.value:
                self.notifications.create(
                    connection.user_id,
                    NotificationType.ELD_CONNECTION_ERROR,
                    "ELD Connection Issue",
                    data.get("message") or "There was an issue with your ELD connection. Please reconnect.",
                    urgency="HIGH",
                )
        elif event_type == "connection.disconnected":
            reason = data.get("reason")
            connection.status = EldConnectionStatus.DISCONNECTED.value
            connection.access_token = None
            connection.error_message = reason
            self.notifications.create(
                connection.user_id,
                NotificationType.ELD_DISCONNECTED,
                "ELD Disconnected",
                f"Your {connection.eld_provider_name or 'ELD'} connection has been disconnected. "
                f"{reason or 'Please reconnect to continue syncing data.'}",
                link_to="/dashboard/settings?tab=eld",
            )
        elif event_type in ("data.vehicles_updated", "data.drivers_updated", "data.locations_updated",
                            "data.hos_updated", "data.safety_events"):
            self._resync(connection, event_type)
        else:
            logger.info(f"Unhandled Terminal webhook event type: {event_type}")
            return False

        self.db.flush()
        return True

    def _resync(self, connection: EldConnection, event_type: str) -> None:
        sync = EldSyncService(self.db)
        if event_type == "data.vehicles_updated":
            sync.sync_vehicles(connection)
        elif event_type == "data.drivers_updated":
            sync.sync_drivers(connection)
        elif event_type == "data.locations_updated":
            sync.sync_locations(connection)
        elif event_type == "data.hos_updated":
            today = date.today()
            sync.sync_hos(connection, today - timedelta(days=1), today)
        else:
            sync.sync_faults(connection)
