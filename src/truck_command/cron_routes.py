"""
Scheduled job endpoints

Triggered by an external scheduler with `Authorization: Bearer $CRON_SECRET`.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from datetime import datetime
import hmac
import logging

from .config import config
from .db import get_db
from .services.notification_service import NotificationService
from .services.eld.connection import EldConnectionService
from .services.eld.sync import EldSyncService, SyncInProgress

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])

ELD_SYNC_THRESHOLD_MINUTES = 60
NOTIFICATION_RETENTION_DAYS = 30


def verify_cron_secret(request: Request) -> None:
    """Reject calls without the cron bearer; open when no secret is configured outside production"""
    secret = config.CRON_SECRET
    if not secret:
        if config.is_prod or config.is_staging:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        return

    auth_header = request.headers.get("Authorization", "")
    if not hmac.compare_digest(auth_header, f"Bearer {secret}"):
        logger.warning("Rejected cron call with invalid credentials")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/notifications", dependencies=[Depends(verify_cron_secret)])
@router.get("/notifications", dependencies=[Depends(verify_cron_secret)])
async def generate_notifications(db: Session = Depends(get_db)):
    service = NotificationService(db)
    results = {
        "compliance": service.generate_compliance_notifications(),
        "overdueInvoices": service.generate_overdue_invoice_notifications(),
        "iftaDeadlines": service.generate_ifta_deadline_notifications(),
    }
    logger.info(f"Notification generation complete: {results}")
    return {"success": True, "results": results, "timestamp": datetime.utcnow().isoformat()}


@router.post("/eld-sync", dependencies=[Depends(verify_cron_secret)])
@router.get("/eld-sync", dependencies=[Depends(verify_cron_secret)])
async def sync_eld_connections(db: Session = Depends(get_db)):
    connections = EldConnectionService(db).connections_needing_sync(ELD_SYNC_THRESHOLD_MINUTES)
    sync_service = EldSyncService(db)
    results = {"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0, "errors": []}

    for connection in connections:
        results["processed"] += 1
        try:
            outcome = sync_service.run(connection, "all")
        except SyncInProgress:
            results["skipped"] += 1
            continue
        if outcome["success"]:
            results["succeeded"] += 1
        else:
            results["failed"] += 1
            results["errors"].append({"connectionId": connection.id, "error": outcome.get("error")})

    logger.info(
        f"ELD cron sync: {results['succeeded']} succeeded, {results['failed']} failed, "
        f"{results['skipped']} skipped"
    )
    return {"success": True, "results": results, "timestamp": datetime.utcnow().isoformat()}


@router.post("/trial-reminders", dependencies=[Depends(verify_cron_secret)])
@router.get("/trial-reminders", dependencies=[Depends(verify_cron_secret)])
async def trial_reminders(db: Session = Depends(get_db)):
    results = NotificationService(db).send_trial_reminders()
    return {"success": True, "results": results, "timestamp": datetime.utcnow().isoformat()}


@router.post("/cleanup", dependencies=[Depends(verify_cron_secret)])
@router.get("/cleanup", dependencies=[Depends(verify_cron_secret)])
async def cleanup_notifications(db: Session = Depends(get_db)):
    deleted = NotificationService(db).cleanup_read_notifications(NOTIFICATION_RETENTION_DAYS)
    return {"success": True, "deleted": deleted, "timestamp": datetime.utcnow().isoformat()}
