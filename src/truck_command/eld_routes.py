"""
ELD API routes - Terminal-backed telematics
"""
from fastapi import APIRouter, Depends, HTTPException, status, Request, Query
from fastapi.responses import RedirectResponse, JSONResponse
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Optional
from urllib.parse import urlencode
import json
import logging

from .db import get_db, User
from .db.models import EldConnectionStatus
from .auth import get_current_user
from .config import config
from .services.plan_policy import PlanPolicy
from .services.jurisdictions import is_valid_quarter
from .services.eld import (
    EldConnectionService,
    EldConnectionError,
    HosService,
    GpsService,
    DiagnosticsService,
    EldIftaService,
    EldSyncService,
    SyncInProgress,
    TerminalError,
)
from .services.eld.connection import decode_state, get_supported_providers, provider_display_name
from .services.eld.webhooks import EldWebhookHandler, verify_signature, SIGNATURE_HEADERS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/eld", tags=["eld"])

ELD_REQUIRED = "ELD integration requires Premium or higher plan"

SYNC_FEATURE_GATES = {
    "ifta": ("eldIftaSync", "IFTA sync requires Premium or higher plan"),
    "hos": ("eldHosTracking", "HOS tracking requires Premium or higher plan"),
    "locations": ("eldGpsTracking", "GPS tracking requires Fleet or higher plan"),
    "faults": ("eldDiagnostics", "Vehicle diagnostics requires Fleet or higher plan"),
}


class ConnectionActionRequest(BaseModel):
    action: Optional[str] = None
    connectionId: Optional[int] = None
    provider: Optional[str] = None
    reconnect: bool = False


class DisconnectRequest(BaseModel):
    connectionId: Optional[int] = None
    permanent: bool = False


class SyncRequest(BaseModel):
    syncType: str = "all"


class DiagnosticsActionRequest(BaseModel):
    action: Optional[str] = None
    faultId: Optional[int] = None


class IftaImportRequest(BaseModel):
    quarter: Optional[str] = None


def _policy(db: Session, user: User, *features) -> PlanPolicy:
    """eldIntegration first, then any narrower features"""
    policy = PlanPolicy(db, user)
    policy.require_feature("eldIntegration", ELD_REQUIRED)
    for feature, message in features:
        policy.require_feature(feature, message)
    return policy


def _no_connection(e: EldConnectionError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _settings_redirect(**params) -> RedirectResponse:
    query = urlencode({"tab": "eld", **params})
    return RedirectResponse(url=f"{config.APP_URL}/dashboard/settings?{query}", status_code=status.HTTP_302_FOUND)


# Connections

@router.get("/connections")
async def get_connections(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _policy(db, current_user)
    result = EldConnectionService(db).get_connection_status(current_user.id)
    return {
        "connected": result["connected"],
        "hasError": result["hasError"],
        "primaryConnection": result["primaryConnection"],
        "connections": result["connections"],
        "supportedProviders": result["availableProviders"],
    }


@router.post("/connections")
async def connection_action(
    request: ConnectionActionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _policy(db, current_user)
    service = EldConnectionService(db)

    try:
        if request.action == "verify":
            if not request.connectionId:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="connectionId required")
            return service.verify(current_user.id, request.connectionId)

        if request.action == "initiate-oauth":
            if not request.provider:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="provider required")
            result = service.initiate_oauth(
                current_user.id, request.provider, request.reconnect, request.connectionId
            )
            return {"authUrl": result["authUrl"], "provider": result["provider"], "providerName": result["providerName"]}

        if request.action == "list-providers":
            return {"providers": get_supported_providers()}
    except EldConnectionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid action")


@router.delete("/connections")
async def delete_connection(
    request: DisconnectRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _policy(db, current_user)
    if not request.connectionId:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="connectionId required")

    service = EldConnectionService(db)
    try:
        if request.permanent:
            service.delete(current_user.id, request.connectionId)
            return {"success": True, "message": "Connection deleted"}
        service.disconnect(current_user.id, request.connectionId)
        return {"success": True, "message": "Connection disconnected"}
    except EldConnectionError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Terminal Link redirect target: always answers with a redirect to settings"""
    if error:
        logger.warning(f"ELD authorization error: {error} {error_description or ''}")
        return _settings_redirect(error=error_description or error)
    if not code:
        return _settings_redirect(error="No authorization code received")

    state_data = decode_state(state)
    if not state_data or not state_data.get("userId"):
        return _settings_redirect(error="Invalid callback state")

    user = db.query(User).filter(User.id == state_data["userId"]).first()
    if not user:
        return _settings_redirect(error="User not found")
    if not PlanPolicy(db, user).check_feature_access("eldIntegration"):
        return _settings_redirect(error=ELD_REQUIRED)

    try:
        result = EldConnectionService(db).handle_callback(code, state_data)
    except EldConnectionError as e:
        logger.warning(f"ELD callback failed for user {user.id}: {e}")
        return _settings_redirect(error=str(e))
    except Exception as e:
        logger.error(f"ELD callback error for user {user.id}: {e}", exc_info=True)
        return _settings_redirect(error="Connection failed. Please try again.")

    name = provider_display_name(state_data.get("provider"))
    if state_data.get("reconnect"):
        message = f"{name} reconnected successfully"
    elif result["updated"]:
        message = f"{name} connection updated"
    else:
        message = f"{name} connected successfully"
    return _settings_redirect(success=message, provider=state_data.get("provider"))


# Sync

@router.post("/sync")
async def trigger_sync(
    request: SyncRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    gate = SYNC_FEATURE_GATES.get(request.syncType)
    _policy(db, current_user, *([gate] if gate else []))

    service = EldConnectionService(db)
    connections = service.list_connections(current_user.id)
    connection = next((c for c in connections if c.status == EldConnectionStatus.ACTIVE.value), None)
    if not connection:
        if connections and connections[0].status != EldConnectionStatus.DISCONNECTED.value:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Connection is not active. Please reconnect your ELD provider.",
            )
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active ELD connection found")

    try:
        result = EldSyncService(db).run(connection, request.syncType)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SyncInProgress as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e))

    if not result["success"]:
        # Returned rather than raised so the failed job row is committed
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"error": f"Sync failed: {result['error']}", "syncJobId": result["syncJobId"]},
        )
    return result


@router.get("/sync")
async def sync_history(
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _policy(db, current_user)
    return {"syncHistory": EldSyncService(db).get_sync_history(current_user.id, limit)}


# HOS

@router.get("/hos/dashboard")
async def hos_dashboard(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _policy(db, current_user, ("eldHosTracking", "HOS tracking requires Premium or higher plan"))
    try:
        return HosService(db).get_dashboard(current_user.id)
    except EldConnectionError as e:
        raise _no_connection(e)


@router.get("/hos/drivers/{driver_id}")
async def hos_driver_details(
    driver_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _policy(db, current_user, ("eldHosTracking", "HOS tracking requires Premium or higher plan"))
    try:
        return HosService(db).get_driver_details(current_user.id, driver_id)
    except EldConnectionError as e:
        raise _no_connection(e)


# GPS

@router.get("/gps/dashboard")
async def gps_dashboard(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _policy(db, current_user, ("eldGpsTracking", "GPS tracking requires Fleet or higher plan"))
    try:
        return GpsService(db).get_dashboard(current_user.id)
    except EldConnectionError as e:
        raise _no_connection(e)


@router.post("/gps/refresh")
async def gps_refresh(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _policy(db, current_user, ("eldGpsTracking", "GPS tracking requires Fleet or higher plan"))
    try:
        return GpsService(db).refresh_locations(current_user.id)
    except EldConnectionError as e:
        raise _no_connection(e)
    except TerminalError as e:
        logger.error(f"GPS refresh failed for user {current_user.id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to refresh locations")


@router.get("/gps/vehicles/{vehicle_id}/history")
async def gps_vehicle_history(
    vehicle_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _policy(db, current_user, ("eldGpsTracking", "GPS tracking requires Fleet or higher plan"))
    try:
        return GpsService(db).get_vehicle_history(current_user.id, vehicle_id)
    except EldConnectionError as e:
        raise _no_connection(e)


# Diagnostics

@router.get("/diagnostics")
async def get_diagnostics(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _policy(db, current_user, ("eldDiagnostics", "Vehicle diagnostics requires Fleet or higher plan"))
    return DiagnosticsService(db).get_diagnostics(current_user.id)


@router.post("/diagnostics")
async def diagnostics_action(
    request: DiagnosticsActionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _policy(db, current_user, ("eldDiagnostics", "Vehicle diagnostics requires Fleet or higher plan"))
    service = DiagnosticsService(db)

    if request.action == "clear":
        if not request.faultId:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="faultId required")
        if not service.clear_fault_code(current_user.id, request.faultId):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Fault code not found")
        return {"success": True}

    if request.action == "sync":
        connection = EldConnectionService(db).get_active_connection(current_user.id)
        if not connection:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active ELD connection found")
        try:
            synced = service.sync_fault_codes(current_user.id, connection)
        except TerminalError as e:
            logger.error(f"Fault code sync failed for user {current_user.id}: {e}")
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to sync fault codes")
        return {"success": True, "syncedCount": synced}

    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid action")


# IFTA

def _check_quarter(quarter: Optional[str]) -> str:
    if not quarter:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Quarter parameter is required")
    if not is_valid_quarter(quarter):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid quarter format. Use YYYY-Q# (e.g., 2024-Q1)",
        )
    return quarter


@router.get("/ifta/summary")
async def ifta_summary(
    quarter: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _policy(db, current_user, ("eldIftaSync", "IFTA sync requires Premium or higher plan"))
    quarter = _check_quarter(quarter)

    service = EldIftaService(db)
    return {
        "quarter": quarter,
        "eldMileage": service.get_eld_mileage(current_user.id, quarter),
        "manualMileage": service.get_manual_mileage(current_user.id, quarter),
        "comparison": service.get_summary(current_user.id, quarter),
        "lastImportedAt": service.last_imported_at(current_user.id, quarter),
    }


@router.post("/ifta/import")
async def ifta_import(
    request: IftaImportRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _policy(db, current_user, ("eldIftaSync", "IFTA sync requires Premium or higher plan"))
    quarter = _check_quarter(request.quarter)
    try:
        return EldIftaService(db).import_to_ifta(current_user.id, quarter)
    except EldConnectionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# Webhook

@router.post("/webhook")
async def terminal_webhook(request: Request, db: Session = Depends(get_db)):
    """Terminal event callback, authenticated by HMAC signature instead of a user token"""
    body = await request.body()
    secret = config.TERMINAL_WEBHOOK_SECRET
    if secret:
        signature = next((request.headers.get(h) for h in SIGNATURE_HEADERS if request.headers.get(h)), None)
        if not verify_signature(body, signature, secret):
            logger.warning("Rejected Terminal webhook with invalid signature")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    elif config.is_prod:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        event = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    try:
        EldWebhookHandler(db).handle(event)
    except TerminalError as e:
        logger.error(f"Terminal webhook follow-up sync failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook processing failed")
    return {"received": True}
