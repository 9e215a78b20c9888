"""
QuickBooks API routes - accounting sync for expenses and invoices
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from fastapi.responses import RedirectResponse, JSONResponse
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Optional, List
from datetime import date
from urllib.parse import urlencode
import logging

from .db import get_db, User
from .db.models import QuickBooksConnection, QuickBooksConnectionStatus, Expense, Invoice
from .auth import get_current_user
from .config import config
from .services.plan_policy import PlanPolicy
from .services.quickbooks import (
    QuickBooksConnectionService,
    QuickBooksConnectionError,
    QuickBooksMappingService,
    QuickBooksSyncService,
    QuickBooksError,
    MappingError,
    SyncError,
)
from .services.quickbooks.mapping import mapping_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/quickbooks", tags=["quickbooks"])

QB_REQUIRED = "QuickBooks integration requires Premium or higher plan"


class ConnectRequest(BaseModel):
    reconnect: bool = False


class DisconnectRequest(BaseModel):
    permanent: bool = False


class MappingRequest(BaseModel):
    action: Optional[str] = None
    tcCategory: Optional[str] = None
    qbAccountId: Optional[str] = None
    qbAccountName: Optional[str] = None
    qbAccountType: Optional[str] = None
    mappingId: Optional[int] = None


class SyncRequest(BaseModel):
    action: Optional[str] = None
    expenseId: Optional[int] = None
    invoiceId: Optional[int] = None
    expenseIds: Optional[List[int]] = None
    invoiceIds: Optional[List[int]] = None
    dateFrom: Optional[date] = None
    dateTo: Optional[date] = None
    category: Optional[str] = None
    status: Optional[str] = None


def _require_access(db: Session, user: User) -> PlanPolicy:
    policy = PlanPolicy(db, user)
    policy.require_feature("quickbooksIntegration", QB_REQUIRED)
    return policy


def _connection(db: Session, user: User, active: bool = False) -> QuickBooksConnection:
    connection = QuickBooksConnectionService(db).get_connection(user.id)
    if not connection:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="QuickBooks not connected")
    if active and connection.status != QuickBooksConnectionStatus.ACTIVE.value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"QuickBooks connection is {connection.status}. Please reconnect.",
        )
    return connection


def _api_error(e: QuickBooksError) -> JSONResponse:
    """Returned rather than raised so token status changes are committed"""
    code = status.HTTP_429_TOO_MANY_REQUESTS if e.status_code == 429 else status.HTTP_502_BAD_GATEWAY
    content = {"error": str(e)}
    if e.retry_after:
        content["retryAfter"] = e.retry_after
    return JSONResponse(status_code=code, content=content)


def _expenses_redirect(**params) -> RedirectResponse:
    return RedirectResponse(
        url=f"{config.APP_URL}/dashboard/expenses?{urlencode(params)}",
        status_code=status.HTTP_302_FOUND,
    )


@router.post("/connect")
async def connect(
    request: ConnectRequest = ConnectRequest(),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _require_access(db, current_user)
    try:
        result = QuickBooksConnectionService(db).get_authorization_url(current_user.id, request.reconnect)
    except QuickBooksConnectionError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    logger.info(f"Generated QuickBooks OAuth URL for user {current_user.id}")
    return {"authUrl": result["authUrl"], "provider": "quickbooks"}


@router.get("/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    realmId: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Intuit redirect target: always answers with a redirect to the expenses page"""
    if error:
        logger.warning(f"QuickBooks authorization error: {error} {error_description or ''}")
        return _expenses_redirect(qb_error=error_description or error)
    if not code:
        return _expenses_redirect(qb_error="No authorization code received")
    if not realmId:
        return _expenses_redirect(qb_error="No QuickBooks company selected")

    service = QuickBooksConnectionService(db)
    try:
        state_data = service.parse_state(state)
    except QuickBooksConnectionError as e:
        return _expenses_redirect(qb_error=str(e))

    user = db.query(User).filter(User.id == state_data["userId"]).first()
    if not user:
        return _expenses_redirect(qb_error="User not found")
    if not PlanPolicy(db, user).check_feature_access("quickbooksIntegration"):
        return _expenses_redirect(qb_error=QB_REQUIRED)

    try:
        result = service.handle_callback(code, state_data, realmId)
    except QuickBooksConnectionError as e:
        logger.warning(f"QuickBooks callback failed for user {user.id}: {e}")
        return _expenses_redirect(qb_error=str(e))
    except Exception as e:
        logger.error(f"QuickBooks callback error for user {user.id}: {e}", exc_info=True)
        return _expenses_redirect(qb_error="Connection failed. Please try again.")

    if not result["updated"]:
        try:
            mapped = QuickBooksMappingService(db).auto_map_categories(service.client_for(result["connection"]))
            logger.info(f"Auto-mapped {len(mapped['mapped'])} categories for user {user.id}")
        except (MappingError, QuickBooksError) as e:
            logger.warning(f"Auto-mapping after connect failed (non-fatal): {e}")

    if state_data.get("reconnect"):
        message = "QuickBooks reconnected successfully"
    elif result["updated"]:
        message = "QuickBooks connection updated"
    else:
        message = "QuickBooks connected successfully"
    return _expenses_redirect(qb_success=message)


@router.get("/status")
async def get_status(
    verify: bool = False,
    includeHistory: bool = False,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    policy = PlanPolicy(db, current_user)
    plan = policy.get_plan()
    if not policy.check_feature_access("quickbooksIntegration"):
        return {"connected": False, "hasAccess": False, "plan": plan, "message": QB_REQUIRED}

    service = QuickBooksConnectionService(db)
    connection = service.get_connection(current_user.id)
    if not connection:
        return {"connected": False, "hasAccess": True, "plan": plan, "message": "QuickBooks not connected"}

    connection_status = service.get_status(current_user.id)
    mapping = QuickBooksMappingService(db).get_mapping_status(connection.id)
    sync = QuickBooksSyncService(db, service.client_for(connection))

    response = {
        "connected": connection_status["connected"],
        "hasAccess": True,
        "plan": plan,
        "status": connection_status["status"],
        "companyName": connection_status["companyName"],
        "syncStats": connection_status["syncStats"],
        "connection": {
            "id": connection.id,
            "status": connection.status,
            "companyName": connection.company_name,
            "realmId": connection.realm_id,
            "autoSyncExpenses": connection.auto_sync_expenses,
            "autoSyncInvoices": connection.auto_sync_invoices,
            "lastSyncAt": connection_status["lastSyncAt"],
            "createdAt": connection_status["connectedAt"],
            "errorMessage": connection.error_message,
        },
        "mapping": {k: v for k, v in mapping.items() if k not in ("mappings", "categories")},
        "sync": sync.get_sync_stats(),
    }
    if verify and connection.status == QuickBooksConnectionStatus.ACTIVE.value:
        health = service.verify(connection)
        response["health"] = {"verified": health["valid"], "error": health.get("error")}
    if includeHistory:
        response["recentHistory"] = sync.get_sync_history(limit=10)
    return response


@router.post("/disconnect")
async def disconnect(
    request: DisconnectRequest = DisconnectRequest(),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service = QuickBooksConnectionService(db)
    if not service.get_connection(current_user.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No QuickBooks connection found")

    if request.permanent:
        service.delete(current_user.id)
        return {"success": True, "message": "QuickBooks connection deleted"}
    service.disconnect(current_user.id)
    return {"success": True, "message": "QuickBooks disconnected"}


@router.delete("/disconnect")
async def delete_connection(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service = QuickBooksConnectionService(db)
    if not service.get_connection(current_user.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No QuickBooks connection found")
    service.delete(current_user.id)
    return {"success": True, "message": "QuickBooks connection deleted"}


@router.get("/accounts")
async def list_accounts(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _require_access(db, current_user)
    connection = _connection(db, current_user, active=True)
    client = QuickBooksConnectionService(db).client_for(connection)
    try:
        accounts = QuickBooksMappingService(db).list_expense_accounts(client)
    except QuickBooksError as e:
        logger.error(f"Failed to fetch QuickBooks accounts: {e}")
        return _api_error(e)
    return {"accounts": accounts, "companyName": connection.company_name}


@router.get("/mappings")
async def get_mappings(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _require_access(db, current_user)
    connection = _connection(db, current_user)
    return QuickBooksMappingService(db).get_mapping_status(connection.id)


@router.post("/mappings")
async def update_mappings(
    request: MappingRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _require_access(db, current_user)
    connection = _connection(db, current_user)
    service = QuickBooksMappingService(db)

    if request.action == "set":
        if not request.tcCategory or not request.qbAccountId or not request.qbAccountName:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="tcCategory, qbAccountId, and qbAccountName are required",
            )
        try:
            mapping = service.upsert_mapping(connection, request.tcCategory, request.qbAccountId,
                                             request.qbAccountName, request.qbAccountType or "Expense")
        except MappingError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        return {
            "success": True,
            "message": f"Mapped {request.tcCategory} to {request.qbAccountName}",
            "mapping": mapping_to_dict(mapping),
        }

    if request.action == "auto-map":
        client = QuickBooksConnectionService(db).client_for(connection)
        try:
            result = service.auto_map_categories(client)
        except MappingError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except QuickBooksError as e:
            return _api_error(e)
        return {"message": f"Auto-mapped {len(result['mapped'])} categories", **result}

    if request.action == "delete":
        if not request.mappingId:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="mappingId required")
        if not service.delete_mapping(connection, request.mappingId):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Mapping not found")
        return {"success": True, "message": "Mapping deleted"}

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail="Invalid action. Valid actions: set, auto-map, delete",
    )


@router.get("/sync")
async def get_sync_history(
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _require_access(db, current_user)
    connection = _connection(db, current_user)
    sync = QuickBooksSyncService(db, QuickBooksConnectionService(db).client_for(connection))
    return {"history": sync.get_sync_history(limit)}


@router.post("/sync")
async def run_sync(
    request: SyncRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _require_access(db, current_user)
    connection = _connection(db, current_user, active=True)
    sync = QuickBooksSyncService(db, QuickBooksConnectionService(db).client_for(connection))

    try:
        if request.action == "single-expense":
            if not request.expenseId:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="expenseId required")
            expense = db.query(Expense).filter(
                Expense.id == request.expenseId, Expense.user_id == current_user.id
            ).first()
            if not expense:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Expense not found")
            try:
                result = sync.sync_expense(expense)
            except SyncError as e:
                return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(e)})
            return {"success": True, "message": "Expense synced to QuickBooks", "qbEntityId": result["qbEntityId"]}

        if request.action == "single-invoice":
            if not request.invoiceId:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invoiceId required")
            invoice = db.query(Invoice).filter(
                Invoice.id == request.invoiceId, Invoice.user_id == current_user.id
            ).first()
            if not invoice:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
            try:
                result = sync.sync_invoice(invoice)
            except SyncError as e:
                return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(e)})
            return {"success": True, "message": "Invoice synced to QuickBooks", "qbEntityId": result["qbEntityId"]}

        if request.action == "bulk-expenses":
            return sync.bulk_sync_expenses(
                expense_ids=request.expenseIds,
                start_date=request.dateFrom,
                end_date=request.dateTo,
                categories=[request.category] if request.category else None,
            )

        if request.action == "bulk-invoices":
            return sync.bulk_sync_invoices(
                invoice_ids=request.invoiceIds,
                start_date=request.dateFrom,
                end_date=request.dateTo,
                status=request.status,
            )

        if request.action == "retry-failed":
            return sync.retry_failed()
    except QuickBooksError as e:
        logger.error(f"QuickBooks sync failed for user {current_user.id}: {e}")
        return _api_error(e)

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail="Invalid action. Valid actions: single-expense, single-invoice, bulk-expenses, bulk-invoices, retry-failed",
    )
