"""
QuickBooks connection service
OAuth 2.0 authorization code flow against Intuit plus the stored connection lifecycle.
"""
from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from urllib.parse import urlencode
import time
import logging

from ...config import config
from ...db.models import QuickBooksConnection, QuickBooksConnectionStatus, QuickBooksSyncRecord
from ..eld.connection import encode_state, decode_state
from .api_client import (
    QB_AUTH_ENDPOINT,
    QB_SCOPES,
    QuickBooksClient,
    QuickBooksError,
    request_tokens,
    revoke_token,
)

logger = logging.getLogger(__name__)

STATE_MAX_AGE_SECONDS = 10 * 60


class QuickBooksConnectionError(Exception):
    """User-facing failure in the connection flow"""
    pass


def callback_redirect_uri() -> str:
    return config.QUICKBOOKS_REDIRECT_URI or f"{config.API_BASE_URL}/api/quickbooks/callback"


class QuickBooksConnectionService:
    def __init__(self, db: Session):
        self.db = db

    def get_connection(self, user_id: str) -> Optional[QuickBooksConnection]:
        return self.db.query(QuickBooksConnection).filter(QuickBooksConnection.user_id == user_id).first()

    def client_for(self, connection: QuickBooksConnection) -> QuickBooksClient:
        return QuickBooksClient(self.db, connection)

    def get_authorization_url(self, user_id: str, reconnect: bool = False) -> Dict[str, str]:
        if not config.QUICKBOOKS_CLIENT_ID:
            raise QuickBooksConnectionError("QuickBooks client ID not configured")

        state = encode_state({
            "userId": user_id,
            "timestamp": int(time.time() * 1000),
            "reconnect": bool(reconnect),
        })
        params = {
            "client_id": config.QUICKBOOKS_CLIENT_ID,
            "response_type": "code",
            "scope": QB_SCOPES,
            "redirect_uri": callback_redirect_uri(),
            "state": state,
        }
        return {"authUrl": f"{QB_AUTH_ENDPOINT}?{urlencode(params)}", "state": state}

    def parse_state(self, state_param: Optional[str], now_ms: Optional[float] = None) -> Dict[str, Any]:
        state = decode_state(state_param)
        if not state or not state.get("userId"):
            raise QuickBooksConnectionError("Invalid callback state")
        now_ms = now_ms if now_ms is not None else time.time() * 1000
        if now_ms - (state.get("timestamp") or 0) > STATE_MAX_AGE_SECONDS * 1000:
            raise QuickBooksConnectionError("Authorization request expired")
        return state

    def handle_callback(self, code: str, state: Dict[str, Any], realm_id: str) -> Dict[str, Any]:
        """
        Exchange the authorization code and upsert the user's connection

        Returns:
            {"connection": QuickBooksConnection, "updated": bool, "companyName": str}
        """
        user_id = state["userId"]
        try:
            tokens = request_tokens({
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": callback_redirect_uri(),
            })
        except QuickBooksError as e:
            raise QuickBooksConnectionError(str(e))

        expires_at = datetime.utcnow() + timedelta(seconds=int(tokens.get("expires_in") or 3600))
        connection = self.get_connection(user_id)
        updated = connection is not None
        if connection is None:
            connection = QuickBooksConnection(user_id=user_id, auto_sync_expenses=True, auto_sync_invoices=True)
            self.db.add(connection)

        connection.realm_id = realm_id
        connection.access_token = tokens.get("access_token")
        connection.refresh_token = tokens.get("refresh_token")
        connection.token_expires_at = expires_at
        connection.status = QuickBooksConnectionStatus.ACTIVE.value
        connection.error_message = None
        self.db.flush()

        company_name = None
        try:
            info = self.client_for(connection).get_company_info()
            company_name = (info or {}).get("CompanyName")
        except QuickBooksError as e:
            logger.warning(f"Could not fetch QuickBooks company info: {e}")
        connection.company_name = company_name or "Unknown Company"
        self.db.flush()

        logger.info(f"QuickBooks connection {'updated' if updated else 'created'} for user {user_id}")
        return {"connection": connection, "updated": updated, "companyName": connection.company_name}

    def disconnect(self, user_id: str) -> None:
        connection = self.get_connection(user_id)
        if not connection:
            raise QuickBooksConnectionError("No QuickBooks connection found")

        if connection.refresh_token:
            revoke_token(connection.refresh_token)
        connection.status = QuickBooksConnectionStatus.DISCONNECTED.value
        connection.access_token = None
        connection.refresh_token = None
        connection.error_message = None
        self.db.flush()
        logger.info(f"Disconnected QuickBooks for user {user_id}")

    def delete(self, user_id: str) -> None:
        self.disconnect(user_id)
        connection = self.get_connection(user_id)
        self.db.delete(connection)
        self.db.flush()

    def verify(self, connection: QuickBooksConnection) -> Dict[str, Any]:
        try:
            info = self.client_for(connection).get_company_info()
        except QuickBooksError as e:
            return {"valid": False, "status": connection.status, "error": str(e)}
        if not info:
            return {"valid": False, "status": "api_error", "error": "Failed to verify connection with QuickBooks"}
        return {"valid": True, "status": QuickBooksConnectionStatus.ACTIVE.value, "companyName": info.get("CompanyName")}

    def _synced_count(self, connection_id: int, entity_type: str) -> int:
        return self.db.query(QuickBooksSyncRecord).filter(
            QuickBooksSyncRecord.connection_id == connection_id,
            QuickBooksSyncRecord.entity_type == entity_type,
            QuickBooksSyncRecord.sync_status == "synced",
        ).count()

    def get_status(self, user_id: str) -> Dict[str, Any]:
        connection = self.get_connection(user_id)
        if not connection:
            return {"connected": False, "status": "not_connected"}
        return {
            "connected": connection.status == QuickBooksConnectionStatus.ACTIVE.value,
            "status": connection.status,
            "companyName": connection.company_name,
            "realmId": connection.realm_id,
            "lastSyncAt": connection.last_sync_at.isoformat() if connection.last_sync_at else None,
            "errorMessage": connection.error_message,
            "connectedAt": connection.created_at.isoformat() if connection.created_at else None,
            "autoSyncExpenses": connection.auto_sync_expenses,
            "autoSyncInvoices": connection.auto_sync_invoices,
            "syncStats": {
                "expenses": self._synced_count(connection.id, "expense"),
                "invoices": self._synced_count(connection.id, "invoice"),
            },
        }
