"""
ELD connection service
Links a user's ELD provider account through Terminal Link, stores the
connection token and manages the connection lifecycle.
"""
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional, Dict, Any, List
from urllib.parse import urlencode
import base64
import json
import time
import logging

from ...config import config
from ...db.models import (
    EldConnection,
    EldConnectionStatus,
    EldVehicleLocation,
    EldHosLog,
    EldHosDailyLog,
    EldFaultCode,
    EldIftaMileage,
    EldSyncJob,
)
from .terminal_client import TerminalClient, TerminalError, TerminalAuthError

logger = logging.getLogger(__name__)

TERMINAL_LINK_URL = "https://link.withterminal.com"
STATE_MAX_AGE_SECONDS = 30 * 60

SUPPORTED_PROVIDERS = {
    "motive": {
        "id": "motive",
        "name": "Motive (KeepTruckin)",
        "displayName": "Motive",
        "description": "The #1 ELD provider with ~20% market share. Has dedicated IFTA endpoints.",
        "features": ["vehicles", "drivers", "gps", "hos", "ifta", "ifta_summary", "fault_codes", "webhooks"],
        "authType": "oauth2",
        "docsUrl": "https://developer.gomotive.com",
    },
    "samsara": {
        "id": "samsara",
        "name": "Samsara",
        "displayName": "Samsara",
        "description": "The #2 ELD provider with ~15% market share. Great real-time GPS feeds.",
        "features": ["vehicles", "drivers", "gps", "gps_history", "hos", "ifta", "fault_codes", "webhooks"],
        "authType": "oauth2",
        "docsUrl": "https://developers.samsara.com",
    },
}

PROVIDER_ALIASES = {"keeptruckin": "motive"}


class EldConnectionError(Exception):
    """User-facing failure in the connection flow"""
    pass


def get_provider_info(provider_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not provider_id:
        return None
    key = PROVIDER_ALIASES.get(provider_id.lower(), provider_id.lower())
    return SUPPORTED_PROVIDERS.get(key)


def get_supported_providers() -> List[Dict[str, Any]]:
    return [
        {k: v for k, v in info.items() if k != "displayName"}
        for info in SUPPORTED_PROVIDERS.values()
    ]


def provider_display_name(provider_id: Optional[str]) -> str:
    info = get_provider_info(provider_id)
    return info["displayName"] if info else (provider_id or "ELD provider")


def encode_state(data: Dict[str, Any]) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode("utf-8")).decode("ascii")


def decode_state(state: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode the base64 JSON OAuth state, None when malformed"""
    if not state:
        return None
    try:
        padded = state + "=" * (-len(state) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def connection_to_dict(connection: EldConnection) -> Dict[str, Any]:
    info = get_provider_info(connection.eld_provider)
    return {
        "id": connection.id,
        "provider": connection.provider,
        "eldProvider": connection.eld_provider,
        "providerName": info["name"] if info else (connection.eld_provider_name or connection.eld_provider),
        "eldProviderName": connection.eld_provider_name,
        "companyName": connection.company_name,
        "status": connection.status,
        "errorMessage": connection.error_message,
        "lastSyncAt": connection.last_sync_at.isoformat() if connection.last_sync_at else None,
        "syncFrequencyMinutes": connection.sync_frequency_minutes,
        "createdAt": connection.created_at.isoformat() if connection.created_at else None,
    }


class EldConnectionService:
    """Connection lifecycle for one user's ELD accounts"""

    def __init__(self, db: Session):
        self.db = db

    def list_connections(self, user_id: str, provider: Optional[str] = None) -> List[EldConnection]:
        query = self.db.query(EldConnection).filter(EldConnection.user_id == user_id)
        if provider:
            query = query.filter(EldConnection.eld_provider == provider.lower())
        return query.order_by(EldConnection.created_at.desc()).all()

    def get_active_connection(self, user_id: str) -> Optional[EldConnection]:
        return self.db.query(EldConnection).filter(
            EldConnection.user_id == user_id,
            EldConnection.status == EldConnectionStatus.ACTIVE.value,
        ).order_by(EldConnection.created_at.desc()).first()

    def get_owned_connection(self, user_id: str, connection_id: int) -> EldConnection:
        connection = self.db.query(EldConnection).filter(EldConnection.id == connection_id).first()
        if not connection or connection.user_id != user_id:
            raise EldConnectionError("Connection not found or access denied")
        return connection

    def get_connection_status(self, user_id: str) -> Dict[str, Any]:
        connections = [
            connection_to_dict(c)
            for c in self.list_connections(user_id)
            if c.status != EldConnectionStatus.DISCONNECTED.value
        ]
        active = [c for c in connections if c["status"] == EldConnectionStatus.ACTIVE.value]
        return {
            "connected": bool(active),
            "hasError": any(c["status"] == EldConnectionStatus.ERROR.value for c in connections),
            "connections": connections,
            "primaryConnection": active[0] if active else None,
            "availableProviders": get_supported_providers(),
        }

    def initiate_oauth(self, user_id: str, provider: str, reconnect: bool = False,
                       connection_id: Optional[int] = None) -> Dict[str, Any]:
        """Build the Terminal Link URL the client redirects to"""
        info = get_provider_info(provider)
        if not info:
            raise EldConnectionError(f"Unsupported provider: {provider}. Supported: {', '.join(SUPPORTED_PROVIDERS)}")
        if not config.TERMINAL_PUBLISHABLE_KEY:
            raise EldConnectionError("ELD integration is not configured")

        state = encode_state({
            "userId": user_id,
            "provider": info["id"],
            "timestamp": int(time.time() * 1000),
            "reconnect": bool(reconnect),
            "connectionId": connection_id,
        })
        params = {
            "key": config.TERMINAL_PUBLISHABLE_KEY,
            "provider": info["id"],
            "redirectUrl": f"{config.API_BASE_URL}/api/eld/callback",
            "state": state,
        }
        return {
            "authUrl": f"{TERMINAL_LINK_URL}/?{urlencode(params)}",
            "state": state,
            "provider": info["id"],
            "providerName": info["name"],
        }

    def handle_callback(self, code: str, state: Dict[str, Any], now_ms: Optional[float] = None) -> Dict[str, Any]:
        """
        Exchange the Terminal public token and upsert the connection

        Returns:
            {"connection": EldConnection, "updated": bool}
        """
        now_ms = now_ms if now_ms is not None else time.time() * 1000
        timestamp = state.get("timestamp") or 0
        if now_ms - timestamp > STATE_MAX_AGE_SECONDS * 1000:
            raise EldConnectionError("Authorization expired. Please try again.")

        user_id = state["userId"]
        provider = get_provider_info(state.get("provider"))
        provider_id = provider["id"] if provider else state.get("provider")

        try:
            exchange = TerminalClient().request("POST", "/public-token/exchange", json={"publicToken": code})
        except TerminalAuthError:
            raise EldConnectionError("Authentication failed with ELD provider")
        except TerminalError as e:
            logger.error(f"Terminal token exchange failed for user {user_id}: {e}")
            raise EldConnectionError("Failed to complete ELD authorization")
        if not exchange:
            raise EldConnectionError("Failed to complete ELD authorization")

        token = exchange.get("token") or exchange.get("accessToken")
        external_id = exchange.get("connectionId") or exchange.get("id")

        details = {}
        try:
            details = TerminalClient(token).get_connection() or {}
        except TerminalError as e:
            logger.warning(f"Could not load Terminal connection details: {e}")

        company = details.get("company") or {}
        company_name = details.get("name") or (company.get("name") if isinstance(company, dict) else None)
        provider_name = (details.get("provider") or {}).get("name") if isinstance(details.get("provider"), dict) else None

        connection = None
        if state.get("connectionId"):
            connection = self.db.query(EldConnection).filter(
                EldConnection.id == state["connectionId"],
                EldConnection.user_id == user_id,
            ).first()
        if not connection:
            connection = self.db.query(EldConnection).filter(
                EldConnection.user_id == user_id,
                EldConnection.eld_provider == provider_id,
            ).first()

        updated = connection is not None
        if not connection:
            connection = EldConnection(user_id=user_id, provider="terminal", eld_provider=provider_id)
            self.db.add(connection)

        connection.access_token = token
        connection.external_connection_id = external_id
        connection.company_name = company_name or connection.company_name
        connection.eld_provider_name = provider_name or (provider["name"] if provider else provider_id)
        connection.status = EldConnectionStatus.ACTIVE.value
        connection.error_message = None
        self.db.flush()

        logger.info(f"ELD connection {'updated' if updated else 'created'} for user {user_id} ({provider_id})")
        return {"connection": connection, "updated": updated}

    def verify(self, user_id: str, connection_id: int) -> Dict[str, Any]:
        """Test the stored token against the provider"""
        connection = self.get_owned_connection(user_id, connection_id)
        if not connection.access_token:
            return {"valid": False, "error": "No access token"}

        try:
            details = TerminalClient(connection.access_token).get_connection()
        except TerminalAuthError:
            self.update_status(connection, EldConnectionStatus.ERROR.value, "Authentication failed")
            return {"valid": False, "error": "Authentication failed"}
        except TerminalError as e:
            return {"valid": False, "error": str(e)}

        if details is None:
            self.update_status(connection, EldConnectionStatus.ERROR.value, "Connection verification failed")
            return {"valid": False, "error": "Token validation failed"}

        if connection.status != EldConnectionStatus.ACTIVE.value:
            self.update_status(connection, EldConnectionStatus.ACTIVE.value)
        return {"valid": True, "connectionDetails": details}

    def update_status(self, connection: EldConnection, status: str, error_message: Optional[str] = None) -> EldConnection:
        connection.status = status
        if status == EldConnectionStatus.ERROR.value and error_message:
            connection.error_message = error_message
        elif status == EldConnectionStatus.ACTIVE.value:
            connection.error_message = None
        self.db.flush()
        return connection

    def mark_synced(self, connection: EldConnection) -> EldConnection:
        connection.last_sync_at = datetime.utcnow()
        connection.status = EldConnectionStatus.ACTIVE.value
        connection.error_message = None
        self.db.flush()
        return connection

    def disconnect(self, user_id: str, connection_id: int) -> None:
        """Soft disconnect: keep cached data, drop the token"""
        connection = self.get_owned_connection(user_id, connection_id)
        connection.status = EldConnectionStatus.DISCONNECTED.value
        connection.access_token = None
        self.db.flush()
        logger.info(f"ELD connection {connection_id} disconnected by user {user_id}")

    def delete(self, user_id: str, connection_id: int) -> None:
        """Permanently delete a connection and all telemetry cached from it"""
        connection = self.get_owned_connection(user_id, connection_id)
        for model in (EldSyncJob, EldVehicleLocation, EldHosLog, EldHosDailyLog, EldIftaMileage, EldFaultCode):
            self.db.query(model).filter(model.connection_id == connection.id).delete(synchronize_session=False)
        self.db.delete(connection)
        self.db.flush()
        logger.info(f"ELD connection {connection_id} deleted by user {user_id}")

    def connections_needing_sync(self, threshold_minutes: int = 60) -> List[EldConnection]:
        cutoff = datetime.utcnow().timestamp() - threshold_minutes * 60
        connections = self.db.query(EldConnection).filter(
            EldConnection.status == EldConnectionStatus.ACTIVE.value
        ).all()
        return [
            c for c in connections
            if c.last_sync_at is None or c.last_sync_at.timestamp() < cutoff
        ]
