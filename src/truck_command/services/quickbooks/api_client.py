"""
QuickBooks Online accounting API client
Wraps the v3 REST API with token refresh on expiry and a single retry on 401.
"""
import base64
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

import httpx
from sqlalchemy.orm import Session

from ...config import config
from ...db.models import QuickBooksConnection, QuickBooksConnectionStatus

logger = logging.getLogger(__name__)

QB_AUTH_ENDPOINT = "https://appcenter.intuit.com/connect/oauth2"
QB_TOKEN_ENDPOINT = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
QB_REVOKE_ENDPOINT = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"
QB_SCOPES = "com.intuit.quickbooks.accounting openid profile email"
MINOR_VERSION = "65"

DEFAULT_TIMEOUT = 30
REFRESH_MARGIN = timedelta(minutes=10)


class QuickBooksError(Exception):
    """QuickBooks API or token failure with a user-facing message"""

    def __init__(self, message: str, status_code: Optional[int] = None, retry_after: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class QuickBooksAuthError(QuickBooksError):
    pass


def api_base_url() -> str:
    if config.QUICKBOOKS_ENVIRONMENT == "production":
        return "https://quickbooks.api.intuit.com"
    return "https://sandbox-quickbooks.api.intuit.com"


def basic_auth_header() -> str:
    credentials = f"{config.QUICKBOOKS_CLIENT_ID}:{config.QUICKBOOKS_CLIENT_SECRET}"
    return "Basic " + base64.b64encode(credentials.encode("utf-8")).decode("ascii")


def request_tokens(form: Dict[str, str]) -> Dict[str, Any]:
    """
    POST to the Intuit token endpoint

    Raises:
        QuickBooksAuthError: credentials missing or the grant was rejected
    """
    if not config.QUICKBOOKS_CLIENT_ID or not config.QUICKBOOKS_CLIENT_SECRET:
        raise QuickBooksAuthError("QuickBooks credentials not configured")
    try:
        response = httpx.post(
            QB_TOKEN_ENDPOINT,
            data=form,
            headers={
                "Accept": "application/json",
                "Authorization": basic_auth_header(),
                "Content-Type": "application/x-www-form-urlencoded",
            },
            timeout=DEFAULT_TIMEOUT,
        )
    except httpx.HTTPError as e:
        logger.error(f"QuickBooks token request failed: {e}")
        raise QuickBooksAuthError("Token request failed")

    data = response.json() if response.content else {}
    if response.status_code >= 400:
        logger.warning(f"QuickBooks token grant rejected: {data}")
        raise QuickBooksAuthError(data.get("error_description") or data.get("error") or "Token exchange failed",
                                  status_code=response.status_code)
    return data


def revoke_token(token: str) -> None:
    """Best-effort revocation, failures are logged"""
    try:
        httpx.post(
            QB_REVOKE_ENDPOINT,
            json={"token": token},
            headers={"Accept": "application/json", "Authorization": basic_auth_header()},
            timeout=DEFAULT_TIMEOUT,
        )
    except httpx.HTTPError as e:
        logger.warning(f"QuickBooks token revocation failed (continuing): {e}")


def escape_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class QuickBooksClient:
    """API client bound to one stored connection"""

    def __init__(self, db: Session, connection: QuickBooksConnection):
        self.db = db
        self.connection = connection

    @property
    def base_url(self) -> str:
        return f"{api_base_url()}/v3/company/{self.connection.realm_id}"

    def _needs_refresh(self, now: Optional[datetime] = None) -> bool:
        expires_at = self.connection.token_expires_at
        if not expires_at:
            return False
        return expires_at - (now or datetime.utcnow()) < REFRESH_MARGIN

    def refresh_tokens(self) -> None:
        """
        Exchange the refresh token for a new token pair

        A rejected refresh marks the connection token_expired.
        """
        connection = self.connection
        try:
            data = request_tokens({"grant_type": "refresh_token", "refresh_token": connection.refresh_token or ""})
        except QuickBooksAuthError:
            connection.status = QuickBooksConnectionStatus.TOKEN_EXPIRED.value
            connection.error_message = "Refresh token expired. Please reconnect."
            self.db.flush()
            raise QuickBooksAuthError("Token refresh failed. Please reconnect to QuickBooks.", status_code=401)

        connection.access_token = data.get("access_token")
        connection.refresh_token = data.get("refresh_token") or connection.refresh_token
        connection.token_expires_at = datetime.utcnow() + timedelta(seconds=int(data.get("expires_in") or 3600))
        connection.status = QuickBooksConnectionStatus.ACTIVE.value
        connection.error_message = None
        self.db.flush()
        logger.info(f"Refreshed QuickBooks tokens for connection {connection.id}")

    def ensure_fresh_token(self) -> None:
        if self._needs_refresh():
            self.refresh_tokens()

    def request(self, method: str, endpoint: str, params: Optional[Dict] = None,
                json: Optional[Dict] = None, _retried: bool = False) -> Dict[str, Any]:
        """
        Make an authenticated request against the company endpoint

        Raises:
            QuickBooksAuthError: 401 after a refresh attempt
            QuickBooksError: 429 and any other non-2xx response
        """
        self.ensure_fresh_token()
        url = f"{self.base_url}{endpoint}"
        params = {"minorversion": MINOR_VERSION, **(params or {})}
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.connection.access_token}",
        }
        if json is not None:
            headers["Content-Type"] = "application/json"

        try:
            response = httpx.request(method, url, params=params, json=json, headers=headers, timeout=DEFAULT_TIMEOUT)
        except httpx.HTTPError as e:
            logger.error(f"QuickBooks request {method} {endpoint} failed: {e}")
            raise QuickBooksError(f"Request failed: {e}")

        if response.status_code == 401:
            if _retried:
                raise QuickBooksAuthError("Authentication failed. Please reconnect to QuickBooks.", status_code=401)
            try:
                self.refresh_tokens()
            except QuickBooksAuthError:
                self.connection.status = QuickBooksConnectionStatus.TOKEN_EXPIRED.value
                self.connection.error_message = "Authentication failed. Please reconnect to QuickBooks."
                self.db.flush()
                raise QuickBooksAuthError("Authentication failed. Please reconnect to QuickBooks.", status_code=401)
            return self.request(method, endpoint, params=params, json=json, _retried=True)

        if response.status_code == 429:
            raise QuickBooksError("Rate limit exceeded. Please try again later.", status_code=429, retry_after=60)

        if response.status_code >= 400:
            message = f"QuickBooks API error: {response.status_code}"
            try:
                errors = response.json().get("Fault", {}).get("Error", [])
                if errors:
                    message = errors[0].get("Detail") or errors[0].get("Message") or message
            except ValueError:
                pass
            raise QuickBooksError(message, status_code=response.status_code)

        return response.json() if response.content else {}

    # Queries

    def query(self, statement: str) -> Dict[str, Any]:
        data = self.request("GET", "/query", params={"query": statement})
        return data.get("QueryResponse", {})

    def get_company_info(self) -> Optional[Dict[str, Any]]:
        data = self.request("GET", f"/companyinfo/{self.connection.realm_id}")
        return data.get("CompanyInfo")

    def get_accounts(self, account_type: Optional[str] = None) -> List[Dict[str, Any]]:
        statement = "SELECT * FROM Account WHERE Active = true"
        if account_type:
            statement += f" AND AccountType = '{escape_query_value(account_type)}'"
        statement += " MAXRESULTS 1000"
        return self.query(statement).get("Account", [])

    def get_expense_accounts(self) -> List[Dict[str, Any]]:
        return self.get_accounts("Expense")

    def get_bank_accounts(self) -> List[Dict[str, Any]]:
        return self.get_accounts("Bank")

    def get_credit_card_accounts(self) -> List[Dict[str, Any]]:
        return self.get_accounts("Credit Card")

    # Writes

    def create(self, entity: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = self.request("POST", f"/{entity.lower()}", json=payload)
        return data.get(entity, {})

    def create_purchase(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.create("Purchase", payload)

    def create_invoice(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.create("Invoice", payload)

    def find_or_create_customer(self, display_name: str) -> Dict[str, Any]:
        found = self.query(
            f"SELECT * FROM Customer WHERE DisplayName = '{escape_query_value(display_name)}'"
        ).get("Customer", [])
        if found:
            return found[0]
        return self.create("Customer", {"DisplayName": display_name})
