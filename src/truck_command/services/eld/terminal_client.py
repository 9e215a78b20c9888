"""
Terminal API client
Terminal (withterminal.com) aggregates ELD/telematics providers behind one API.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Iterator

import httpx

from ...config import config

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class TerminalError(Exception):
    """Base exception for Terminal API failures"""
    pass


class TerminalAPIError(TerminalError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TerminalAuthError(TerminalError):
    """Invalid or expired connection token"""
    pass


class TerminalRateLimitError(TerminalError):
    def __init__(self, message: str, retry_after: int = 60):
        super().__init__(message)
        self.retry_after = retry_after


class TerminalClient:
    """
    Thin client over the Terminal REST API

    Authenticates with the connection token when one is given and falls back
    to the account secret key.
    """

    def __init__(self, connection_token: Optional[str] = None, base_url: Optional[str] = None):
        self.connection_token = connection_token
        self.base_url = (base_url or config.TERMINAL_API_URL).rstrip("/")

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        token = self.connection_token or config.TERMINAL_SECRET_KEY
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def request(self, method: str, endpoint: str, params: Optional[Dict] = None,
                json: Optional[Dict] = None, timeout: int = DEFAULT_TIMEOUT) -> Optional[Dict[str, Any]]:
        """
        Make an authenticated request

        Returns:
            Parsed JSON body, or None when the resource does not exist

        Raises:
            TerminalRateLimitError: 429
            TerminalAuthError: 401
            TerminalAPIError: any other non-2xx response or transport failure
        """
        url = f"{self.base_url}{endpoint}"
        try:
            response = httpx.request(method, url, headers=self._headers(), params=params, json=json, timeout=timeout)
        except httpx.HTTPError as e:
            logger.error(f"Terminal request {method} {endpoint} failed: {e}")
            raise TerminalAPIError(f"Request failed: {e}")

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After") or 60
            try:
                retry_after = int(retry_after)
            except (TypeError, ValueError):
                retry_after = 60
            raise TerminalRateLimitError(f"Rate limited. Retry after {retry_after} seconds", retry_after)

        if response.status_code == 401:
            raise TerminalAuthError("Invalid or expired connection token")

        if response.status_code == 404:
            return None

        if response.status_code >= 400:
            raise TerminalAPIError(f"API error: {response.status_code} - {response.text}", response.status_code)

        if not response.content:
            return {}
        return response.json()

    def paginate(self, endpoint: str, params: Optional[Dict] = None, max_pages: int = 50) -> Iterator[Dict[str, Any]]:
        """Yield every item across cursor-paginated results"""
        params = dict(params or {})
        for _ in range(max_pages):
            page = self.request("GET", endpoint, params=params)
            if not page:
                return
            for item in page.get("results", page.get("data", [])) or []:
                yield item
            cursor = page.get("next") or page.get("nextCursor")
            if not cursor:
                return
            params["cursor"] = cursor

    # Connection

    def get_connection(self):
        return self.request("GET", "/connections/current")

    def update_connection(self, settings: Dict[str, Any]):
        return self.request("PATCH", "/connections/current", json=settings)

    # Vehicles

    def list_vehicles(self, **params):
        return self.request("GET", "/vehicles", params=params or None)

    def get_vehicle(self, vehicle_id: str):
        return self.request("GET", f"/vehicles/{vehicle_id}")

    def get_latest_vehicle_locations(self, **params):
        return self.request("GET", "/vehicles/locations", params=params or None)

    def get_vehicle_location_history(self, vehicle_id: str, start_time: str, end_time: str, **params):
        return self.request("GET", f"/vehicles/{vehicle_id}/locations",
                            params={"startTime": start_time, "endTime": end_time, **params})

    # Drivers

    def list_drivers(self, **params):
        return self.request("GET", "/drivers", params=params or None)

    def get_driver(self, driver_id: str):
        return self.request("GET", f"/drivers/{driver_id}")

    # Hours of service

    def get_hos_available_time(self, **params):
        return self.request("GET", "/hos/available-time", params=params or None)

    def list_hos_logs(self, start_time: str, end_time: str, **params):
        return self.request("GET", "/hos/logs", params={"startTime": start_time, "endTime": end_time, **params})

    def list_hos_daily_logs(self, start_date: str, end_date: str, **params):
        return self.request("GET", "/hos/daily-logs", params={"startDate": start_date, "endDate": end_date, **params})

    # IFTA

    def get_ifta_summary(self, start_month: str, end_month: str, **params):
        return self.request("GET", "/ifta/summary", params={"startMonth": start_month, "endMonth": end_month, **params})

    # Safety / fault codes

    def list_safety_events(self, start_time: str, end_time: str, **params):
        return self.request("GET", "/safety/events", params={"startTime": start_time, "endTime": end_time, **params})

    # Syncs

    def request_sync(self, data_types=None):
        return self.request("POST", "/syncs", json={"dataTypes": list(data_types or [])})

    def get_sync_status(self, sync_id: str):
        return self.request("GET", f"/syncs/{sync_id}")

    def list_syncs(self, **params):
        return self.request("GET", "/syncs", params=params or None)

    def passthrough(self, method: str, path: str, body: Optional[Dict] = None):
        """Raw request forwarded to the underlying provider"""
        return self.request(method, "/passthrough", params={"path": path}, json=body)


DUTY_STATUS_MAP = {
    "OFF_DUTY": "OFF",
    "SLEEPER_BERTH": "SB",
    "DRIVING": "D",
    "ON_DUTY_NOT_DRIVING": "ON",
    "ON_DUTY": "ON",
    "OFF": "OFF",
    "SB": "SB",
    "D": "D",
    "ON": "ON",
}


def normalize_duty_status(terminal_status: Optional[str]) -> str:
    """Map a Terminal duty status onto OFF/SB/D/ON (unknown values become OFF)"""
    if not terminal_status:
        return "OFF"
    return DUTY_STATUS_MAP.get(terminal_status.upper(), "OFF")


def month_to_quarter(month: str) -> str:
    """'2024-05' -> '2024-Q2'"""
    year, m = month.split("-")[:2]
    return f"{year}-Q{(int(m) - 1) // 3 + 1}"


def quarter_to_months(quarter: str) -> Dict[str, str]:
    """'2024-Q2' -> {'startMonth': '2024-04', 'endMonth': '2024-06'}"""
    year, q = quarter.split("-Q")
    quarter_num = int(q)
    start = (quarter_num - 1) * 3 + 1
    end = quarter_num * 3
    return {"startMonth": f"{year}-{start:02d}", "endMonth": f"{year}-{end:02d}"}


def quarter_month_list(quarter: str):
    """The three YYYY-MM months of a quarter"""
    months = quarter_to_months(quarter)
    year = months["startMonth"][:4]
    first = int(months["startMonth"][5:])
    return [f"{year}-{m:02d}" for m in range(first, first + 3)]


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """ISO 8601 from the API as a naive UTC datetime, None when unparseable"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
