"""
Tests for QuickBooks account mapping, payload building and routes
"""
import httpx
import pytest
from datetime import date, datetime, timedelta
from urllib.parse import urlparse, parse_qs

from truck_command.config import config
from truck_command.db import Expense, QuickBooksAccountMapping, QuickBooksConnection, QuickBooksSyncRecord
from truck_command.services.eld.connection import encode_state
from truck_command.services.quickbooks.connection import QuickBooksConnectionError, QuickBooksConnectionService
from truck_command.services.quickbooks.mapping import MappingError, QuickBooksMappingService, find_best_match
from truck_command.services.quickbooks.api_client import QuickBooksAuthError, QuickBooksClient
from truck_command.services.quickbooks.sync import QuickBooksSyncService, map_expense_to_purchase


ACCOUNTS = [
    {"Id": "10", "Name": "Automobile Expense"},
    {"Id": "11", "Name": "Diesel Purchases"},
    {"Id": "12", "Name": "Repairs and Maintenance"},
    {"Id": "13", "Name": "Highway Tolls"},
]


class TestFindBestMatch:

    def test_exact_default_name(self):
        assert find_best_match(ACCOUNTS, "Maintenance")["Id"] == "12"

    def test_fallback_name_before_keywords(self):
        # "Diesel Purchases" matches a keyword but the fallback name wins
        assert find_best_match(ACCOUNTS, "Fuel")["Id"] == "10"

    def test_keyword(self):
        without_fallback = [a for a in ACCOUNTS if a["Name"] != "Automobile Expense"]
        assert find_best_match(without_fallback, "Tolls")["Id"] == "13"

    def test_fallback_name_wins_over_keyword_for_tolls(self):
        assert find_best_match(ACCOUNTS, "Tolls")["Id"] == "10"

    def test_no_match(self):
        assert find_best_match(ACCOUNTS, "Meals") is None
        assert find_best_match(ACCOUNTS, "Unknown") is None


class TestPurchasePayload:

    def test_map_expense(self):
        expense = Expense(
            id=42,
            description="Fuel at Flying J",
            amount=312.55,
            date=date(2024, 2, 3),
            category="Fuel",
            payment_method="Fuel Card",
            notes="Truck 7",
            deductible=True,
        )
        mapping = QuickBooksAccountMapping(qb_account_id="10", qb_account_name="Fuel and Oil")
        payload = map_expense_to_purchase(expense, mapping, {"Id": "90", "Name": "Company Card"})

        assert payload["PaymentType"] == "CreditCard"
        assert payload["TxnDate"] == "2024-02-03"
        assert payload["TotalAmt"] == 312.55
        assert payload["AccountRef"] == {"value": "90", "name": "Company Card"}
        assert payload["PrivateNote"] == "Truck 7 | (Tax Deductible) | TC ID: 42"
        line = payload["Line"][0]
        assert line["AccountBasedExpenseLineDetail"]["AccountRef"] == {"value": "10", "name": "Fuel and Oil"}

    def test_unknown_payment_method_is_cash(self):
        expense = Expense(id=1, description="Misc", amount=5, date=date(2024, 1, 1), category="Other",
                          payment_method="Barter", deductible=False)
        mapping = QuickBooksAccountMapping(qb_account_id="1", qb_account_name="Other Expense")
        payload = map_expense_to_purchase(expense, mapping, {"Id": "2"})
        assert payload["PaymentType"] == "Cash"
        assert payload["PrivateNote"] == "TC ID: 1"


class TestMappingService:

    @pytest.fixture
    def connection(self, db_session, premium_user):
        connection = QuickBooksConnection(user_id=premium_user.id, realm_id="realm-1", access_token="tok")
        db_session.add(connection)
        db_session.flush()
        return connection

    def test_upsert_replaces_existing(self, db_session, connection):
        service = QuickBooksMappingService(db_session)
        service.upsert_mapping(connection, "Fuel", "10", "Automobile Expense")
        service.upsert_mapping(connection, "Fuel", "11", "Fuel and Oil")

        mappings = service.get_mappings(connection.id)
        assert len(mappings) == 1
        assert mappings[0].qb_account_id == "11"

        status = service.get_mapping_status(connection.id)
        assert status["mappedCount"] == 1
        assert not status["isComplete"]
        assert "Fuel" not in status["unmappedCategories"]

    def test_invalid_category(self, db_session, connection):
        with pytest.raises(MappingError):
            QuickBooksMappingService(db_session).upsert_mapping(connection, "Snacks", "1", "Food")


class TestCallbackState:

    def test_expired_state(self, db_session):
        state = encode_state({"userId": "u1", "timestamp": 0})
        with pytest.raises(QuickBooksConnectionError, match="expired"):
            QuickBooksConnectionService(db_session).parse_state(state, now_ms=11 * 60 * 1000)

    def test_state_without_user(self, db_session):
        with pytest.raises(QuickBooksConnectionError):
            QuickBooksConnectionService(db_session).parse_state(encode_state({"timestamp": 1}))


class TestQuickBooksRoutes:

    def test_status_without_access(self, client, auth_headers):
        response = client.get("/api/quickbooks/status", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["hasAccess"] is False

    def test_status_not_connected(self, client, premium_headers):
        data = client.get("/api/quickbooks/status", headers=premium_headers).json()
        assert data["hasAccess"] is True
        assert data["connected"] is False

    def test_callback_error_redirects(self, client):
        response = client.get("/api/quickbooks/callback?error=access_denied", follow_redirects=False)
        assert response.status_code in (302, 307)
        location = urlparse(response.headers["location"])
        assert location.path == "/dashboard/expenses"
        assert parse_qs(location.query)["qb_error"] == ["access_denied"]

    def test_callback_without_realm(self, client):
        response = client.get("/api/quickbooks/callback?code=abc", follow_redirects=False)
        assert parse_qs(urlparse(response.headers["location"]).query)["qb_error"] == ["No QuickBooks company selected"]


class RecordingClient:
    """Stands in for the API client; every purchase gets a new QuickBooks id"""

    def __init__(self, connection):
        self.connection = connection
        self.purchases = []

    def get_credit_card_accounts(self):
        return []

    def get_bank_accounts(self):
        return [{"Id": "90", "Name": "Checking"}]

    def create_purchase(self, payload):
        self.purchases.append(payload)
        return {"Id": f"qb-{len(self.purchases)}"}


class TestBulkExpenseSync:

    @pytest.fixture
    def connection(self, db_session, premium_user):
        connection = QuickBooksConnection(user_id=premium_user.id, realm_id="realm-1", access_token="tok")
        db_session.add(connection)
        db_session.flush()
        QuickBooksMappingService(db_session).upsert_mapping(connection, "Fuel", "10", "Fuel and Oil")
        return connection

    def add_expense(self, db_session, user, description, day, category="Fuel"):
        expense = Expense(user_id=user.id, description=description, amount=100, date=date(2024, 1, day),
                          category=category, payment_method="Cash")
        db_session.add(expense)
        db_session.flush()
        return expense

    def test_skips_already_synced(self, db_session, premium_user, connection):
        first = self.add_expense(db_session, premium_user, "Fuel stop 1", 1)
        second = self.add_expense(db_session, premium_user, "Fuel stop 2", 2)
        client = RecordingClient(connection)
        service = QuickBooksSyncService(db_session, client)
        service.record_sync("expense", first.id, "qb-old", "synced")

        result = service.bulk_sync_expenses()
        assert result["synced"] == 1
        assert result["total"] == 1
        assert [p["Line"][0]["Description"] for p in client.purchases] == ["Fuel stop 2"]
        assert service.get_sync_record("expense", second.id).qb_entity_id == "qb-1"
        assert service.get_sync_record("expense", first.id).qb_entity_id == "qb-old"

    def test_nothing_left_to_sync(self, db_session, premium_user, connection):
        expense = self.add_expense(db_session, premium_user, "Fuel stop", 1)
        client = RecordingClient(connection)
        service = QuickBooksSyncService(db_session, client)
        service.record_sync("expense", expense.id, "qb-old", "synced")

        result = service.bulk_sync_expenses()
        assert result == {"success": True, "synced": 0, "failed": 0, "message": "All expenses already synced"}
        assert client.purchases == []

    def test_failed_records_are_retried_in_bulk(self, db_session, premium_user, connection):
        expense = self.add_expense(db_session, premium_user, "Fuel stop", 1)
        unmapped = self.add_expense(db_session, premium_user, "Lunch", 2, category="Meals")
        client = RecordingClient(connection)
        service = QuickBooksSyncService(db_session, client)
        service.record_sync("expense", expense.id, None, "failed", "timeout")

        result = service.bulk_sync_expenses()
        assert result["synced"] == 1
        assert result["failed"] == 1
        assert result["errors"][0]["expenseId"] == unmapped.id
        assert service.get_sync_record("expense", expense.id).sync_status == "synced"

        stats = service.get_sync_stats()
        assert stats["totalExpensesSynced"] == 1
        assert stats["failedSyncs"] == 1


class TestTokenRefresh:

    @pytest.fixture
    def connection(self, db_session, premium_user, monkeypatch):
        monkeypatch.setattr(config, "QUICKBOOKS_CLIENT_ID", "qb-client")
        monkeypatch.setattr(config, "QUICKBOOKS_CLIENT_SECRET", "qb-secret")
        connection = QuickBooksConnection(
            user_id=premium_user.id,
            realm_id="realm-1",
            access_token="old-access",
            refresh_token="old-refresh",
            token_expires_at=datetime.utcnow() - timedelta(minutes=1),
        )
        db_session.add(connection)
        db_session.flush()
        return connection

    def token_response(self, status_code, body):
        return httpx.Response(status_code, json=body, request=httpx.Request("POST", "https://oauth.test/tokens"))

    def test_rejected_refresh_marks_token_expired(self, db_session, connection, monkeypatch):
        monkeypatch.setattr(httpx, "post", lambda *args, **kwargs: self.token_response(400, {"error": "invalid_grant"}))
        client = QuickBooksClient(db_session, connection)

        with pytest.raises(QuickBooksAuthError, match="reconnect"):
            client.get_company_info()

        assert connection.status == "token_expired"
        assert connection.error_message == "Refresh token expired. Please reconnect."
        assert connection.access_token == "old-access"

    def test_successful_refresh_stores_new_tokens(self, db_session, connection, monkeypatch):
        monkeypatch.setattr(httpx, "post", lambda *args, **kwargs: self.token_response(200, {
            "access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 3600,
        }))
        QuickBooksClient(db_session, connection).ensure_fresh_token()

        assert connection.access_token == "new-access"
        assert connection.refresh_token == "new-refresh"
        assert connection.status == "active"
        assert connection.token_expires_at > datetime.utcnow() + timedelta(minutes=50)

    def test_unauthorized_response_with_failed_refresh(self, db_session, connection, monkeypatch):
        connection.token_expires_at = datetime.utcnow() + timedelta(hours=1)
        api_response = httpx.Response(401, request=httpx.Request("GET", "https://qb.test/companyinfo"))
        monkeypatch.setattr(httpx, "request", lambda *args, **kwargs: api_response)
        monkeypatch.setattr(httpx, "post", lambda *args, **kwargs: self.token_response(400, {"error": "invalid_grant"}))

        with pytest.raises(QuickBooksAuthError, match="Authentication failed"):
            QuickBooksClient(db_session, connection).get_company_info()
        assert connection.status == "token_expired"
