"""
Endpoint tests for loads, invoices, expenses, fuel, customers and fleet
"""
from datetime import date, timedelta


LOAD = {"customer": "Acme Freight", "origin": "Dallas, TX", "destination": "Tulsa, OK", "rate": 1500, "distance": 260}


class TestLoadRoutes:

    def test_create_list_and_complete(self, client, auth_headers):
        created = client.post("/api/loads", json=LOAD, headers=auth_headers)
        assert created.status_code == 201
        load = created.json()
        assert load["loadNumber"].startswith("L")
        assert load["status"] == "Pending"

        listed = client.get("/api/loads", headers=auth_headers).json()
        assert [l["id"] for l in listed["loads"]] == [load["id"]]

        completed = client.post(f"/api/loads/{load['id']}/complete",
                                json={"deliveryDate": "2024-03-10", "generateInvoice": True},
                                headers=auth_headers)
        assert completed.status_code == 200
        body = completed.json()
        assert body["load"]["status"] == "Completed"
        assert body["invoice"]["total"] == 1500

    def test_factoring_requires_company(self, client, auth_headers):
        load = client.post("/api/loads", json=LOAD, headers=auth_headers).json()
        response = client.post(f"/api/loads/{load['id']}/complete", json={"useFactoring": True}, headers=auth_headers)
        assert response.status_code == 400

    def test_other_users_load(self, client, auth_headers, premium_headers):
        load = client.post("/api/loads", json=LOAD, headers=auth_headers).json()
        response = client.get(f"/api/loads/{load['id']}", headers=premium_headers)
        assert response.status_code == 404

    def test_missing_origin_is_validation_error(self, client, auth_headers):
        response = client.post("/api/loads", json={"destination": "Tulsa, OK"}, headers=auth_headers)
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestInvoiceRoutes:

    def test_create_and_pay(self, client, auth_headers):
        created = client.post("/api/invoices", json={
            "customer": "Acme Freight",
            "invoice_date": "2024-03-01",
            "status": "Pending",
            "items": [{"description": "Linehaul", "unit_price": 800}],
        }, headers=auth_headers)
        assert created.status_code == 201
        invoice = created.json()
        assert invoice["invoice_number"] == "INV-2024-0001"

        paid = client.post(f"/api/invoices/{invoice['id']}/payments", json={"amount": 800}, headers=auth_headers)
        assert paid.status_code == 200
        assert paid.json()["invoice"]["status"] == "Paid"

        detail = client.get(f"/api/invoices/{invoice['id']}", headers=auth_headers).json()
        assert len(detail["payments"]) == 1

    def test_zero_payment_rejected(self, client, auth_headers):
        invoice = client.post("/api/invoices", json={"customer": "Acme", "total": 100}, headers=auth_headers).json()
        response = client.post(f"/api/invoices/{invoice['id']}/payments", json={"amount": 0}, headers=auth_headers)
        assert response.status_code == 422

    def test_invalid_status(self, client, auth_headers):
        invoice = client.post("/api/invoices", json={"customer": "Acme", "total": 100}, headers=auth_headers).json()
        response = client.post(f"/api/invoices/{invoice['id']}/status", json={"status": "Lost"}, headers=auth_headers)
        assert response.status_code == 400

    def test_missing_invoice(self, client, auth_headers):
        assert client.get("/api/invoices/9999", headers=auth_headers).status_code == 404


class TestExpenseAndFuelRoutes:

    def test_invalid_category(self, client, auth_headers):
        response = client.post("/api/expenses", json={
            "description": "Snacks", "amount": 12, "date": "2024-02-01", "category": "Snacks",
        }, headers=auth_headers)
        assert response.status_code == 400

    def test_fuel_entry_creates_expense(self, client, auth_headers):
        response = client.post("/api/fuel", json={
            "date": "2024-02-01", "state": "tx", "gallons": 100, "price_per_gallon": 3.5, "createExpense": True,
        }, headers=auth_headers)
        assert response.status_code == 201
        entry = response.json()
        assert entry["state"] == "TX"
        assert entry["total_amount"] == 350
        assert entry["expense_id"] is not None

        expenses = client.get("/api/expenses", headers=auth_headers).json()["expenses"]
        assert expenses[0]["category"] == "Fuel"
        assert expenses[0]["amount"] == 350

    def test_fuel_sync_is_premium(self, client, auth_headers):
        response = client.post("/api/fuel/sync-expenses", headers=auth_headers)
        assert response.status_code == 403

    def test_invalid_period(self, client, auth_headers):
        assert client.get("/api/expenses/stats?period=decade", headers=auth_headers).status_code == 400


class TestCustomerRoutes:

    def test_create_and_search(self, client, auth_headers):
        created = client.post("/api/customers", json={"name": "Acme Freight", "state": "TX"}, headers=auth_headers)
        assert created.status_code == 201
        client.post("/api/customers", json={"name": "Beta Logistics"}, headers=auth_headers)

        found = client.get("/api/customers?search=acme", headers=auth_headers).json()["customers"]
        assert [c["name"] for c in found] == ["Acme Freight"]


class TestFleetRoutes:

    def test_basic_plan_truck_limit(self, client, auth_headers):
        first = client.post("/api/fleet/vehicles", json={"name": "Truck 1"}, headers=auth_headers)
        assert first.status_code == 201
        second = client.post("/api/fleet/vehicles", json={"name": "Truck 2"}, headers=auth_headers)
        assert second.status_code == 403
        assert second.json()["limitName"] == "trucks"

    def test_driver_document_status(self, client, premium_headers):
        response = client.post("/api/fleet/drivers", json={
            "first_name": "Jane",
            "last_name": "Driver",
            "license_expiry": (date.today() + timedelta(days=10)).isoformat(),
            "medical_card_expiry": (date.today() - timedelta(days=1)).isoformat(),
        }, headers=premium_headers)
        assert response.status_code == 201
        driver = response.json()
        assert driver["fullName"] == "Jane Driver"
        assert driver["licenseStatus"] == "warning"
        assert driver["medicalCardStatus"] == "expired"

        stats = client.get("/api/fleet/stats", headers=premium_headers).json()
        assert stats["drivers"]["total"] == 1
