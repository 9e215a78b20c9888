"""
Tests for invoice numbering, payments and overdue tracking
"""
import pytest
from datetime import date, timedelta
from decimal import Decimal

from truck_command.services.invoice_service import (
    InvoiceService,
    InvoiceNotFound,
    date_range_bounds,
    export_invoices_csv,
    invoice_to_dict,
)


@pytest.fixture
def service(db_session):
    return InvoiceService(db_session)


@pytest.fixture
def invoice(service, test_user):
    return service.create_invoice(
        test_user.id,
        {"customer": "Acme Freight", "invoice_date": date(2024, 3, 1), "tax_rate": 10, "status": "Pending"},
        items=[
            {"description": "Linehaul", "quantity": 1, "unit_price": 900},
            {"description": "Lumper", "quantity": 2, "unit_price": 50},
        ],
    )


class TestNumbering:

    def test_first_number_of_year(self, service, test_user):
        assert service.generate_invoice_number(test_user.id, 2024) == "INV-2024-0001"

    def test_increments_from_highest(self, service, test_user, invoice):
        service.create_invoice(test_user.id, {"customer": "Beta", "invoice_number": "INV-2024-0007",
                                              "invoice_date": date(2024, 4, 1)})
        assert invoice.invoice_number == "INV-2024-0001"
        assert service.generate_invoice_number(test_user.id, 2024) == "INV-2024-0008"

    def test_numbers_are_per_user(self, service, test_user, premium_user, invoice):
        assert service.generate_invoice_number(premium_user.id, 2024) == "INV-2024-0001"


class TestTotals:

    def test_items_drive_totals(self, invoice):
        assert invoice.subtotal == 1000
        assert invoice.tax_amount == 100
        assert invoice.total == 1100
        assert invoice.due_date == date(2024, 3, 16)

    def test_created_activity_logged(self, invoice):
        assert [a.activity_type for a in invoice.activities] == ["created"]

    def test_cents_are_exact(self, service, test_user, db_session):
        invoice = service.create_invoice(test_user.id, {"customer": "Acme", "tax_rate": 8.25},
                                         items=[{"description": "Detention", "quantity": 3, "unit_price": 19.99}])
        assert invoice.subtotal == Decimal("59.97")
        assert invoice.tax_amount == Decimal("4.95")
        assert invoice.total == Decimal("64.92")

        db_session.commit()
        db_session.expire_all()
        assert isinstance(invoice.total, Decimal)
        data = invoice_to_dict(invoice)
        assert data["total"] == 64.92
        assert data["balance"] == 64.92
        assert data["items"][0]["amount"] == 59.97


class TestPayments:

    def test_partial_then_full(self, service, test_user, invoice):
        service.record_payment(test_user.id, invoice.id, 500)
        assert invoice.status == "Partially Paid"
        assert invoice.balance == 600
        assert invoice.payment_date is None

        service.record_payment(test_user.id, invoice.id, 600, payment_date=date(2024, 3, 20))
        assert invoice.status == "Paid"
        assert invoice.payment_date == date(2024, 3, 20)
        assert len(invoice.payments) == 2

    def test_non_positive_amount_rejected(self, service, test_user, invoice):
        with pytest.raises(ValueError):
            service.record_payment(test_user.id, invoice.id, 0)

    def test_other_user_cannot_pay(self, service, invoice):
        with pytest.raises(InvoiceNotFound):
            service.record_payment("someone-else", invoice.id, 10)


class TestStatus:

    def test_overdue_check(self, service, test_user, invoice):
        assert service.check_and_update_overdue(test_user.id, today=date(2024, 3, 17)) == 1
        assert invoice.status == "Overdue"

    def test_not_overdue_on_due_date(self, service, test_user, invoice):
        assert service.check_and_update_overdue(test_user.id, today=date(2024, 3, 16)) == 0

    def test_invalid_status(self, service, test_user, invoice):
        with pytest.raises(ValueError):
            service.update_status(test_user.id, invoice.id, "Lost")

    def test_email_sent_moves_draft_to_sent(self, service, test_user):
        draft = service.create_invoice(test_user.id, {"customer": "Acme", "total": 100})
        service.record_email_sent(draft, "ap@acme.test")
        assert draft.status == "Sent"
        assert draft.last_sent is not None

    def test_duplicate_is_new_draft(self, service, test_user, invoice):
        copy = service.duplicate_invoice(test_user.id, invoice.id)
        assert copy.id != invoice.id
        assert copy.status == "Draft"
        assert copy.invoice_date == date.today()
        assert copy.due_date == date.today() + timedelta(days=15)
        assert copy.total == invoice.total
        assert len(copy.items) == 2


class TestHelpers:

    def test_last_month_bounds(self):
        assert date_range_bounds("lastMonth", today=date(2024, 3, 15)) == (date(2024, 2, 1), date(2024, 2, 29))

    def test_csv_export(self, invoice):
        lines = export_invoices_csv([invoice]).split("\n")
        assert lines[0].startswith("Invoice Number,Customer")
        assert lines[1] == "INV-2024-0001,Acme Freight,2024-03-01,2024-03-16,1100.00,0.00,1100.00,Pending"

    def test_csv_export_empty(self):
        assert export_invoices_csv([]) == ""
