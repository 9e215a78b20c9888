"""
Invoice service for creating and managing customer invoices
"""
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime, date, timedelta
from sqlalchemy.orm import Session
from sqlalchemy import or_
import calendar
import csv
import io
import re
import logging

from ..db.models import Invoice, InvoiceItem, InvoicePayment, InvoiceActivity, InvoiceStatus, Load
from .money import ZERO, format_money, money_to_float, round_money, to_decimal

logger = logging.getLogger(__name__)

DATE_RANGES = ("thisMonth", "lastMonth", "last30", "last90", "thisYear", "custom")

CSV_HEADERS = ["Invoice Number", "Customer", "Invoice Date", "Due Date", "Total", "Amount Paid", "Balance", "Status"]

SORTABLE_COLUMNS = {"invoice_date", "due_date", "invoice_number", "customer", "total", "status", "created_at"}


class InvoiceNotFound(Exception):
    pass


def date_range_bounds(date_range: str, today: Optional[date] = None,
                      start: Optional[date] = None, end: Optional[date] = None) -> Tuple[Optional[date], Optional[date]]:
    """Inclusive (start, end) bounds for a named invoice date filter"""
    today = today or date.today()
    if date_range == "thisMonth":
        last_day = calendar.monthrange(today.year, today.month)[1]
        return date(today.year, today.month, 1), date(today.year, today.month, last_day)
    if date_range == "lastMonth":
        first_this_month = date(today.year, today.month, 1)
        last_prev = first_this_month - timedelta(days=1)
        return date(last_prev.year, last_prev.month, 1), last_prev
    if date_range == "last30":
        return today - timedelta(days=30), None
    if date_range == "last90":
        return today - timedelta(days=90), None
    if date_range == "thisYear":
        return date(today.year, 1, 1), None
    if date_range == "custom":
        return start, end
    return None, None


def invoice_to_dict(invoice: Invoice, include_items: bool = True) -> Dict[str, Any]:
    data = {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "customer": invoice.customer,
        "customer_id": invoice.customer_id,
        "customer_email": invoice.customer_email,
        "load_id": invoice.load_id,
        "invoice_date": invoice.invoice_date.isoformat() if invoice.invoice_date else None,
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
        "subtotal": money_to_float(invoice.subtotal),
        "tax_rate": float(to_decimal(invoice.tax_rate)),
        "tax_amount": money_to_float(invoice.tax_amount),
        "total": money_to_float(invoice.total),
        "amount_paid": money_to_float(invoice.amount_paid),
        "balance": money_to_float(invoice.balance),
        "status": invoice.status,
        "payment_date": invoice.payment_date.isoformat() if invoice.payment_date else None,
        "last_sent": invoice.last_sent.isoformat() if invoice.last_sent else None,
        "notes": invoice.notes,
        "terms": invoice.terms,
        "created_at": invoice.created_at.isoformat() if invoice.created_at else None,
    }
    if include_items:
        data["items"] = [
            {"id": i.id, "description": i.description, "quantity": float(to_decimal(i.quantity)),
             "unit_price": money_to_float(i.unit_price), "amount": money_to_float(i.amount)}
            for i in invoice.items
        ]
    return data


class InvoiceService:
    """Service for managing invoices"""

    def __init__(self, db: Session):
        self.db = db

    def _log_activity(self, invoice: Invoice, activity_type: str, description: str) -> None:
        self.db.add(InvoiceActivity(
            invoice_id=invoice.id,
            user_id=invoice.user_id,
            activity_type=activity_type,
            description=description,
        ))

    def generate_invoice_number(self, user_id: str, year: Optional[int] = None) -> str:
        """Next sequential number for the user in the year: INV-{year}-{n:04d}"""
        year = year or date.today().year
        prefix = f"INV-{year}-"
        numbers = self.db.query(Invoice.invoice_number).filter(
            Invoice.user_id == user_id,
            Invoice.invoice_number.like(f"{prefix}%"),
        ).all()

        highest = 0
        for (number,) in numbers:
            match = re.search(r"-(\d+)$", number or "")
            if match:
                highest = max(highest, int(match.group(1)))
        return f"{prefix}{highest + 1:04d}"

    def count_this_month(self, user_id: str, since: datetime) -> int:
        return self.db.query(Invoice).filter(Invoice.user_id == user_id, Invoice.created_at >= since).count()

    def list_invoices(self, user_id: str, status: Optional[str] = None, search: Optional[str] = None,
                      date_range: Optional[str] = None, start_date: Optional[date] = None,
                      end_date: Optional[date] = None, sort_by: Optional[str] = None,
                      sort_direction: str = "desc") -> List[Invoice]:
        query = self.db.query(Invoice).filter(Invoice.user_id == user_id)
        if status and status != "all":
            query = query.filter(Invoice.status == status)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(Invoice.invoice_number.ilike(pattern), Invoice.customer.ilike(pattern)))
        if date_range:
            start, end = date_range_bounds(date_range, start=start_date, end=end_date)
            if start:
                query = query.filter(Invoice.invoice_date >= start)
            if end:
                query = query.filter(Invoice.invoice_date <= end)

        column = getattr(Invoice, sort_by) if sort_by in SORTABLE_COLUMNS else Invoice.invoice_date
        query = query.order_by(column.desc() if sort_direction == "desc" else column.asc())
        return query.all()

    def get_invoice(self, user_id: str, invoice_id: int) -> Invoice:
        invoice = self.db.query(Invoice).filter(Invoice.id == invoice_id, Invoice.user_id == user_id).first()
        if not invoice:
            raise InvoiceNotFound("Invoice not found")
        return invoice

    def _apply_items(self, invoice: Invoice, items: List[Dict[str, Any]]) -> None:
        invoice.items = [
            InvoiceItem(
                description=item.get("description") or "",
                quantity=to_decimal(item.get("quantity") or 1),
                unit_price=round_money(item.get("unit_price")),
            )
            for item in items
        ]
        subtotal = sum((i.amount for i in invoice.items), ZERO)
        invoice.subtotal = subtotal
        invoice.tax_amount = round_money(subtotal * to_decimal(invoice.tax_rate) / 100)
        invoice.total = subtotal + invoice.tax_amount

    def create_invoice(self, user_id: str, data: Dict[str, Any], items: Optional[List[Dict[str, Any]]] = None,
                       activity: str = "Invoice created") -> Invoice:
        """
        Create an invoice with line items

        Totals are derived from the items when any are given, otherwise the
        supplied total is kept.
        """
        invoice_date = data.get("invoice_date") or date.today()
        invoice = Invoice(
            user_id=user_id,
            invoice_number=data.get("invoice_number") or self.generate_invoice_number(user_id, invoice_date.year),
            customer=data.get("customer") or "",
            customer_id=data.get("customer_id"),
            customer_email=data.get("customer_email"),
            load_id=data.get("load_id"),
            invoice_date=invoice_date,
            due_date=data.get("due_date") or invoice_date + timedelta(days=15),
            tax_rate=to_decimal(data.get("tax_rate")),
            subtotal=round_money(data.get("subtotal") or data.get("total")),
            total=round_money(data.get("total")),
            amount_paid=round_money(data.get("amount_paid")),
            status=data.get("status") or InvoiceStatus.DRAFT.value,
            payment_date=data.get("payment_date"),
            notes=data.get("notes"),
            terms=data.get("terms"),
        )
        if items:
            self._apply_items(invoice, items)
        self.db.add(invoice)
        self.db.flush()
        self._log_activity(invoice, "created", activity)
        self.db.flush()
        logger.info(f"Created invoice {invoice.invoice_number} for user {user_id}, total: {invoice.total}")
        return invoice

    def update_invoice(self, user_id: str, invoice_id: int, data: Dict[str, Any],
                       items: Optional[List[Dict[str, Any]]] = None) -> Invoice:
        invoice = self.get_invoice(user_id, invoice_id)
        for field in ("customer", "customer_id", "customer_email", "invoice_date", "due_date",
                      "tax_rate", "status", "notes", "terms"):
            if field in data and data[field] is not None:
                setattr(invoice, field, data[field])
        if items is not None:
            self._apply_items(invoice, items)
        self._log_activity(invoice, "updated", "Invoice updated")
        self.db.flush()
        return invoice

    def delete_invoice(self, user_id: str, invoice_id: int) -> None:
        invoice = self.get_invoice(user_id, invoice_id)
        self.db.delete(invoice)
        self.db.flush()

    def update_status(self, user_id: str, invoice_id: int, status: str) -> Invoice:
        if status not in [s.value for s in InvoiceStatus]:
            raise ValueError(f"Invalid status: {status}")
        invoice = self.get_invoice(user_id, invoice_id)
        invoice.status = status
        if status == InvoiceStatus.PAID.value:
            invoice.payment_date = date.today()
        self._log_activity(invoice, "status_change", f"Invoice status changed to {status}")
        self.db.flush()
        return invoice

    def record_payment(self, user_id: str, invoice_id: int, amount: float,
                       payment_date: Optional[date] = None, payment_method: Optional[str] = None,
                       reference: Optional[str] = None, notes: Optional[str] = None) -> InvoicePayment:
        """Record a payment: Paid once the total is covered, Partially Paid before that"""
        amount = round_money(amount)
        if amount <= 0:
            raise ValueError("Payment amount must be positive")
        invoice = self.get_invoice(user_id, invoice_id)
        payment = InvoicePayment(
            invoice_id=invoice.id,
            user_id=user_id,
            amount=amount,
            payment_date=payment_date or date.today(),
            payment_method=payment_method,
            reference=reference,
            notes=notes,
        )
        self.db.add(payment)

        invoice.amount_paid = to_decimal(invoice.amount_paid) + amount
        if invoice.amount_paid >= to_decimal(invoice.total):
            invoice.status = InvoiceStatus.PAID.value
            invoice.payment_date = payment.payment_date
        else:
            invoice.status = InvoiceStatus.PARTIALLY_PAID.value
            invoice.payment_date = None
        self._log_activity(invoice, "payment", f"Payment of ${format_money(amount)} recorded")
        self.db.flush()
        return payment

    def mark_as_sent(self, user_id: str, invoice_id: int, recipient: Optional[str] = None) -> Invoice:
        invoice = self.get_invoice(user_id, invoice_id)
        invoice.status = InvoiceStatus.SENT.value
        invoice.last_sent = datetime.utcnow()
        description = f"Invoice emailed to {recipient}" if recipient else "Invoice marked as sent"
        self._log_activity(invoice, "email" if recipient else "status_change", description)
        self.db.flush()
        return invoice

    def record_email_sent(self, invoice: Invoice, recipient: str) -> Invoice:
        """Stamp last_sent after an email; a Draft becomes Sent, other statuses stay"""
        invoice.last_sent = datetime.utcnow()
        if invoice.status == InvoiceStatus.DRAFT.value:
            invoice.status = InvoiceStatus.SENT.value
        self._log_activity(invoice, "email", f"Invoice emailed to {recipient}")
        self.db.flush()
        return invoice

    def duplicate_invoice(self, user_id: str, invoice_id: int) -> Invoice:
        """Copy as a new Draft dated today, due Net 15"""
        original = self.get_invoice(user_id, invoice_id)
        today = date.today()
        return self.create_invoice(
            user_id,
            {
                "customer": original.customer,
                "customer_id": original.customer_id,
                "customer_email": original.customer_email,
                "load_id": original.load_id,
                "invoice_date": today,
                "due_date": today + timedelta(days=15),
                "tax_rate": original.tax_rate,
                "total": original.total,
                "status": InvoiceStatus.DRAFT.value,
                "notes": original.notes,
                "terms": original.terms,
            },
            items=[
                {"description": i.description, "quantity": i.quantity, "unit_price": i.unit_price}
                for i in original.items
            ],
            activity=f"Invoice duplicated from {original.invoice_number}",
        )

    def get_stats(self, user_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        today = today or date.today()
        invoices = self.db.query(Invoice).filter(Invoice.user_id == user_id).all()
        stats = {"total": ZERO, "paid": ZERO, "pending": ZERO, "overdue": ZERO}
        for invoice in invoices:
            total = to_decimal(invoice.total)
            paid = to_decimal(invoice.amount_paid)
            stats["total"] += total
            if invoice.status in (InvoiceStatus.PAID.value, InvoiceStatus.PARTIALLY_PAID.value):
                stats["paid"] += paid
                if invoice.status == InvoiceStatus.PARTIALLY_PAID.value:
                    stats["pending"] += total - paid
            elif invoice.status == InvoiceStatus.OVERDUE.value:
                stats["overdue"] += total
            elif invoice.status == InvoiceStatus.CANCELLED.value:
                continue
            elif invoice.due_date and invoice.due_date < today:
                stats["overdue"] += total
            else:
                stats["pending"] += total
        result = {k: money_to_float(v) for k, v in stats.items()}
        result["count"] = len(invoices)
        return result

    def check_and_update_overdue(self, user_id: Optional[str] = None, today: Optional[date] = None) -> int:
        """Move Pending and Sent invoices past their due date to Overdue"""
        today = today or date.today()
        query = self.db.query(Invoice).filter(
            Invoice.status.in_([InvoiceStatus.PENDING.value, InvoiceStatus.SENT.value]),
            Invoice.due_date < today,
        )
        if user_id:
            query = query.filter(Invoice.user_id == user_id)
        invoices = query.all()
        for invoice in invoices:
            invoice.status = InvoiceStatus.OVERDUE.value
        self.db.flush()
        if invoices:
            logger.info(f"Marked {len(invoices)} invoices overdue")
        return len(invoices)

    def create_from_load(self, load: Load, mark_as_paid: bool = False, due_in_days: int = 15,
                         notes: Optional[str] = None) -> Invoice:
        """Invoice for a completed load: the base rate plus any additional charges"""
        today = date.today()
        items = [{
            "description": f"Transportation services: {load.origin} to {load.destination}",
            "quantity": 1,
            "unit_price": to_decimal(load.rate),
        }]
        if load.additional_charges and load.additional_charges > 0:
            items.append({
                "description": load.additional_charges_description or "Additional charges",
                "quantity": 1,
                "unit_price": load.additional_charges,
            })
        total = to_decimal(load.rate) + to_decimal(load.additional_charges)
        return self.create_invoice(
            load.user_id,
            {
                "customer": load.customer or "",
                "customer_id": load.customer_id,
                "load_id": load.id,
                "invoice_date": today,
                "due_date": today + timedelta(days=due_in_days),
                "status": InvoiceStatus.PAID.value if mark_as_paid else InvoiceStatus.PENDING.value,
                "amount_paid": total if mark_as_paid else 0,
                "payment_date": today if mark_as_paid else None,
                "notes": notes or f"Invoice for Load #{load.load_number}: {load.origin} to {load.destination}",
            },
            items=items,
            activity="Invoice created automatically upon load completion",
        )


def export_invoices_csv(invoices: List[Invoice]) -> str:
    if not invoices:
        return ""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for invoice in invoices:
        writer.writerow([
            invoice.invoice_number,
            invoice.customer,
            invoice.invoice_date.isoformat() if invoice.invoice_date else "",
            invoice.due_date.isoformat() if invoice.due_date else "",
            format_money(invoice.total),
            format_money(invoice.amount_paid),
            format_money(invoice.balance),
            invoice.status,
        ])
    return buffer.getvalue().rstrip("\n")
