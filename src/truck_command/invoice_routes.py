"""
Invoice API routes
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List
from datetime import date
import logging

from .db import get_db, User
from .auth import get_current_user
from .config import config
from .services.plan_policy import PlanPolicy, month_start
from .services.invoice_service import (
    InvoiceService,
    InvoiceNotFound,
    invoice_to_dict,
    export_invoices_csv,
    DATE_RANGES,
)
from .services.email_provider import EmailMessage, get_email_provider
from .services.email_templates import InvoiceEmailTemplate
from .services.money import money_to_float

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["invoices"])


class LineItemRequest(BaseModel):
    """Line item for invoice"""
    description: str = Field(..., max_length=500)
    quantity: float = Field(default=1, gt=0)
    unit_price: float = Field(..., ge=0)


class InvoiceRequest(BaseModel):
    customer: str = Field(..., max_length=200)
    customer_id: Optional[int] = None
    customer_email: Optional[str] = None
    load_id: Optional[int] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    tax_rate: float = Field(default=0, ge=0, le=100)
    total: Optional[float] = Field(None, ge=0)
    status: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=2000)
    terms: Optional[str] = Field(None, max_length=2000)
    items: List[LineItemRequest] = []


class InvoiceUpdateRequest(BaseModel):
    customer: Optional[str] = None
    customer_id: Optional[int] = None
    customer_email: Optional[str] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    tax_rate: Optional[float] = Field(None, ge=0, le=100)
    status: Optional[str] = None
    notes: Optional[str] = None
    terms: Optional[str] = None
    items: Optional[List[LineItemRequest]] = None


class PaymentRequest(BaseModel):
    amount: float = Field(..., gt=0)
    payment_date: Optional[date] = None
    payment_method: Optional[str] = None
    reference: Optional[str] = None
    notes: Optional[str] = None


class StatusRequest(BaseModel):
    status: str


class SendInvoiceEmailRequest(BaseModel):
    invoiceId: Optional[int] = None
    to: Optional[EmailStr] = None
    cc: Optional[str] = None
    bcc: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    includePaymentLink: bool = False


def _not_found(e: InvoiceNotFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _split_addresses(value: Optional[str]) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


@router.get("/invoices")
async def list_invoices(
    status_filter: Optional[str] = Query(None, alias="status"),
    search: Optional[str] = None,
    dateRange: Optional[str] = None,
    startDate: Optional[date] = None,
    endDate: Optional[date] = None,
    sortBy: Optional[str] = None,
    sortDirection: str = "desc",
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if dateRange and dateRange not in DATE_RANGES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid dateRange: {dateRange}")
    invoices = InvoiceService(db).list_invoices(
        current_user.id, status_filter, search, dateRange, startDate, endDate, sortBy, sortDirection
    )
    return {"invoices": [invoice_to_dict(i, include_items=False) for i in invoices]}


@router.get("/invoices/stats")
async def invoice_stats(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return InvoiceService(db).get_stats(current_user.id)


@router.get("/invoices/export")
async def export_invoices(
    status_filter: Optional[str] = Query(None, alias="status"),
    dateRange: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    invoices = InvoiceService(db).list_invoices(current_user.id, status_filter, date_range=dateRange)
    return Response(
        content=export_invoices_csv(invoices),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="invoices-{date.today().isoformat()}.csv"'},
    )


@router.post("/invoices/check-overdue")
async def check_overdue(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"updated": InvoiceService(db).check_and_update_overdue(current_user.id)}


@router.post("/invoices", status_code=status.HTTP_201_CREATED)
async def create_invoice(
    request: InvoiceRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service = InvoiceService(db)
    PlanPolicy(db, current_user).require_within_limit(
        "invoicesPerMonth", service.count_this_month(current_user.id, month_start())
    )
    data = request.model_dump(exclude={"items"})
    invoice = service.create_invoice(current_user.id, data, [item.model_dump() for item in request.items])
    return invoice_to_dict(invoice)


@router.get("/invoices/{invoice_id}")
async def get_invoice(
    invoice_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        invoice = InvoiceService(db).get_invoice(current_user.id, invoice_id)
    except InvoiceNotFound as e:
        raise _not_found(e)
    data = invoice_to_dict(invoice)
    data["payments"] = [
        {"id": p.id, "amount": money_to_float(p.amount), "payment_date": p.payment_date.isoformat(),
         "payment_method": p.payment_method, "reference": p.reference}
        for p in invoice.payments
    ]
    data["activities"] = [
        {"type": a.activity_type, "description": a.description, "created_at": a.created_at.isoformat()}
        for a in invoice.activities
    ]
    return data


@router.put("/invoices/{invoice_id}")
async def update_invoice(
    invoice_id: int,
    request: InvoiceUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    items = [item.model_dump() for item in request.items] if request.items is not None else None
    try:
        invoice = InvoiceService(db).update_invoice(
            current_user.id, invoice_id, request.model_dump(exclude={"items"}, exclude_unset=True), items
        )
    except InvoiceNotFound as e:
        raise _not_found(e)
    return invoice_to_dict(invoice)


@router.delete("/invoices/{invoice_id}")
async def delete_invoice(
    invoice_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        InvoiceService(db).delete_invoice(current_user.id, invoice_id)
    except InvoiceNotFound as e:
        raise _not_found(e)
    return {"success": True}


@router.post("/invoices/{invoice_id}/status")
async def update_invoice_status(
    invoice_id: int,
    request: StatusRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        invoice = InvoiceService(db).update_status(current_user.id, invoice_id, request.status)
    except InvoiceNotFound as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return invoice_to_dict(invoice, include_items=False)


@router.post("/invoices/{invoice_id}/payments")
async def record_payment(
    invoice_id: int,
    request: PaymentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service = InvoiceService(db)
    try:
        payment = service.record_payment(current_user.id, invoice_id, **request.model_dump())
    except InvoiceNotFound as e:
        raise _not_found(e)
    invoice = service.get_invoice(current_user.id, invoice_id)
    return {
        "payment": {"id": payment.id, "amount": money_to_float(payment.amount), "payment_date": payment.payment_date.isoformat()},
        "invoice": invoice_to_dict(invoice, include_items=False),
    }


@router.post("/invoices/{invoice_id}/mark-sent")
async def mark_invoice_sent(
    invoice_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        invoice = InvoiceService(db).mark_as_sent(current_user.id, invoice_id)
    except InvoiceNotFound as e:
        raise _not_found(e)
    return invoice_to_dict(invoice, include_items=False)


@router.post("/invoices/{invoice_id}/duplicate", status_code=status.HTTP_201_CREATED)
async def duplicate_invoice(
    invoice_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service = InvoiceService(db)
    PlanPolicy(db, current_user).require_within_limit(
        "invoicesPerMonth", service.count_this_month(current_user.id, month_start())
    )
    try:
        invoice = service.duplicate_invoice(current_user.id, invoice_id)
    except InvoiceNotFound as e:
        raise _not_found(e)
    return invoice_to_dict(invoice)


@router.post("/send-invoice-email")
async def send_invoice_email(
    request: SendInvoiceEmailRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Email an invoice to the customer and record the send"""
    if not request.invoiceId or not request.to or not request.subject or not request.message:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    service = InvoiceService(db)
    try:
        invoice = service.get_invoice(current_user.id, request.invoiceId)
    except InvoiceNotFound as e:
        raise _not_found(e)

    provider = get_email_provider()
    if not provider.is_available():
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Email service not configured")

    payment_link = f"{config.APP_URL}/pay/invoice/{invoice.id}" if request.includePaymentLink else None
    cc = _split_addresses(request.cc)
    sent = provider.send(EmailMessage(
        to=str(request.to),
        subject=request.subject,
        html_body=InvoiceEmailTemplate.render_html(invoice, request.message, current_user, payment_link),
        text_body=InvoiceEmailTemplate.render_plain_text(invoice, request.message, current_user, payment_link),
        reply_to=current_user.email,
        cc=cc,
        bcc=_split_addresses(request.bcc),
    ))
    if not sent:
        logger.error(f"Invoice email failed for invoice {invoice.id}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to send invoice email")

    recipient = str(request.to) + (f" (CC: {', '.join(cc)})" if cc else "")
    service.record_email_sent(invoice, recipient)
    return {"success": True, "message": "Invoice sent successfully"}
