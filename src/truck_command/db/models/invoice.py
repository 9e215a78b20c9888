"""
Invoice models

Invoices belong to a user and carry line items, recorded payments and an
activity trail. Money is Numeric(12, 2) in dollars.
"""
from sqlalchemy import Column, Integer, String, Numeric, Date, DateTime, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from decimal import Decimal
import enum

from ..base import Base
from ...services.money import round_money, to_decimal


class InvoiceStatus(str, enum.Enum):
    """Invoice status enum"""
    DRAFT = "Draft"
    PENDING = "Pending"
    SENT = "Sent"
    PAID = "Paid"
    PARTIALLY_PAID = "Partially Paid"
    OVERDUE = "Overdue"
    CANCELLED = "Cancelled"


class Invoice(Base):
    """Customer invoice"""
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    invoice_number = Column(String(50), nullable=False, index=True)  # INV-2026-0001
    customer = Column(String, nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    customer_email = Column(String, nullable=True)
    load_id = Column(Integer, ForeignKey("loads.id"), nullable=True, index=True)

    invoice_date = Column(Date, nullable=False, index=True)
    due_date = Column(Date, nullable=False, index=True)

    subtotal = Column(Numeric(12, 2), default=0, nullable=False)
    tax_rate = Column(Numeric(6, 3), default=0, nullable=False)  # percent
    tax_amount = Column(Numeric(12, 2), default=0, nullable=False)
    total = Column(Numeric(12, 2), default=0, nullable=False)
    amount_paid = Column(Numeric(12, 2), default=0, nullable=False)

    status = Column(String(20), default=InvoiceStatus.DRAFT.value, nullable=False, index=True)
    payment_date = Column(Date, nullable=True)
    last_sent = Column(DateTime, nullable=True)

    notes = Column(Text, nullable=True)
    terms = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    items = relationship("InvoiceItem", back_populates="invoice", cascade="all, delete-orphan",
                         order_by="InvoiceItem.id")
    payments = relationship("InvoicePayment", back_populates="invoice", cascade="all, delete-orphan")
    activities = relationship("InvoiceActivity", back_populates="invoice", cascade="all, delete-orphan",
                              order_by="InvoiceActivity.created_at.desc()")

    __table_args__ = (
        UniqueConstraint("user_id", "invoice_number", name="uq_invoices_user_number"),
    )

    @property
    def balance(self) -> Decimal:
        return round_money(to_decimal(self.total) - to_decimal(self.amount_paid))


class InvoiceItem(Base):
    """Invoice line item"""
    __tablename__ = "invoice_items"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    description = Column(String, nullable=False)
    quantity = Column(Numeric(10, 2), default=1, nullable=False)
    unit_price = Column(Numeric(12, 2), default=0, nullable=False)

    invoice = relationship("Invoice", back_populates="items")

    @property
    def amount(self) -> Decimal:
        return round_money(to_decimal(self.quantity) * to_decimal(self.unit_price))


class InvoicePayment(Base):
    """Payment recorded against an invoice"""
    __tablename__ = "invoice_payments"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    payment_date = Column(Date, nullable=False)
    payment_method = Column(String, nullable=True)
    reference = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    invoice = relationship("Invoice", back_populates="payments")


class InvoiceActivity(Base):
    """Activity trail entry ('created', 'updated', 'status_change', 'payment', 'email')"""
    __tablename__ = "invoice_activities"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    activity_type = Column(String(30), nullable=False)
    description = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    invoice = relationship("Invoice", back_populates="activities")
