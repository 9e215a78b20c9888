"""
Customer service
"""
from typing import Optional, List, Dict, Any
from sqlalchemy.orm import Session
from sqlalchemy import or_
import logging

from ..db.models import Customer, Invoice
from .money import ZERO, money_to_float, to_decimal

logger = logging.getLogger(__name__)

CUSTOMER_FIELDS = (
    "name", "company_name", "email", "phone", "address", "city", "state", "zip",
    "customer_type", "status", "notes",
)


class CustomerNotFound(Exception):
    pass


def customer_to_dict(customer: Customer) -> Dict[str, Any]:
    data = {field: getattr(customer, field) for field in CUSTOMER_FIELDS}
    data["id"] = customer.id
    data["created_at"] = customer.created_at.isoformat() if customer.created_at else None
    return data


class CustomerService:
    def __init__(self, db: Session):
        self.db = db

    def list_customers(self, user_id: str, search: Optional[str] = None,
                       customer_type: Optional[str] = None, status: Optional[str] = None) -> List[Customer]:
        query = self.db.query(Customer).filter(Customer.user_id == user_id)
        if customer_type:
            query = query.filter(Customer.customer_type == customer_type)
        if status:
            query = query.filter(Customer.status == status)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                Customer.name.ilike(pattern),
                Customer.company_name.ilike(pattern),
                Customer.email.ilike(pattern),
            ))
        return query.order_by(Customer.name).all()

    def count_customers(self, user_id: str) -> int:
        return self.db.query(Customer).filter(Customer.user_id == user_id).count()

    def get_customer(self, user_id: str, customer_id: int) -> Customer:
        customer = self.db.query(Customer).filter(Customer.id == customer_id, Customer.user_id == user_id).first()
        if not customer:
            raise CustomerNotFound("Customer not found")
        return customer

    def create_customer(self, user_id: str, data: Dict[str, Any]) -> Customer:
        customer = Customer(user_id=user_id, **{
            k: v for k, v in data.items() if k in CUSTOMER_FIELDS and v is not None
        })
        self.db.add(customer)
        self.db.flush()
        return customer

    def update_customer(self, user_id: str, customer_id: int, data: Dict[str, Any]) -> Customer:
        customer = self.get_customer(user_id, customer_id)
        for field in CUSTOMER_FIELDS:
            if field in data and data[field] is not None:
                setattr(customer, field, data[field])
        self.db.flush()
        return customer

    def delete_customer(self, user_id: str, customer_id: int) -> None:
        customer = self.get_customer(user_id, customer_id)
        # Invoices keep the customer name as text
        self.db.query(Invoice).filter(
            Invoice.customer_id == customer.id, Invoice.user_id == user_id
        ).update({Invoice.customer_id: None})
        self.db.delete(customer)
        self.db.flush()

    def get_top_customers(self, user_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        """Customers ranked by invoiced revenue"""
        revenue: Dict[str, Dict[str, Any]] = {}
        for invoice in self.db.query(Invoice).filter(Invoice.user_id == user_id).all():
            key = invoice.customer or "Unknown"
            item = revenue.setdefault(key, {"customer": key, "revenue": ZERO, "invoiceCount": 0})
            item["revenue"] += to_decimal(invoice.total)
            item["invoiceCount"] += 1
        ranked = sorted(revenue.values(), key=lambda r: r["revenue"], reverse=True)
        return [{**r, "revenue": money_to_float(r["revenue"])} for r in ranked[:limit]]
