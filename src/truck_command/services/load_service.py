"""
Load service - dispatching, load completion and factoring
"""
from typing import Optional, List, Dict, Any
from datetime import datetime, date
from sqlalchemy.orm import Session
from sqlalchemy import or_
import random
import logging

from ..db.models import Load, LoadStatus, Earning, Driver
from .invoice_service import InvoiceService, invoice_to_dict
from .money import ZERO, money_to_float, round_money, to_decimal

logger = logging.getLogger(__name__)

LOAD_FIELDS = (
    "customer", "customer_id", "origin", "destination", "pickup_date", "delivery_date",
    "status", "driver", "driver_id", "truck_id", "rate", "distance", "description", "notes",
)

FACTORING_PERIODS = ("month", "year", "all")


class LoadNotFound(Exception):
    pass


def load_to_dict(load: Load) -> Dict[str, Any]:
    return {
        "id": load.id,
        "loadNumber": load.load_number,
        "customer": load.customer,
        "customerId": load.customer_id,
        "origin": load.origin,
        "destination": load.destination,
        "pickupDate": load.pickup_date.isoformat() if load.pickup_date else None,
        "deliveryDate": load.delivery_date.isoformat() if load.delivery_date else None,
        "status": load.status,
        "driver": load.driver or "",
        "driverId": load.driver_id,
        "truckId": load.truck_id,
        "rate": money_to_float(to_decimal(load.rate)),
        "distance": load.distance or 0,
        "description": load.description or "",
        "notes": load.notes or "",
        "completedAt": load.completed_at.isoformat() if load.completed_at else None,
        "actualDeliveryDate": load.actual_delivery_date.isoformat() if load.actual_delivery_date else None,
        "finalRate": money_to_float(load.final_rate),
        "factored": load.factored,
        "factoringCompany": load.factoring_company,
        "factoredAmount": money_to_float(load.factored_amount),
    }


class LoadService:
    """Service for managing loads"""

    def __init__(self, db: Session):
        self.db = db

    def generate_load_number(self) -> str:
        return f"L{random.randint(10000, 99999)}"

    def count_this_month(self, user_id: str, since: datetime) -> int:
        return self.db.query(Load).filter(Load.user_id == user_id, Load.created_at >= since).count()

    def list_loads(self, user_id: str, status: Optional[str] = None, search: Optional[str] = None,
                   driver: Optional[str] = None) -> List[Load]:
        query = self.db.query(Load).filter(Load.user_id == user_id)
        if status and status != "All":
            query = query.filter(Load.status == status)
        if driver:
            query = query.filter(Load.driver == driver)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                Load.load_number.ilike(pattern),
                Load.customer.ilike(pattern),
                Load.origin.ilike(pattern),
                Load.destination.ilike(pattern),
            ))
        return query.order_by(Load.created_at.desc()).all()

    def get_load(self, user_id: str, load_id: int) -> Load:
        load = self.db.query(Load).filter(Load.id == load_id, Load.user_id == user_id).first()
        if not load:
            raise LoadNotFound("Load not found")
        return load

    def create_load(self, user_id: str, data: Dict[str, Any]) -> Load:
        load = Load(
            user_id=user_id,
            load_number=data.get("load_number") or self.generate_load_number(),
            status=data.get("status") or LoadStatus.PENDING.value,
            rate=round_money(data.get("rate")),
            distance=float(data.get("distance") or 0),
        )
        for field in LOAD_FIELDS:
            if field not in ("status", "rate", "distance") and data.get(field) is not None:
                setattr(load, field, data[field])
        self.db.add(load)
        self.db.flush()
        logger.info(f"Created load {load.load_number} for user {user_id}")
        return load

    def update_load(self, user_id: str, load_id: int, data: Dict[str, Any]) -> Load:
        load = self.get_load(user_id, load_id)
        for field in LOAD_FIELDS:
            if field in data and data[field] is not None:
                setattr(load, field, data[field])
        self.db.flush()
        return load

    def delete_load(self, user_id: str, load_id: int) -> None:
        load = self.get_load(user_id, load_id)
        self.db.delete(load)
        self.db.flush()

    def assign_driver(self, user_id: str, load_id: int, driver_name: str,
                      driver_id: Optional[int] = None) -> Load:
        """Assigning a driver moves the load to Assigned"""
        load = self.get_load(user_id, load_id)
        if driver_id is not None:
            driver = self.db.query(Driver).filter(Driver.id == driver_id, Driver.user_id == user_id).first()
            if driver:
                driver_name = driver_name or driver.full_name
                load.driver_id = driver.id
        load.driver = driver_name
        load.status = LoadStatus.ASSIGNED.value
        self.db.flush()
        return load

    def update_status(self, user_id: str, load_id: int, status: str) -> Load:
        if status not in [s.value for s in LoadStatus]:
            raise ValueError(f"Invalid status: {status}")
        load = self.get_load(user_id, load_id)
        load.status = status
        if status == LoadStatus.COMPLETED.value and not load.completed_at:
            load.completed_at = datetime.utcnow()
        self.db.flush()
        return load

    def get_stats(self, user_id: str) -> Dict[str, int]:
        loads = self.db.query(Load.status).filter(Load.user_id == user_id).all()
        statuses = [s for (s,) in loads]
        return {
            "total": len(statuses),
            "pending": statuses.count(LoadStatus.PENDING.value),
            "assigned": statuses.count(LoadStatus.ASSIGNED.value),
            "inTransit": statuses.count(LoadStatus.IN_TRANSIT.value),
            "completed": statuses.count(LoadStatus.COMPLETED.value),
        }

    def complete_load(self, user_id: str, load_id: int, completion: Dict[str, Any]) -> Dict[str, Any]:
        """
        Mark a load delivered and settle it

        The final rate is the base rate plus additional charges. A factored
        load records an Earning for the factoring company; otherwise an
        invoice due in 15 days is created when requested.

        Args:
            completion: deliveryDate, deliveryTime, receivedBy, notes, rating,
                documents, additionalMileage, additionalCharges,
                additionalChargesDescription, useFactoring, factoringCompany,
                generateInvoice, markPaid
        """
        load = self.get_load(user_id, load_id)
        delivery_date = completion.get("deliveryDate") or date.today()
        additional_charges = round_money(completion.get("additionalCharges"))
        total_rate = to_decimal(load.rate) + additional_charges
        now = datetime.utcnow()

        load.status = LoadStatus.COMPLETED.value
        load.actual_delivery_date = delivery_date
        load.actual_delivery_time = completion.get("deliveryTime")
        load.received_by = completion.get("receivedBy")
        load.completion_notes = completion.get("notes")
        load.delivery_rating = completion.get("rating")
        load.pod_documents = completion.get("documents") or []
        load.additional_mileage = float(completion.get("additionalMileage") or 0)
        load.additional_charges = additional_charges
        load.additional_charges_description = completion.get("additionalChargesDescription")
        load.completed_at = now
        load.final_rate = total_rate

        use_factoring = bool(completion.get("useFactoring"))
        generate_invoice = bool(completion.get("generateInvoice"))
        invoice = None
        earning = None

        if use_factoring:
            load.factored = True
            load.factoring_company = completion.get("factoringCompany")
            load.factored_at = now
            load.factored_amount = total_rate
            earning = Earning(
                user_id=user_id,
                load_id=load.id,
                source="Factoring",
                amount=total_rate,
                date=delivery_date,
                description=f"Factored load #{load.load_number}: {load.origin} to {load.destination}",
                factoring_company=load.factoring_company,
            )
            self.db.add(earning)
        elif generate_invoice:
            invoice = InvoiceService(self.db).create_from_load(
                load,
                mark_as_paid=bool(completion.get("markPaid")),
                due_in_days=15,
                notes=f"Invoice for Load #{load.load_number}: {load.origin} to {load.destination}",
            )

        self.db.flush()
        logger.info(f"Completed load {load.load_number} (factoring={use_factoring}, invoice={invoice is not None})")
        return {
            "success": True,
            "load": load_to_dict(load),
            "invoice": invoice_to_dict(invoice) if invoice else None,
            "earnings": {"id": earning.id, "amount": money_to_float(earning.amount), "date": earning.date.isoformat()} if earning else None,
            "useFactoring": use_factoring,
            "generateInvoice": generate_invoice,
        }

    def get_factoring_stats(self, user_id: str, period: str = "month",
                            today: Optional[date] = None) -> Dict[str, Any]:
        """
        Totals for factored loads in the period

        Fees are not tracked per load, so net equals gross.
        """
        if period not in FACTORING_PERIODS:
            raise ValueError(f"Invalid period: {period}")
        today = today or date.today()
        query = self.db.query(Load).filter(Load.user_id == user_id, Load.factored.is_(True))
        if period == "month":
            query = query.filter(Load.factored_at >= datetime(today.year, today.month, 1))
        elif period == "year":
            query = query.filter(Load.factored_at >= datetime(today.year, 1, 1))
        loads = query.all()

        total = money_to_float(sum((to_decimal(l.factored_amount) for l in loads), ZERO))
        return {
            "period": period,
            "count": len(loads),
            "totalAmount": total,
            "totalNetAmount": total,
            "totalFees": 0,
            "averageFeePercent": 0,
        }

    def list_factored_loads(self, user_id: str) -> List[Load]:
        return self.db.query(Load).filter(
            Load.user_id == user_id, Load.factored.is_(True)
        ).order_by(Load.factored_at.desc()).all()
