"""
Fuel service - fuel purchases and their linked expense rows
"""
from typing import Optional, List, Dict, Any
from datetime import date
from sqlalchemy.orm import Session
import logging

from ..db.models import FuelEntry, Expense
from .expense_service import period_bounds
from .jurisdictions import get_state_name
from .money import ZERO, money_to_float, round_money, to_decimal

logger = logging.getLogger(__name__)

FUEL_FIELDS = (
    "date", "state", "state_name", "location", "gallons", "price_per_gallon", "total_amount",
    "vehicle_id", "odometer", "fuel_type", "payment_method", "receipt_image", "notes",
)


class FuelEntryNotFound(Exception):
    pass


def fuel_entry_to_dict(entry: FuelEntry) -> Dict[str, Any]:
    data = {
        field: (value.isoformat() if isinstance(value, date) else value)
        for field, value in ((f, getattr(entry, f)) for f in FUEL_FIELDS)
    }
    data["id"] = entry.id
    data["price_per_gallon"] = float(to_decimal(entry.price_per_gallon))
    data["total_amount"] = money_to_float(entry.total_amount)
    data["expense_id"] = entry.expense_id
    return data


class FuelService:
    def __init__(self, db: Session):
        self.db = db

    def list_entries(self, user_id: str, state: Optional[str] = None, vehicle_id: Optional[str] = None,
                     start_date: Optional[date] = None, end_date: Optional[date] = None) -> List[FuelEntry]:
        query = self.db.query(FuelEntry).filter(FuelEntry.user_id == user_id)
        if state:
            query = query.filter(FuelEntry.state == state)
        if vehicle_id:
            query = query.filter(FuelEntry.vehicle_id == vehicle_id)
        if start_date:
            query = query.filter(FuelEntry.date >= start_date)
        if end_date:
            query = query.filter(FuelEntry.date <= end_date)
        return query.order_by(FuelEntry.date.desc()).all()

    def get_entry(self, user_id: str, entry_id: int) -> FuelEntry:
        entry = self.db.query(FuelEntry).filter(FuelEntry.id == entry_id, FuelEntry.user_id == user_id).first()
        if not entry:
            raise FuelEntryNotFound("Fuel entry not found")
        return entry

    def create_entry(self, user_id: str, data: Dict[str, Any], create_expense: bool = False) -> FuelEntry:
        """Record a purchase; total defaults to gallons x price"""
        values = {k: v for k, v in data.items() if k in FUEL_FIELDS and v is not None}
        values["state"] = values["state"].upper()
        values.setdefault("state_name", get_state_name(values["state"]))
        values["price_per_gallon"] = to_decimal(values["price_per_gallon"])
        if "total_amount" in values:
            values["total_amount"] = round_money(values["total_amount"])
        else:
            values["total_amount"] = round_money(to_decimal(values["gallons"]) * values["price_per_gallon"])
        entry = FuelEntry(user_id=user_id, **values)
        self.db.add(entry)
        self.db.flush()
        if create_expense:
            self.link_expense(entry)
        return entry

    def update_entry(self, user_id: str, entry_id: int, data: Dict[str, Any]) -> FuelEntry:
        entry = self.get_entry(user_id, entry_id)
        for field in FUEL_FIELDS:
            if field in data and data[field] is not None:
                setattr(entry, field, data[field])
        if data.get("total_amount") is not None:
            entry.total_amount = round_money(data["total_amount"])
        if entry.expense_id:
            expense = self.db.query(Expense).filter(Expense.id == entry.expense_id).first()
            if expense:
                expense.amount = entry.total_amount
                expense.date = entry.date
        self.db.flush()
        return entry

    def delete_entry(self, user_id: str, entry_id: int, delete_expense: bool = True) -> None:
        entry = self.get_entry(user_id, entry_id)
        expense_id = entry.expense_id
        self.db.delete(entry)
        if delete_expense and expense_id:
            self.db.query(Expense).filter(Expense.id == expense_id, Expense.user_id == user_id).delete()
        self.db.flush()

    def link_expense(self, entry: FuelEntry) -> Expense:
        """Create the Fuel expense row mirroring a purchase"""
        expense = Expense(
            user_id=entry.user_id,
            description=f"Fuel - {entry.location or entry.state}",
            amount=entry.total_amount,
            date=entry.date,
            category="Fuel",
            payment_method=entry.payment_method or "Credit Card",
            notes=f"Vehicle: {entry.vehicle_id}, {entry.gallons} gallons at {entry.state}",
            receipt_image=entry.receipt_image,
            vehicle_id=entry.vehicle_id,
            deductible=True,
        )
        self.db.add(expense)
        self.db.flush()
        entry.expense_id = expense.id
        self.db.flush()
        return expense

    def sync_to_expenses(self, user_id: str) -> Dict[str, Any]:
        entries = self.db.query(FuelEntry).filter(
            FuelEntry.user_id == user_id, FuelEntry.expense_id.is_(None)
        ).all()
        if not entries:
            return {"syncedCount": 0, "message": "No new fuel entries to sync"}
        for entry in entries:
            self.link_expense(entry)
        return {
            "syncedCount": len(entries),
            "message": f"Successfully synced {len(entries)} fuel entries to expenses",
        }

    def get_stats(self, user_id: str, period: str = "quarter", today: Optional[date] = None) -> Dict[str, Any]:
        start, end = period_bounds(period, today)
        entries = self.list_entries(user_id, start_date=start, end_date=end)

        by_state: Dict[str, Dict[str, Any]] = {}
        for entry in entries:
            state = by_state.setdefault(entry.state, {"gallons": 0.0, "amount": ZERO, "purchases": 0})
            state["gallons"] += entry.gallons or 0
            state["amount"] += to_decimal(entry.total_amount)
            state["purchases"] += 1

        total_gallons = sum(e.gallons or 0 for e in entries)
        total_amount = sum((to_decimal(e.total_amount) for e in entries), ZERO)
        return {
            "totalGallons": round(total_gallons, 3),
            "totalAmount": money_to_float(total_amount),
            "avgPricePerGallon": round(float(total_amount) / total_gallons, 3) if total_gallons > 0 else 0,
            "uniqueStates": len(by_state),
            "entryCount": len(entries),
            "byState": {
                code: {"gallons": round(s["gallons"], 3), "amount": money_to_float(s["amount"]), "purchases": s["purchases"]}
                for code, s in sorted(by_state.items())
            },
        }
