"""
Expense service
"""
from typing import Optional, List, Dict, Any, Tuple
from datetime import date, timedelta
from sqlalchemy.orm import Session
from sqlalchemy import or_
import calendar
import logging

from ..db.models import Expense, EXPENSE_CATEGORIES
from .money import ZERO, money_to_float, round_money, to_decimal

logger = logging.getLogger(__name__)

EXPENSE_FIELDS = (
    "description", "amount", "date", "category", "payment_method", "notes",
    "receipt_image", "vehicle_id", "deductible",
)

PERIODS = ("month", "lastMonth", "quarter", "year", "all")


class ExpenseNotFound(Exception):
    pass


def period_bounds(period: str, today: Optional[date] = None) -> Tuple[Optional[date], Optional[date]]:
    """Inclusive date bounds for a reporting period; (None, None) for 'all'"""
    today = today or date.today()
    if period == "month":
        return date(today.year, today.month, 1), date(today.year, today.month,
                                                      calendar.monthrange(today.year, today.month)[1])
    if period == "lastMonth":
        last = date(today.year, today.month, 1) - timedelta(days=1)
        return date(last.year, last.month, 1), last
    if period == "quarter":
        first_month = (today.month - 1) // 3 * 3 + 1
        last_month = first_month + 2
        return date(today.year, first_month, 1), date(today.year, last_month,
                                                      calendar.monthrange(today.year, last_month)[1])
    if period == "year":
        return date(today.year, 1, 1), date(today.year, 12, 31)
    return None, None


def expense_to_dict(expense: Expense) -> Dict[str, Any]:
    data = {
        field: (value.isoformat() if isinstance(value, date) else value)
        for field, value in ((f, getattr(expense, f)) for f in EXPENSE_FIELDS)
    }
    data["id"] = expense.id
    data["amount"] = money_to_float(expense.amount)
    return data


class ExpenseService:
    """Service for managing expenses"""

    def __init__(self, db: Session):
        self.db = db

    def list_expenses(self, user_id: str, category: Optional[str] = None, search: Optional[str] = None,
                      start_date: Optional[date] = None, end_date: Optional[date] = None,
                      vehicle_id: Optional[str] = None) -> List[Expense]:
        query = self.db.query(Expense).filter(Expense.user_id == user_id)
        if category and category != "All":
            query = query.filter(Expense.category == category)
        if vehicle_id:
            query = query.filter(Expense.vehicle_id == vehicle_id)
        if start_date:
            query = query.filter(Expense.date >= start_date)
        if end_date:
            query = query.filter(Expense.date <= end_date)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(Expense.description.ilike(pattern), Expense.notes.ilike(pattern)))
        return query.order_by(Expense.date.desc()).all()

    def get_expense(self, user_id: str, expense_id: int) -> Expense:
        expense = self.db.query(Expense).filter(Expense.id == expense_id, Expense.user_id == user_id).first()
        if not expense:
            raise ExpenseNotFound("Expense not found")
        return expense

    def create_expense(self, user_id: str, data: Dict[str, Any]) -> Expense:
        if data.get("category") not in EXPENSE_CATEGORIES:
            raise ValueError(f"Invalid category. Valid categories: {', '.join(EXPENSE_CATEGORIES)}")
        if data.get("amount") is not None:
            data = {**data, "amount": round_money(data["amount"])}
        expense = Expense(user_id=user_id, **{
            k: v for k, v in data.items() if k in EXPENSE_FIELDS and v is not None
        })
        self.db.add(expense)
        self.db.flush()
        return expense

    def update_expense(self, user_id: str, expense_id: int, data: Dict[str, Any]) -> Expense:
        expense = self.get_expense(user_id, expense_id)
        if data.get("category") is not None and data["category"] not in EXPENSE_CATEGORIES:
            raise ValueError(f"Invalid category. Valid categories: {', '.join(EXPENSE_CATEGORIES)}")
        if data.get("amount") is not None:
            data = {**data, "amount": round_money(data["amount"])}
        for field in EXPENSE_FIELDS:
            if field in data and data[field] is not None:
                setattr(expense, field, data[field])
        self.db.flush()
        return expense

    def delete_expense(self, user_id: str, expense_id: int) -> None:
        self.db.delete(self.get_expense(user_id, expense_id))
        self.db.flush()

    def get_stats(self, user_id: str, period: str = "month", today: Optional[date] = None) -> Dict[str, Any]:
        """Total and per-category amounts; every known category is present"""
        start, end = period_bounds(period, today)
        expenses = self.list_expenses(user_id, start_date=start, end_date=end)
        by_category = {category: ZERO for category in EXPENSE_CATEGORIES}
        for expense in expenses:
            if expense.category:
                by_category[expense.category] = by_category.get(expense.category, ZERO) + to_decimal(expense.amount)
        return {
            "total": money_to_float(sum((to_decimal(e.amount) for e in expenses), ZERO)),
            "byCategory": {k: money_to_float(v) for k, v in by_category.items()},
        }
