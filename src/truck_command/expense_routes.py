"""
Expense and fuel API routes
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Optional
import datetime
import logging

from .db import get_db, User
from .db.models import EXPENSE_CATEGORIES
from .auth import get_current_user
from .services.plan_policy import PlanPolicy
from .services.expense_service import ExpenseService, ExpenseNotFound, expense_to_dict, PERIODS
from .services.fuel_service import FuelService, FuelEntryNotFound, fuel_entry_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["expenses"])


class ExpenseRequest(BaseModel):
    description: str = Field(..., max_length=500)
    amount: float = Field(..., ge=0)
    date: datetime.date
    category: str
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    receipt_image: Optional[str] = None
    vehicle_id: Optional[str] = None
    deductible: bool = True


class ExpenseUpdateRequest(BaseModel):
    description: Optional[str] = None
    amount: Optional[float] = Field(None, ge=0)
    date: Optional[datetime.date] = None
    category: Optional[str] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    receipt_image: Optional[str] = None
    vehicle_id: Optional[str] = None
    deductible: Optional[bool] = None


class FuelEntryRequest(BaseModel):
    date: datetime.date
    state: str = Field(..., min_length=2, max_length=2)
    location: Optional[str] = None
    gallons: float = Field(..., gt=0)
    price_per_gallon: float = Field(..., ge=0)
    total_amount: Optional[float] = Field(None, ge=0)
    vehicle_id: Optional[str] = None
    odometer: Optional[float] = None
    fuel_type: str = "Diesel"
    payment_method: Optional[str] = None
    receipt_image: Optional[str] = None
    notes: Optional[str] = None
    createExpense: bool = False


class FuelEntryUpdateRequest(BaseModel):
    date: Optional[datetime.date] = None
    state: Optional[str] = Field(None, min_length=2, max_length=2)
    location: Optional[str] = None
    gallons: Optional[float] = Field(None, gt=0)
    price_per_gallon: Optional[float] = Field(None, ge=0)
    total_amount: Optional[float] = Field(None, ge=0)
    vehicle_id: Optional[str] = None
    odometer: Optional[float] = None
    fuel_type: Optional[str] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None


def _check_period(period: str) -> None:
    if period not in PERIODS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid period: {period}")


@router.get("/expenses")
async def list_expenses(
    category: Optional[str] = None,
    search: Optional[str] = None,
    startDate: Optional[datetime.date] = None,
    endDate: Optional[datetime.date] = None,
    vehicleId: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    expenses = ExpenseService(db).list_expenses(current_user.id, category, search, startDate, endDate, vehicleId)
    return {"expenses": [expense_to_dict(e) for e in expenses], "categories": EXPENSE_CATEGORIES}


@router.get("/expenses/stats")
async def expense_stats(
    period: str = "month",
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _check_period(period)
    return ExpenseService(db).get_stats(current_user.id, period)


@router.post("/expenses", status_code=status.HTTP_201_CREATED)
async def create_expense(
    request: ExpenseRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        expense = ExpenseService(db).create_expense(current_user.id, request.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return expense_to_dict(expense)


@router.put("/expenses/{expense_id}")
async def update_expense(
    expense_id: int,
    request: ExpenseUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        expense = ExpenseService(db).update_expense(current_user.id, expense_id, request.model_dump(exclude_unset=True))
    except ExpenseNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return expense_to_dict(expense)


@router.delete("/expenses/{expense_id}")
async def delete_expense(
    expense_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        ExpenseService(db).delete_expense(current_user.id, expense_id)
    except ExpenseNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return {"success": True}


@router.get("/fuel")
async def list_fuel_entries(
    state: Optional[str] = None,
    vehicleId: Optional[str] = None,
    startDate: Optional[datetime.date] = None,
    endDate: Optional[datetime.date] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    entries = FuelService(db).list_entries(current_user.id, state, vehicleId, startDate, endDate)
    return {"entries": [fuel_entry_to_dict(e) for e in entries]}


@router.get("/fuel/stats")
async def fuel_stats(
    period: str = Query("quarter"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _check_period(period)
    return FuelService(db).get_stats(current_user.id, period)


@router.post("/fuel", status_code=status.HTTP_201_CREATED)
async def create_fuel_entry(
    request: FuelEntryRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    entry = FuelService(db).create_entry(
        current_user.id, request.model_dump(exclude={"createExpense"}), create_expense=request.createExpense
    )
    return fuel_entry_to_dict(entry)


@router.post("/fuel/sync-expenses")
async def sync_fuel_to_expenses(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    PlanPolicy(db, current_user).require_feature("fuelTrackerSync")
    return FuelService(db).sync_to_expenses(current_user.id)


@router.put("/fuel/{entry_id}")
async def update_fuel_entry(
    entry_id: int,
    request: FuelEntryUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        entry = FuelService(db).update_entry(current_user.id, entry_id, request.model_dump(exclude_unset=True))
    except FuelEntryNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return fuel_entry_to_dict(entry)


@router.delete("/fuel/{entry_id}")
async def delete_fuel_entry(
    entry_id: int,
    deleteExpense: bool = True,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        FuelService(db).delete_entry(current_user.id, entry_id, deleteExpense)
    except FuelEntryNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return {"success": True}
