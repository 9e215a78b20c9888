"""
Load (dispatching) and factoring API routes
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date
import logging

from .db import get_db, User
from .auth import get_current_user
from .services.plan_policy import PlanPolicy, month_start
from .services.load_service import LoadService, LoadNotFound, load_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["loads"])


class LoadRequest(BaseModel):
    load_number: Optional[str] = Field(None, max_length=30)
    customer: Optional[str] = None
    customer_id: Optional[int] = None
    origin: str
    destination: str
    pickup_date: Optional[date] = None
    delivery_date: Optional[date] = None
    status: Optional[str] = None
    driver: Optional[str] = None
    driver_id: Optional[int] = None
    truck_id: Optional[int] = None
    rate: float = Field(default=0, ge=0)
    distance: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    notes: Optional[str] = None


class LoadUpdateRequest(BaseModel):
    customer: Optional[str] = None
    customer_id: Optional[int] = None
    origin: Optional[str] = None
    destination: Optional[str] = None
    pickup_date: Optional[date] = None
    delivery_date: Optional[date] = None
    driver: Optional[str] = None
    driver_id: Optional[int] = None
    truck_id: Optional[int] = None
    rate: Optional[float] = Field(None, ge=0)
    distance: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    notes: Optional[str] = None


class AssignDriverRequest(BaseModel):
    driver: Optional[str] = ""
    driverId: Optional[int] = None


class LoadStatusRequest(BaseModel):
    status: str


class CompleteLoadRequest(BaseModel):
    deliveryDate: Optional[date] = None
    deliveryTime: Optional[str] = None
    receivedBy: Optional[str] = None
    notes: Optional[str] = None
    rating: Optional[int] = Field(None, ge=1, le=5)
    documents: List[dict] = []
    additionalMileage: Optional[float] = Field(None, ge=0)
    additionalCharges: Optional[float] = Field(None, ge=0)
    additionalChargesDescription: Optional[str] = None
    useFactoring: bool = False
    factoringCompany: Optional[str] = None
    generateInvoice: bool = True
    markPaid: bool = False


def _not_found(e: LoadNotFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/loads")
async def list_loads(
    status_filter: Optional[str] = Query(None, alias="status"),
    search: Optional[str] = None,
    driver: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    loads = LoadService(db).list_loads(current_user.id, status_filter, search, driver)
    return {"loads": [load_to_dict(l) for l in loads]}


@router.get("/loads/stats")
async def load_stats(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return LoadService(db).get_stats(current_user.id)


@router.post("/loads", status_code=status.HTTP_201_CREATED)
async def create_load(
    request: LoadRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service = LoadService(db)
    PlanPolicy(db, current_user).require_within_limit(
        "loadsPerMonth", service.count_this_month(current_user.id, month_start())
    )
    load = service.create_load(current_user.id, request.model_dump())
    return load_to_dict(load)


@router.get("/loads/{load_id}")
async def get_load(
    load_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return load_to_dict(LoadService(db).get_load(current_user.id, load_id))
    except LoadNotFound as e:
        raise _not_found(e)


@router.put("/loads/{load_id}")
async def update_load(
    load_id: int,
    request: LoadUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        load = LoadService(db).update_load(current_user.id, load_id, request.model_dump(exclude_unset=True))
    except LoadNotFound as e:
        raise _not_found(e)
    return load_to_dict(load)


@router.delete("/loads/{load_id}")
async def delete_load(
    load_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        LoadService(db).delete_load(current_user.id, load_id)
    except LoadNotFound as e:
        raise _not_found(e)
    return {"success": True}


@router.post("/loads/{load_id}/assign")
async def assign_driver(
    load_id: int,
    request: AssignDriverRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    PlanPolicy(db, current_user).require_feature("loadAssignment")
    if not request.driver and request.driverId is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Driver is required")
    try:
        load = LoadService(db).assign_driver(current_user.id, load_id, request.driver or "", request.driverId)
    except LoadNotFound as e:
        raise _not_found(e)
    return load_to_dict(load)


@router.post("/loads/{load_id}/status")
async def update_load_status(
    load_id: int,
    request: LoadStatusRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        load = LoadService(db).update_status(current_user.id, load_id, request.status)
    except LoadNotFound as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return load_to_dict(load)


@router.post("/loads/{load_id}/complete")
async def complete_load(
    load_id: int,
    request: CompleteLoadRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Mark delivered, then factor the load or invoice the customer"""
    if request.useFactoring and not request.factoringCompany:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Factoring company is required")
    try:
        return LoadService(db).complete_load(current_user.id, load_id, request.model_dump())
    except LoadNotFound as e:
        raise _not_found(e)


@router.get("/factoring/stats")
async def factoring_stats(
    period: str = "month",
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return LoadService(db).get_factoring_stats(current_user.id, period)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/factoring/loads")
async def factored_loads(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"loads": [load_to_dict(l) for l in LoadService(db).list_factored_loads(current_user.id)]}
