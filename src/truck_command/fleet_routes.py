"""
Fleet API routes - trucks and drivers
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field, EmailStr
from typing import Optional
from datetime import date
import logging

from .db import get_db, User
from .auth import get_current_user
from .services.plan_policy import PlanPolicy
from .services.fleet_service import (
    FleetService,
    FleetRecordNotFound,
    vehicle_to_dict,
    driver_to_dict,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/fleet", tags=["fleet"])


class VehicleRequest(BaseModel):
    name: str = Field(..., max_length=100)
    vehicle_type: Optional[str] = "Truck"
    vin: Optional[str] = Field(None, max_length=17)
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = Field(None, ge=1950, le=2100)
    license_plate: Optional[str] = None
    status: Optional[str] = "Active"
    notes: Optional[str] = None


class VehicleUpdateRequest(BaseModel):
    name: Optional[str] = None
    vehicle_type: Optional[str] = None
    vin: Optional[str] = Field(None, max_length=17)
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = Field(None, ge=1950, le=2100)
    license_plate: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None


class DriverRequest(BaseModel):
    first_name: str
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    license_number: Optional[str] = None
    license_state: Optional[str] = Field(None, max_length=2)
    license_expiry: Optional[date] = None
    medical_card_expiry: Optional[date] = None
    hire_date: Optional[date] = None
    status: Optional[str] = "Active"
    notes: Optional[str] = None


class DriverUpdateRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    license_number: Optional[str] = None
    license_state: Optional[str] = Field(None, max_length=2)
    license_expiry: Optional[date] = None
    medical_card_expiry: Optional[date] = None
    hire_date: Optional[date] = None
    status: Optional[str] = None
    notes: Optional[str] = None


def _not_found(e: FleetRecordNotFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/stats")
async def fleet_stats(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return FleetService(db).get_stats(current_user.id)


@router.get("/vehicles")
async def list_vehicles(
    status_filter: Optional[str] = Query(None, alias="status"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"vehicles": [vehicle_to_dict(v) for v in FleetService(db).list_vehicles(current_user.id, status_filter)]}


@router.post("/vehicles", status_code=status.HTTP_201_CREATED)
async def create_vehicle(
    request: VehicleRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service = FleetService(db)
    PlanPolicy(db, current_user).require_within_limit("trucks", service.count_vehicles(current_user.id))
    return vehicle_to_dict(service.create_vehicle(current_user.id, request.model_dump()))


@router.get("/vehicles/{vehicle_id}")
async def get_vehicle(
    vehicle_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return vehicle_to_dict(FleetService(db).get_vehicle(current_user.id, vehicle_id))
    except FleetRecordNotFound as e:
        raise _not_found(e)


@router.put("/vehicles/{vehicle_id}")
async def update_vehicle(
    vehicle_id: int,
    request: VehicleUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        vehicle = FleetService(db).update_vehicle(current_user.id, vehicle_id, request.model_dump(exclude_unset=True))
    except FleetRecordNotFound as e:
        raise _not_found(e)
    return vehicle_to_dict(vehicle)


@router.delete("/vehicles/{vehicle_id}")
async def delete_vehicle(
    vehicle_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        FleetService(db).delete_vehicle(current_user.id, vehicle_id)
    except FleetRecordNotFound as e:
        raise _not_found(e)
    return {"success": True}


@router.get("/drivers")
async def list_drivers(
    status_filter: Optional[str] = Query(None, alias="status"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"drivers": [driver_to_dict(d) for d in FleetService(db).list_drivers(current_user.id, status_filter)]}


@router.get("/drivers/expiring")
async def expiring_driver_documents(
    days: int = 30,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return FleetService(db).get_expiring_documents(current_user.id, days=days)


@router.post("/drivers", status_code=status.HTTP_201_CREATED)
async def create_driver(
    request: DriverRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service = FleetService(db)
    PlanPolicy(db, current_user).require_within_limit("drivers", service.count_drivers(current_user.id))
    return driver_to_dict(service.create_driver(current_user.id, request.model_dump()))


@router.get("/drivers/{driver_id}")
async def get_driver(
    driver_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return driver_to_dict(FleetService(db).get_driver(current_user.id, driver_id))
    except FleetRecordNotFound as e:
        raise _not_found(e)


@router.put("/drivers/{driver_id}")
async def update_driver(
    driver_id: int,
    request: DriverUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        driver = FleetService(db).update_driver(current_user.id, driver_id, request.model_dump(exclude_unset=True))
    except FleetRecordNotFound as e:
        raise _not_found(e)
    return driver_to_dict(driver)


@router.delete("/drivers/{driver_id}")
async def delete_driver(
    driver_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        FleetService(db).delete_driver(current_user.id, driver_id)
    except FleetRecordNotFound as e:
        raise _not_found(e)
    return {"success": True}
