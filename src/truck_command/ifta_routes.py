"""
IFTA calculator and state mileage API routes
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date, datetime
import logging

from .db import get_db, User
from .auth import get_current_user
from .services.plan_policy import PlanPolicy
from .services.jurisdictions import is_valid_quarter, JURISDICTION_NAMES
from .services.ifta_service import IftaService, IftaTripNotFound, trip_to_dict, report_to_dict
from .services.mileage_service import (
    MileageService,
    MileageTripNotFound,
    calculate_state_mileage,
    trip_to_dict as mileage_trip_to_dict,
    crossing_to_dict,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["ifta"])


class IftaTripRequest(BaseModel):
    quarter: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None
    vehicle_id: Optional[str] = None
    driver_id: Optional[str] = None
    start_jurisdiction: str = Field(..., min_length=2, max_length=2)
    end_jurisdiction: Optional[str] = Field(None, min_length=2, max_length=2)
    total_miles: float = Field(default=0, ge=0)
    gallons: float = Field(default=0, ge=0)
    fuel_cost: float = Field(default=0, ge=0)
    notes: Optional[str] = None


class IftaTripUpdateRequest(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    vehicle_id: Optional[str] = None
    driver_id: Optional[str] = None
    start_jurisdiction: Optional[str] = Field(None, min_length=2, max_length=2)
    end_jurisdiction: Optional[str] = Field(None, min_length=2, max_length=2)
    total_miles: Optional[float] = Field(None, ge=0)
    gallons: Optional[float] = Field(None, ge=0)
    fuel_cost: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None


class QuarterRequest(BaseModel):
    quarter: Optional[str] = None


class SaveReportRequest(BaseModel):
    quarter: Optional[str] = None
    totalMiles: float = 0
    totalGallons: float = 0
    totalTax: float = 0
    status: str = "draft"
    submittedAt: Optional[datetime] = None
    jurisdictionSummary: List[dict] = []


class ImportLoadsRequest(BaseModel):
    quarter: Optional[str] = None
    loadIds: List[int] = []


class MileageTripRequest(BaseModel):
    name: Optional[str] = None
    vehicle_id: Optional[str] = None
    start_date: Optional[date] = None
    notes: Optional[str] = None


class CrossingRequest(BaseModel):
    state: str = Field(..., min_length=2, max_length=2)
    odometer: float = Field(..., ge=0)
    timestamp: Optional[datetime] = None


def _require_quarter(quarter: Optional[str]) -> str:
    if not is_valid_quarter(quarter):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid quarter format. Use YYYY-QN (e.g., 2024-Q1)",
        )
    return quarter


def _ifta(db: Session, user: User) -> IftaService:
    PlanPolicy(db, user).require_feature("iftaCalculator")
    return IftaService(db)


def _mileage(db: Session, user: User) -> MileageService:
    PlanPolicy(db, user).require_feature("stateMileage")
    return MileageService(db)


@router.get("/ifta/jurisdictions")
async def list_jurisdictions():
    return {"jurisdictions": [{"code": code, "name": name} for code, name in JURISDICTION_NAMES.items()]}


@router.get("/ifta/trips")
async def list_ifta_trips(
    quarter: str = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    trips = _ifta(db, current_user).list_trips(current_user.id, _require_quarter(quarter))
    return {"trips": [trip_to_dict(t) for t in trips]}


@router.post("/ifta/trips", status_code=status.HTTP_201_CREATED)
async def create_ifta_trip(
    request: IftaTripRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if request.quarter:
        _require_quarter(request.quarter)
    trip = _ifta(db, current_user).create_trip(current_user.id, request.model_dump())
    return trip_to_dict(trip)


@router.put("/ifta/trips/{trip_id}")
async def update_ifta_trip(
    trip_id: int,
    request: IftaTripUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        trip = _ifta(db, current_user).update_trip(current_user.id, trip_id, request.model_dump(exclude_unset=True))
    except IftaTripNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return trip_to_dict(trip)


@router.delete("/ifta/trips/{trip_id}")
async def delete_ifta_trip(
    trip_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        _ifta(db, current_user).delete_trip(current_user.id, trip_id)
    except IftaTripNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return {"success": True}


@router.get("/ifta/fuel")
async def ifta_fuel_by_state(
    quarter: str = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"fuelData": _ifta(db, current_user).fetch_fuel_by_state(current_user.id, _require_quarter(quarter))}


@router.get("/ifta/sync")
async def ifta_fuel_sync(
    quarter: str = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _ifta(db, current_user).sync_fuel_data(current_user.id, _require_quarter(quarter))


@router.post("/ifta/fuel-only-trips")
async def create_fuel_only_trips(
    request: QuarterRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Reconcile the quarter and absorb positive fuel discrepancies"""
    quarter = _require_quarter(request.quarter)
    service = _ifta(db, current_user)
    sync = service.sync_fuel_data(current_user.id, quarter)
    return service.create_missing_fuel_only_trips(current_user.id, quarter, sync["discrepancies"])


@router.get("/ifta/summary")
async def ifta_summary(
    quarter: str = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _ifta(db, current_user).get_summary(current_user.id, _require_quarter(quarter))


@router.get("/ifta/reports")
async def list_ifta_reports(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"reports": [report_to_dict(r) for r in _ifta(db, current_user).list_reports(current_user.id)]}


@router.post("/ifta/reports")
async def save_ifta_report(
    request: SaveReportRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _require_quarter(request.quarter)
    report = _ifta(db, current_user).save_report(current_user.id, request.model_dump())
    return report_to_dict(report)


@router.get("/ifta/loads")
async def importable_loads(
    quarter: str = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service = _ifta(db, current_user)
    quarter = _require_quarter(quarter)
    return {
        "loads": service.get_importable_loads(current_user.id, quarter),
        "stats": service.get_load_import_stats(current_user.id, quarter),
    }


@router.post("/ifta/loads/import")
async def import_loads(
    request: ImportLoadsRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    quarter = _require_quarter(request.quarter)
    try:
        trips = _ifta(db, current_user).import_loads(current_user.id, quarter, request.loadIds)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"success": True, "imported": len(trips), "trips": [trip_to_dict(t) for t in trips]}


# State mileage tracker

@router.get("/mileage/trips")
async def list_mileage_trips(
    status_filter: Optional[str] = Query(None, alias="status"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    trips = _mileage(db, current_user).list_trips(current_user.id, status_filter)
    return {"trips": [mileage_trip_to_dict(t) for t in trips]}


@router.post("/mileage/trips", status_code=status.HTTP_201_CREATED)
async def create_mileage_trip(
    request: MileageTripRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    trip = _mileage(db, current_user).create_trip(current_user.id, **request.model_dump())
    return mileage_trip_to_dict(trip)


@router.get("/mileage/trips/{trip_id}")
async def get_mileage_trip(
    trip_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        trip = _mileage(db, current_user).get_trip(current_user.id, trip_id)
    except MileageTripNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    data = mileage_trip_to_dict(trip)
    data["stateMileage"] = calculate_state_mileage(list(trip.crossings))
    return data


@router.post("/mileage/trips/{trip_id}/crossings", status_code=status.HTTP_201_CREATED)
async def add_crossing(
    trip_id: int,
    request: CrossingRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        crossing = _mileage(db, current_user).add_crossing(
            current_user.id, trip_id, request.state, request.odometer, request.timestamp
        )
    except MileageTripNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return crossing_to_dict(crossing)


@router.delete("/mileage/trips/{trip_id}/crossings/{crossing_id}")
async def delete_crossing(
    trip_id: int,
    crossing_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        removed = _mileage(db, current_user).delete_crossing(current_user.id, trip_id, crossing_id)
    except MileageTripNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Crossing not found")
    return {"success": True}


@router.post("/mileage/trips/{trip_id}/complete")
async def complete_mileage_trip(
    trip_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        trip = _mileage(db, current_user).complete_trip(current_user.id, trip_id)
    except MileageTripNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return mileage_trip_to_dict(trip)


@router.delete("/mileage/trips/{trip_id}")
async def delete_mileage_trip(
    trip_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        _mileage(db, current_user).delete_trip(current_user.id, trip_id)
    except MileageTripNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return {"success": True}


@router.get("/mileage/trips/{trip_id}/report")
async def mileage_trip_report(
    trip_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return _mileage(db, current_user).generate_report(current_user.id, trip_id)
    except MileageTripNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/mileage/trips/{trip_id}/export")
async def export_mileage_trip(
    trip_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        content = _mileage(db, current_user).export_csv(current_user.id, trip_id)
    except MileageTripNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="state-mileage-trip-{trip_id}.csv"'},
    )
