"""
Compliance API routes
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Optional
from datetime import date
import logging

from .db import get_db, User
from .auth import get_current_user
from .services.plan_policy import PlanPolicy
from .services.compliance_service import ComplianceService, ComplianceItemNotFound, compliance_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/compliance", tags=["compliance"])


class ComplianceRequest(BaseModel):
    title: str
    compliance_type: str
    entity_type: Optional[str] = None
    entity_name: Optional[str] = None
    document_number: Optional[str] = None
    issue_date: Optional[date] = None
    expiration_date: Optional[date] = None
    issuing_authority: Optional[str] = None
    notes: Optional[str] = None
    document_url: Optional[str] = None


class ComplianceUpdateRequest(BaseModel):
    title: Optional[str] = None
    compliance_type: Optional[str] = None
    entity_type: Optional[str] = None
    entity_name: Optional[str] = None
    document_number: Optional[str] = None
    issue_date: Optional[date] = None
    expiration_date: Optional[date] = None
    issuing_authority: Optional[str] = None
    notes: Optional[str] = None
    document_url: Optional[str] = None


def _service(db: Session, user: User) -> ComplianceService:
    PlanPolicy(db, user).require_feature("compliance")
    return ComplianceService(db)


@router.get("")
async def list_compliance_items(
    status_filter: Optional[str] = Query(None, alias="status"),
    entity_type: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    items = _service(db, current_user).list_items(current_user.id, status_filter, entity_type)
    return {"items": [compliance_to_dict(i) for i in items]}


@router.get("/summary")
async def compliance_summary(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _service(db, current_user).get_summary(current_user.id)


@router.get("/upcoming")
async def upcoming_expirations(
    days: int = Query(30, ge=1, le=365),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    items = _service(db, current_user).get_upcoming_expirations(current_user.id, days)
    return {"items": [compliance_to_dict(i) for i in items]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_compliance_item(
    request: ComplianceRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return compliance_to_dict(_service(db, current_user).create_item(current_user.id, request.model_dump()))


@router.put("/{item_id}")
async def update_compliance_item(
    item_id: int,
    request: ComplianceUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        item = _service(db, current_user).update_item(current_user.id, item_id, request.model_dump(exclude_unset=True))
    except ComplianceItemNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return compliance_to_dict(item)


@router.delete("/{item_id}")
async def delete_compliance_item(
    item_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        _service(db, current_user).delete_item(current_user.id, item_id)
    except ComplianceItemNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return {"success": True}
