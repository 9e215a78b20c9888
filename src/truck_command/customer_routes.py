"""
Customer API routes
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, EmailStr, Field
from typing import Optional
import logging

from .db import get_db, User
from .auth import get_current_user
from .services.plan_policy import PlanPolicy
from .services.customer_service import CustomerService, CustomerNotFound, customer_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/customers", tags=["customers"])


class CustomerRequest(BaseModel):
    name: str = Field(..., max_length=200)
    company_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = Field(None, max_length=2)
    zip: Optional[str] = Field(None, max_length=10)
    customer_type: Optional[str] = None
    status: Optional[str] = "Active"
    notes: Optional[str] = None


class CustomerUpdateRequest(BaseModel):
    name: Optional[str] = None
    company_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = Field(None, max_length=2)
    zip: Optional[str] = Field(None, max_length=10)
    customer_type: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None


@router.get("")
async def list_customers(
    search: Optional[str] = None,
    customer_type: Optional[str] = Query(None, alias="type"),
    status_filter: Optional[str] = Query(None, alias="status"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    customers = CustomerService(db).list_customers(current_user.id, search, customer_type, status_filter)
    return {"customers": [customer_to_dict(c) for c in customers]}


@router.get("/top")
async def top_customers(
    limit: int = Query(5, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"customers": CustomerService(db).get_top_customers(current_user.id, limit)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_customer(
    request: CustomerRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service = CustomerService(db)
    PlanPolicy(db, current_user).require_within_limit("customers", service.count_customers(current_user.id))
    return customer_to_dict(service.create_customer(current_user.id, request.model_dump()))


@router.get("/{customer_id}")
async def get_customer(
    customer_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return customer_to_dict(CustomerService(db).get_customer(current_user.id, customer_id))
    except CustomerNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.put("/{customer_id}")
async def update_customer(
    customer_id: int,
    request: CustomerUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        customer = CustomerService(db).update_customer(current_user.id, customer_id, request.model_dump(exclude_unset=True))
    except CustomerNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return customer_to_dict(customer)


@router.delete("/{customer_id}")
async def delete_customer(
    customer_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        CustomerService(db).delete_customer(current_user.id, customer_id)
    except CustomerNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return {"success": True}
