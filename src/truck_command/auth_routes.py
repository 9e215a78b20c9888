"""
Authentication API routes
"""
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from pydantic import BaseModel, EmailStr
from typing import Optional
from datetime import timedelta
import logging

from .db import get_db, User
from .auth import (
    verify_password,
    create_access_token,
    get_current_user,
    ACCESS_TOKEN_EXPIRE_MINUTES,
)
from .services.account_service import AccountService, AccountError, DELETE_CONFIRMATION
from .services.billing_gateway import BillingGateway, get_billing_gateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["authentication"])


class UserSignup(BaseModel):
    email: EmailStr
    password: str
    full_name: Optional[str] = None
    business_name: Optional[str] = None


class Token(BaseModel):
    access_token: str
    token_type: str
    user: dict


class DeleteAccountRequest(BaseModel):
    confirmation: Optional[str] = None


def _user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "business_name": user.business_name,
        "phone": user.phone,
        "is_active": user.is_active,
    }


def _token_response(user: User) -> dict:
    # JWT requires 'sub' claim to be a string
    access_token = create_access_token(
        data={"sub": str(user.id)}, expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return {"access_token": access_token, "token_type": "bearer", "user": _user_payload(user)}


@router.post("/signup", response_model=Token)
async def signup(user_data: UserSignup, db: Session = Depends(get_db)):
    """Register a new user with email and password"""
    logger.info(f"Signup attempt for email: {user_data.email}")
    try:
        user = AccountService(db).create_user(
            user_data.email, user_data.password, user_data.full_name, user_data.business_name
        )
    except AccountError as e:
        logger.warning(f"Signup failed for {user_data.email}: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return _token_response(user)


@router.post("/login", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    """Login with email and password"""
    # Email arrives in the OAuth2 form's username field
    user = db.query(User).filter(User.email == form_data.username).first()

    if not user or not user.hashed_password or not verify_password(form_data.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")

    return _token_response(user)


@router.get("/me")
async def get_current_user_info(current_user: User = Depends(get_current_user)):
    """Get current authenticated user information"""
    return _user_payload(current_user)


@router.post("/logout")
async def logout(current_user: User = Depends(get_current_user)):
    """Logout user (client should discard token)"""
    response = JSONResponse({"message": "Logged out successfully"})
    response.delete_cookie("auth_token")
    return response


@router.post("/delete-account")
async def delete_account(
    request: DeleteAccountRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """Permanently delete the caller's account and data"""
    if request.confirmation != DELETE_CONFIRMATION:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Please type '{DELETE_CONFIRMATION}' to confirm",
        )
    AccountService(db).delete_account(current_user, gateway)
    response = JSONResponse({"success": True, "message": "Your account has been permanently deleted"})
    response.delete_cookie("auth_token")
    return response
