"""
Notification API routes
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Optional, List
import logging

from .db import get_db, User
from .auth import get_current_user
from .services.notification_service import NotificationService, notification_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class PreferencesRequest(BaseModel):
    email_enabled: Optional[bool] = None
    sms_enabled: Optional[bool] = None
    phone_number: Optional[str] = None
    quiet_hours_start: Optional[int] = Field(None, ge=0, le=23)
    quiet_hours_end: Optional[int] = Field(None, ge=0, le=23)
    disabled_types: Optional[List[str]] = None


def _preferences_to_dict(prefs) -> dict:
    return {
        "emailEnabled": prefs.email_enabled,
        "smsEnabled": prefs.sms_enabled,
        "phoneNumber": prefs.phone_number,
        "quietHoursStart": prefs.quiet_hours_start,
        "quietHoursEnd": prefs.quiet_hours_end,
        "disabledTypes": prefs.disabled_types or [],
    }


@router.get("")
async def list_notifications(
    unread: bool = False,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service = NotificationService(db)
    notifications = service.list_for_user(current_user.id, unread_only=unread, limit=limit, offset=offset)
    return {
        "notifications": [notification_to_dict(n) for n in notifications],
        "unreadCount": service.unread_count(current_user.id),
    }


@router.get("/unread-count")
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"count": NotificationService(db).unread_count(current_user.id)}


@router.post("/read-all")
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"success": True, "updated": NotificationService(db).mark_all_read(current_user.id)}


@router.get("/preferences")
async def get_preferences(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _preferences_to_dict(NotificationService(db).get_preferences(current_user.id))


@router.put("/preferences")
async def update_preferences(
    request: PreferencesRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    prefs = NotificationService(db).update_preferences(current_user.id, **request.model_dump(exclude_unset=True))
    return _preferences_to_dict(prefs)


@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notification = NotificationService(db).mark_read(current_user.id, notification_id)
    if not notification:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return notification_to_dict(notification)


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not NotificationService(db).delete(current_user.id, notification_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return {"success": True}
