"""
Compliance service - document and permit expirations
"""
from typing import Optional, List, Dict, Any
from datetime import date, timedelta
from sqlalchemy.orm import Session
import logging

from ..db.models import ComplianceItem, ComplianceStatus

logger = logging.getLogger(__name__)

EXPIRING_SOON_DAYS = 30

COMPLIANCE_FIELDS = (
    "title", "compliance_type", "entity_type", "entity_name", "document_number", "issue_date",
    "expiration_date", "issuing_authority", "notes", "document_url",
)


class ComplianceItemNotFound(Exception):
    pass


def derive_status(expiration_date: Optional[date], today: Optional[date] = None) -> str:
    """Expired once past, Expiring Soon within 30 days, Active otherwise"""
    if not expiration_date:
        return ComplianceStatus.ACTIVE.value
    days = (expiration_date - (today or date.today())).days
    if days < 0:
        return ComplianceStatus.EXPIRED.value
    if days <= EXPIRING_SOON_DAYS:
        return ComplianceStatus.EXPIRING_SOON.value
    return ComplianceStatus.ACTIVE.value


def compliance_to_dict(item: ComplianceItem, today: Optional[date] = None) -> Dict[str, Any]:
    data = {
        field: (value.isoformat() if isinstance(value, date) else value)
        for field, value in ((f, getattr(item, f)) for f in COMPLIANCE_FIELDS)
    }
    data["id"] = item.id
    data["status"] = item.status
    if item.expiration_date:
        data["daysUntilExpiration"] = (item.expiration_date - (today or date.today())).days
    return data


class ComplianceService:
    def __init__(self, db: Session):
        self.db = db

    def list_items(self, user_id: str, status: Optional[str] = None,
                   entity_type: Optional[str] = None) -> List[ComplianceItem]:
        """Items with statuses refreshed against today's date"""
        items = self.db.query(ComplianceItem).filter(
            ComplianceItem.user_id == user_id
        ).order_by(ComplianceItem.expiration_date.asc()).all()
        self.refresh_statuses(items)
        if status:
            items = [i for i in items if i.status == status]
        if entity_type:
            items = [i for i in items if i.entity_type == entity_type]
        return items

    def refresh_statuses(self, items: List[ComplianceItem], today: Optional[date] = None) -> int:
        changed = 0
        for item in items:
            status = derive_status(item.expiration_date, today)
            if item.status != status:
                item.status = status
                changed += 1
        if changed:
            self.db.flush()
        return changed

    def get_item(self, user_id: str, item_id: int) -> ComplianceItem:
        item = self.db.query(ComplianceItem).filter(
            ComplianceItem.id == item_id, ComplianceItem.user_id == user_id
        ).first()
        if not item:
            raise ComplianceItemNotFound("Compliance item not found")
        return item

    def create_item(self, user_id: str, data: Dict[str, Any]) -> ComplianceItem:
        item = ComplianceItem(user_id=user_id, **{
            k: v for k, v in data.items() if k in COMPLIANCE_FIELDS and v is not None
        })
        item.status = derive_status(item.expiration_date)
        self.db.add(item)
        self.db.flush()
        return item

    def update_item(self, user_id: str, item_id: int, data: Dict[str, Any]) -> ComplianceItem:
        item = self.get_item(user_id, item_id)
        for field in COMPLIANCE_FIELDS:
            if field in data and data[field] is not None:
                setattr(item, field, data[field])
        item.status = derive_status(item.expiration_date)
        self.db.flush()
        return item

    def delete_item(self, user_id: str, item_id: int) -> None:
        self.db.delete(self.get_item(user_id, item_id))
        self.db.flush()

    def get_upcoming_expirations(self, user_id: str, days: int = EXPIRING_SOON_DAYS,
                                 today: Optional[date] = None) -> List[ComplianceItem]:
        today = today or date.today()
        return self.db.query(ComplianceItem).filter(
            ComplianceItem.user_id == user_id,
            ComplianceItem.expiration_date >= today,
            ComplianceItem.expiration_date <= today + timedelta(days=days),
        ).order_by(ComplianceItem.expiration_date.asc()).all()

    def get_summary(self, user_id: str) -> Dict[str, int]:
        items = self.list_items(user_id)
        return {
            "total": len(items),
            "active": sum(1 for i in items if i.status == ComplianceStatus.ACTIVE.value),
            "expiringSoon": sum(1 for i in items if i.status == ComplianceStatus.EXPIRING_SOON.value),
            "expired": sum(1 for i in items if i.status == ComplianceStatus.EXPIRED.value),
        }
