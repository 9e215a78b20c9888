"""
Notification Service - in-app notifications with optional email/SMS delivery
"""
from sqlalchemy.orm import Session
from datetime import datetime, date, timedelta
from typing import Optional, List, Dict, Any
import html
import logging

from ..db.models import (
    User,
    Notification,
    NotificationPreference,
    NotificationType,
    Invoice,
    InvoiceStatus,
    ComplianceItem,
    Driver,
    Subscription,
    SubscriptionStatus,
)
from .email_provider import EmailMessage, get_email_provider
from .sms_provider import get_sms_provider
from .tier_config import has_feature, get_effective_tier

logger = logging.getLogger(__name__)

URGENCY_LEVELS = ["LOW", "NORMAL", "MEDIUM", "HIGH", "CRITICAL"]

# IFTA filing deadlines: (quarter, month, day, covered months)
IFTA_DEADLINES = [
    ("Q4", 1, 31, "October - December"),
    ("Q1", 4, 30, "January - March"),
    ("Q2", 7, 31, "April - June"),
    ("Q3", 10, 31, "July - September"),
]
IFTA_REMINDER_DAYS = [30, 14, 7, 3, 1]
TRIAL_REMINDER_DAYS = [3, 1, 0]


class NotificationService:
    """Creates, lists and delivers notifications"""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        message: str,
        urgency: str = "NORMAL",
        entity_type: Optional[str] = None,
        entity_id: Optional[Any] = None,
        link_to: Optional[str] = None,
        data: Optional[Dict] = None,
        deliver: bool = False,
    ) -> Notification:
        """
        Create an in-app notification

        Args:
            deliver: Also send over email/SMS when the user's tier and preferences allow it
        """
        if isinstance(notification_type, NotificationType):
            notification_type = notification_type.value

        notification = Notification(
            user_id=user_id,
            notification_type=notification_type,
            title=title,
            message=message,
            urgency=urgency if urgency in URGENCY_LEVELS else "NORMAL",
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            link_to=link_to,
            data=data,
        )
        self.db.add(notification)
        self.db.flush()

        if deliver:
            self.deliver(notification)

        return notification

    def list_for_user(self, user_id: str, unread_only: bool = False, limit: int = 50,
                      offset: int = 0) -> List[Notification]:
        query = self.db.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.is_read == False)  # noqa: E712
        return query.order_by(Notification.created_at.desc()).offset(offset).limit(limit).all()

    def unread_count(self, user_id: str) -> int:
        return self.db.query(Notification).filter(
            Notification.user_id == user_id,
            Notification.is_read == False,  # noqa: E712
        ).count()

    def mark_read(self, user_id: str, notification_id: int) -> Optional[Notification]:
        notification = self.db.query(Notification).filter(
            Notification.id == notification_id,
            Notification.user_id == user_id,
        ).first()
        if not notification:
            return None
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = datetime.utcnow()
            self.db.flush()
        return notification

    def mark_all_read(self, user_id: str) -> int:
        now = datetime.utcnow()
        count = self.db.query(Notification).filter(
            Notification.user_id == user_id,
            Notification.is_read == False,  # noqa: E712
        ).update({"is_read": True, "read_at": now}, synchronize_session=False)
        self.db.flush()
        return count

    def delete(self, user_id: str, notification_id: int) -> bool:
        deleted = self.db.query(Notification).filter(
            Notification.id == notification_id,
            Notification.user_id == user_id,
        ).delete(synchronize_session=False)
        return deleted > 0

    def get_preferences(self, user_id: str) -> NotificationPreference:
        prefs = self.db.query(NotificationPreference).filter(
            NotificationPreference.user_id == user_id
        ).first()
        if not prefs:
            prefs = NotificationPreference(user_id=user_id, email_enabled=True, sms_enabled=False)
            self.db.add(prefs)
            self.db.flush()
        return prefs

    def update_preferences(self, user_id: str, **changes) -> NotificationPreference:
        prefs = self.get_preferences(user_id)
        for key, value in changes.items():
            if value is not None and hasattr(prefs, key):
                setattr(prefs, key, value)
        self.db.flush()
        return prefs

    def _in_quiet_hours(self, prefs: NotificationPreference, now: datetime) -> bool:
        start, end = prefs.quiet_hours_start, prefs.quiet_hours_end
        if start is None or end is None or start == end:
            return False
        hour = now.hour
        if start < end:
            return start <= hour < end
        return hour >= start or hour < end

    def deliver(self, notification: Notification) -> Dict[str, bool]:
        """
        Send a notification over the channels the user's plan and preferences allow

        Critical notifications ignore quiet hours.
        """
        result = {"email": False, "sms": False}
        user = self.db.query(User).filter(User.id == notification.user_id).first()
        if not user:
            return result

        subscription = self.db.query(Subscription).filter(Subscription.user_id == user.id).first()
        tier = get_effective_tier(
            subscription.plan if subscription else None,
            subscription.status if subscription else None,
        )
        prefs = self.get_preferences(user.id)

        if notification.notification_type in (prefs.disabled_types or []):
            return result
        if notification.urgency != "CRITICAL" and self._in_quiet_hours(prefs, datetime.utcnow()):
            logger.debug(f"Skipping delivery of notification {notification.id}: quiet hours")
            return result

        if prefs.email_enabled and user.email and has_feature(tier, "notificationsEmail"):
            body = html.escape(notification.message)
            sent = get_email_provider().send(EmailMessage(
                to=user.email,
                subject=notification.title,
                html_body=f"<p>{body}</p>",
                text_body=notification.message,
            ))
            notification.email_sent = sent
            result["email"] = sent

        phone = prefs.phone_number or user.phone
        if prefs.sms_enabled and phone and has_feature(tier, "notificationsSMS"):
            sent = get_sms_provider().send(phone, f"{notification.title}: {notification.message}")
            notification.sms_sent = sent
            result["sms"] = sent

        self.db.flush()
        return result

    def _exists_since(self, user_id: str, notification_type: str, since: datetime,
                      entity_id: Optional[str] = None, urgency: Optional[str] = None) -> bool:
        query = self.db.query(Notification.id).filter(
            Notification.user_id == user_id,
            Notification.notification_type == notification_type,
            Notification.created_at >= since,
        )
        if entity_id is not None:
            query = query.filter(Notification.entity_id == str(entity_id))
        if urgency is not None:
            query = query.filter(Notification.urgency == urgency)
        return query.first() is not None

    # Scheduled generators (invoked by the cron routes)

    def generate_compliance_notifications(self, today: Optional[date] = None) -> int:
        """Expiring compliance documents and driver license/medical cards within 30 days"""
        today = today or date.today()
        horizon = today + timedelta(days=30)
        since = datetime.utcnow() - timedelta(days=7)
        count = 0

        items = self.db.query(ComplianceItem).filter(
            ComplianceItem.expiration_date.isnot(None),
            ComplianceItem.expiration_date <= horizon,
        ).all()
        for item in items:
            if self._exists_since(item.user_id, NotificationType.DOCUMENT_EXPIRY.value, since, item.id):
                continue
            days_left = (item.expiration_date - today).days
            if days_left < 0:
                title = f"{item.title} Expired"
                message = f"{item.title} for {item.entity_name or 'your company'} expired on {item.expiration_date.isoformat()}."
                urgency = "CRITICAL"
            else:
                title = f"{item.title} Expiring Soon"
                message = f"{item.title} for {item.entity_name or 'your company'} expires in {days_left} day{'s' if days_left != 1 else ''}."
                urgency = "HIGH" if days_left <= 7 else "MEDIUM"
            self.create(item.user_id, NotificationType.DOCUMENT_EXPIRY, title, message, urgency=urgency,
                        entity_type="compliance", entity_id=item.id, link_to="/dashboard/compliance",
                        deliver=True)
            count += 1

        drivers = self.db.query(Driver).filter(Driver.status == "Active").all()
        for driver in drivers:
            for label, expiry in (("License", driver.license_expiry), ("Medical Card", driver.medical_card_expiry)):
                if not expiry or expiry > horizon:
                    continue
                entity_key = f"driver-{driver.id}-{label.lower().replace(' ', '-')}"
                if self._exists_since(driver.user_id, NotificationType.DOCUMENT_EXPIRY.value, since, entity_key):
                    continue
                days_left = (expiry - today).days
                state = "expired" if days_left < 0 else f"expires in {days_left} day{'s' if days_left != 1 else ''}"
                self.create(
                    driver.user_id,
                    NotificationType.DOCUMENT_EXPIRY,
                    f"Driver {label} {'Expired' if days_left < 0 else 'Expiring'}",
                    f"{driver.full_name}'s {label.lower()} {state}.",
                    urgency="CRITICAL" if days_left < 0 else ("HIGH" if days_left <= 7 else "MEDIUM"),
                    entity_type="driver",
                    entity_id=entity_key,
                    link_to="/dashboard/fleet",
                    deliver=True,
                )
                count += 1

        return count

    def generate_overdue_invoice_notifications(self, today: Optional[date] = None) -> int:
        """Notify once a week per overdue invoice and move it to Overdue"""
        today = today or date.today()
        since = datetime.utcnow() - timedelta(days=7)
        count = 0

        invoices = self.db.query(Invoice).filter(
            Invoice.status.in_([InvoiceStatus.PENDING.value, InvoiceStatus.SENT.value, InvoiceStatus.OVERDUE.value]),
            Invoice.due_date < today,
        ).all()

        for invoice in invoices:
            if self._exists_since(invoice.user_id, NotificationType.INVOICE_OVERDUE.value, since, invoice.id):
                continue
            days_past_due = (today - invoice.due_date).days
            urgency = "CRITICAL" if days_past_due > 30 else "HIGH" if days_past_due > 7 else "MEDIUM"
            self.create(
                invoice.user_id,
                NotificationType.INVOICE_OVERDUE,
                f"Invoice {invoice.invoice_number} Overdue",
                f"Invoice for {invoice.customer} (${invoice.total or 0:,.2f}) is {days_past_due} "
                f"day{'s' if days_past_due > 1 else ''} past due.",
                urgency=urgency,
                entity_type="invoice",
                entity_id=invoice.id,
                link_to=f"/dashboard/invoices/{invoice.id}",
                deliver=True,
            )
            invoice.status = InvoiceStatus.OVERDUE.value
            count += 1

        self.db.flush()
        return count

    def generate_ifta_deadline_notifications(self, today: Optional[date] = None) -> int:
        """Remind every user 30, 14, 7, 3 and 1 days before the next filing deadline"""
        today = today or date.today()
        upcoming = [
            (date(year, month, day), quarter, description)
            for year in (today.year, today.year + 1)
            for quarter, month, day, description in IFTA_DEADLINES
            if date(year, month, day) > today
        ]
        deadline, quarter, description = min(upcoming)
        days_until = (deadline - today).days
        if days_until not in IFTA_REMINDER_DAYS:
            return 0

        urgency = "CRITICAL" if days_until <= 3 else "HIGH" if days_until <= 7 else "MEDIUM" if days_until <= 14 else "LOW"
        filing_year = deadline.year - 1 if quarter == "Q4" else deadline.year
        since = datetime.utcnow() - timedelta(hours=24)
        advice = "File now to avoid penalties!" if days_until <= 7 else "Prepare your fuel receipts and mileage records."
        count = 0

        for (user_id,) in self.db.query(User.id).filter(User.is_active == True).all():  # noqa: E712
            if self._exists_since(user_id, NotificationType.IFTA_DEADLINE.value, since, urgency=urgency):
                continue
            self.create(
                user_id,
                NotificationType.IFTA_DEADLINE,
                f"IFTA {quarter} Filing Due in {days_until} Day{'s' if days_until > 1 else ''}",
                f"Your IFTA {quarter} report ({description}) is due on {deadline.strftime('%m/%d/%Y')}. {advice}",
                urgency=urgency,
                entity_type="ifta",
                entity_id=f"{filing_year}-{quarter}",
                link_to="/dashboard/ifta",
            )
            count += 1

        return count

    def send_trial_reminders(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Trial ending reminders at 3 days, 1 day and the day of expiration"""
        now = now or datetime.utcnow()
        results = {"sent": 0, "skipped": 0, "errors": []}
        since = now - timedelta(hours=20)

        subscriptions = self.db.query(Subscription).filter(
            Subscription.status == SubscriptionStatus.TRIALING.value,
            Subscription.trial_ends_at.isnot(None),
        ).all()

        for subscription in subscriptions:
            remaining = subscription.trial_ends_at - now
            days_left = remaining.days + (1 if remaining.seconds > 0 else 0)
            if days_left not in TRIAL_REMINDER_DAYS:
                continue

            entity_key = f"trial-{days_left}"
            if self._exists_since(subscription.user_id, NotificationType.TRIAL_ENDING.value, since, entity_key):
                results["skipped"] += 1
                continue

            if days_left == 0:
                title = "Your Truck Command trial ends today!"
            elif days_left == 1:
                title = "Your trial ends tomorrow - don't lose your data!"
            else:
                title = "Your trial ends in 3 days - upgrade now"

            try:
                notification = self.create(
                    subscription.user_id,
                    NotificationType.TRIAL_ENDING,
                    title,
                    f"Your free trial ends on {subscription.trial_ends_at.strftime('%B %d, %Y')}. "
                    "Choose a plan to keep access to your invoices, loads and IFTA reports.",
                    urgency="HIGH" if days_left <= 1 else "MEDIUM",
                    entity_type="subscription",
                    entity_id=entity_key,
                    link_to="/dashboard/upgrade",
                )
                user = self.db.query(User).filter(User.id == subscription.user_id).first()
                if user and user.email:
                    sent = get_email_provider().send(EmailMessage(
                        to=user.email,
                        subject=title,
                        html_body=f"<p>{html.escape(notification.message)}</p>",
                        text_body=notification.message,
                    ))
                    notification.email_sent = sent
                results["sent"] += 1
            except Exception as e:
                logger.error(f"Trial reminder failed for user {subscription.user_id}: {e}", exc_info=True)
                results["errors"].append({"userId": subscription.user_id, "error": str(e)})

        self.db.flush()
        return results

    def cleanup_read_notifications(self, days: int = 30) -> int:
        """Delete read notifications older than the retention window"""
        cutoff = datetime.utcnow() - timedelta(days=days)
        deleted = self.db.query(Notification).filter(
            Notification.is_read == True,  # noqa: E712
            Notification.created_at < cutoff,
        ).delete(synchronize_session=False)
        logger.info(f"Cleaned up {deleted} read notifications older than {days} days")
        return deleted


def notification_to_dict(notification: Notification) -> Dict[str, Any]:
    return {
        "id": notification.id,
        "notificationType": notification.notification_type,
        "title": notification.title,
        "message": notification.message,
        "urgency": notification.urgency,
        "entityType": notification.entity_type,
        "entityId": notification.entity_id,
        "linkTo": notification.link_to,
        "data": notification.data,
        "isRead": notification.is_read,
        "readAt": notification.read_at.isoformat() if notification.read_at else None,
        "createdAt": notification.created_at.isoformat() if notification.created_at else None,
    }
