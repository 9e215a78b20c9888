"""
Account service - signup and permanent account deletion
"""
from typing import Optional, Dict, Any
from sqlalchemy.orm import Session
import logging

from ..db.base import Base
from ..db.models import User, Subscription, Invoice, InvoiceItem, MileageTrip, MileageCrossing
from ..auth import get_password_hash
from .billing_gateway import BillingGateway

logger = logging.getLogger(__name__)

DELETE_CONFIRMATION = "delete my account"
MIN_PASSWORD_LENGTH = 8


class AccountError(Exception):
    pass


class AccountService:
    def __init__(self, db: Session):
        self.db = db

    def create_user(self, email: str, password: str, full_name: Optional[str] = None,
                    business_name: Optional[str] = None) -> User:
        if self.db.query(User).filter(User.email == email).first():
            raise AccountError("Email already registered")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise AccountError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

        user = User(
            email=email,
            hashed_password=get_password_hash(password),
            full_name=full_name,
            business_name=business_name,
            is_active=True,
        )
        self.db.add(user)
        self.db.flush()
        logger.info(f"User created successfully with ID: {user.id}")
        return user

    def delete_account(self, user: User, gateway: Optional[BillingGateway] = None) -> Dict[str, Any]:
        """
        Remove the user and every row they own

        A live Stripe subscription is canceled first; a Stripe failure is
        logged and deletion continues.
        """
        subscription = self.db.query(Subscription).filter(Subscription.user_id == user.id).first()
        if subscription and subscription.stripe_subscription_id and gateway is not None:
            try:
                gateway.cancel_subscription(subscription.stripe_subscription_id)
            except Exception as e:
                logger.error(f"Error canceling Stripe subscription for {user.id}: {e}", exc_info=True)

        # Children without a user_id column go first
        invoice_ids = self.db.query(Invoice.id).filter(Invoice.user_id == user.id)
        self.db.query(InvoiceItem).filter(InvoiceItem.invoice_id.in_(invoice_ids)).delete(synchronize_session=False)
        trip_ids = self.db.query(MileageTrip.id).filter(MileageTrip.user_id == user.id)
        self.db.query(MileageCrossing).filter(MileageCrossing.trip_id.in_(trip_ids)).delete(synchronize_session=False)

        deleted = {}
        for table in reversed(Base.metadata.sorted_tables):
            if "user_id" not in table.c:
                continue
            result = self.db.execute(table.delete().where(table.c.user_id == user.id))
            if result.rowcount:
                deleted[table.name] = result.rowcount

        self.db.query(User).filter(User.id == user.id).delete(synchronize_session=False)
        self.db.expunge_all()
        logger.info(f"Deleted account {user.id} ({sum(deleted.values())} rows)")
        return deleted
