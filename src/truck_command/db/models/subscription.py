"""
Subscription model, one row per user mirroring the Stripe subscription
"""
from sqlalchemy import Column, Integer, String, Numeric, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..base import Base


class SubscriptionStatus(str, enum.Enum):
    """Subscription status enum"""
    TRIALING = "trialing"
    ACTIVE = "active"
    INCOMPLETE = "incomplete"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    PAUSED = "paused"


class SubscriptionPlan(str, enum.Enum):
    """Subscription plan enum"""
    BASIC = "basic"
    PREMIUM = "premium"
    FLEET = "fleet"
    ENTERPRISE = "enterprise"


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Subscription(Base):
    """User subscription model"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, unique=True, index=True)
    status = Column(String, nullable=False, default=SubscriptionStatus.TRIALING.value, index=True)
    plan = Column(String, nullable=True, index=True)
    billing_cycle = Column(String, nullable=True)
    amount = Column(Numeric(12, 2), nullable=True)

    stripe_customer_id = Column(String, nullable=True, index=True)
    stripe_subscription_id = Column(String, nullable=True, unique=True, index=True)

    current_period_starts_at = Column(DateTime, nullable=True)
    current_period_ends_at = Column(DateTime, nullable=True)
    trial_ends_at = Column(DateTime, nullable=True)

    # Cancellation
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String, nullable=True)
    cancellation_feedback = Column(String, nullable=True)

    # Pause / retention
    paused_at = Column(DateTime, nullable=True)
    pause_resumes_at = Column(DateTime, nullable=True)
    retention_coupon_applied_at = Column(DateTime, nullable=True)

    # Downgrade waiting for the next renewal
    scheduled_plan = Column(String, nullable=True)
    scheduled_billing_cycle = Column(String, nullable=True)
    scheduled_amount = Column(Numeric(12, 2), nullable=True)

    # Checkout session that activated this row
    checkout_session_id = Column(String, nullable=True, unique=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="subscription")
