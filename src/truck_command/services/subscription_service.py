"""
Subscription Service - keeps the local subscription row in step with Stripe
"""
from sqlalchemy.orm import Session
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, Tuple
import calendar
import math
import logging

from ..db.models import Subscription, SubscriptionStatus, User, NotificationType
from .billing_gateway import stripe_value, stripe_timestamp, subscription_period
from .money import from_cents, money_to_float
from .notification_service import NotificationService

logger = logging.getLogger(__name__)

VALID_PLANS = ["basic", "premium", "fleet"]
VALID_BILLING_CYCLES = ["monthly", "yearly"]

# Prices in cents
PRICING = {
    "basic": {"monthly": 2000, "yearly": 19200},
    "premium": {"monthly": 3500, "yearly": 33600},
    "fleet": {"monthly": 7500, "yearly": 72000},
}

# Stripe statuses that map onto our own status set
STRIPE_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING.value,
    "active": SubscriptionStatus.ACTIVE.value,
    "incomplete": SubscriptionStatus.INCOMPLETE.value,
    "incomplete_expired": SubscriptionStatus.CANCELED.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "unpaid": SubscriptionStatus.PAST_DUE.value,
    "canceled": SubscriptionStatus.CANCELED.value,
    "paused": SubscriptionStatus.PAUSED.value,
}

PLAN_ORDER = ["basic", "premium", "fleet"]
SECONDS_PER_DAY = 86400


class PlanChangeError(Exception):
    pass


def add_months(moment: datetime, months: int) -> datetime:
    """Same day of month, clamped to the last day when it does not exist"""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def unix_seconds(moment: datetime) -> int:
    """Naive UTC datetime to a unix timestamp"""
    return calendar.timegm(moment.utctimetuple())


def format_long_date(moment: datetime) -> str:
    return f"{moment.strftime('%B')} {moment.day}, {moment.year}"


def next_billing_date(billing_cycle: str, now: datetime) -> datetime:
    return add_months(now, 12 if billing_cycle == "yearly" else 1)


def classify_plan_change(
    current_plan: str,
    current_cycle: str,
    new_plan: str,
    new_cycle: str,
    period: Dict[str, Optional[int]],
    now: Optional[datetime] = None,
) -> Tuple[str, Optional[Dict[str, Any]], int]:
    """
    Decide whether a plan or cycle change is an upgrade or a downgrade

    Upgrades apply immediately with proration, downgrades wait for the
    renewal. A lower plan on a yearly cycle is an upgrade when the yearly
    price exceeds what is left of the current period.

    Returns:
        (change type, cross scenario details or None, days remaining)

    Raises:
        PlanChangeError: the plan and cycle are unchanged
    """
    if new_plan == current_plan and new_cycle == current_cycle:
        raise PlanChangeError("You are already on this plan with this billing cycle")

    now_ts = unix_seconds(now or datetime.utcnow())
    start, end = period.get("start") or 0, period.get("end") or 0
    total_days = max(1, math.ceil((end - start) / SECONDS_PER_DAY))
    days_remaining = max(0, math.ceil((end - now_ts) / SECONDS_PER_DAY))

    old_index = PLAN_ORDER.index(current_plan) if current_plan in PLAN_ORDER else 0
    new_index = PLAN_ORDER.index(new_plan)
    cross_scenario = None

    if new_index > old_index:
        change_type = "upgrade"
    elif new_index < old_index:
        if current_cycle == "monthly" and new_cycle == "yearly":
            current_price = Decimal(PRICING.get(current_plan, {}).get(current_cycle, 0))
            remaining = current_price * Decimal(days_remaining) / Decimal(total_days)
            new_price = Decimal(PRICING[new_plan]["yearly"])
            requires_payment = new_price > remaining
            cross_scenario = {
                "type": "plan_downgrade_cycle_upgrade",
                "remainingValue": money_to_float(from_cents(remaining)),
                "newPrice": money_to_float(from_cents(new_price)),
                "requiresPayment": requires_payment,
            }
            change_type = "upgrade" if requires_payment else "downgrade"
        else:
            change_type = "downgrade"
    else:
        change_type = "upgrade" if new_cycle == "yearly" else "downgrade"

    return change_type, cross_scenario, days_remaining


def preview_proration(
    current_plan: str,
    current_cycle: str,
    new_plan: str,
    new_cycle: str,
    period: Optional[Dict[str, Optional[int]]],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Amount due now for an immediate plan change

    Unused time on the current plan is credited, rounded to whole dollars.
    Without a period the whole current price is credited and the result is
    marked as an estimate.
    """
    now = now or datetime.utcnow()
    current_cents = Decimal(PRICING.get(current_plan, {}).get(current_cycle, 0))
    charge_cents = Decimal(PRICING[new_plan][new_cycle])

    preview: Dict[str, Any] = {
        "currentPlan": current_plan,
        "currentPlanPrice": money_to_float(from_cents(current_cents)),
        "newPlan": new_plan,
        "newPlanPrice": money_to_float(from_cents(charge_cents)),
        "billingCycle": new_cycle,
    }

    if period and period.get("start") and period.get("end"):
        total_days = max(1, round((period["end"] - period["start"]) / SECONDS_PER_DAY))
        days_remaining = max(0, round((period["end"] - unix_seconds(now)) / SECONDS_PER_DAY))
        raw_credit = current_cents * days_remaining / total_days
        credit_cents = (raw_credit / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP) * 100
        preview["daysRemaining"] = days_remaining
        preview["totalDays"] = total_days
    else:
        credit_cents = current_cents
        preview["estimatedOnly"] = True

    amount_due = max(Decimal("0"), charge_cents - credit_cents)
    preview.update({
        "credit": money_to_float(from_cents(credit_cents)),
        "charge": money_to_float(from_cents(charge_cents)),
        "amountDueNow": money_to_float(from_cents(amount_due)),
        "nextBillingDate": format_long_date(next_billing_date(new_cycle, now)),
    })
    return preview


class SubscriptionService:
    """Service for reading and updating subscription rows"""

    def __init__(self, db: Session):
        self.db = db

    def get_for_user(self, user_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(Subscription.user_id == user_id).first()

    def get_by_stripe_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.stripe_subscription_id == stripe_subscription_id
        ).first()

    def get_or_create(self, user_id: str) -> Subscription:
        subscription = self.get_for_user(user_id)
        if not subscription:
            subscription = Subscription(user_id=user_id, status=SubscriptionStatus.INCOMPLETE.value)
            self.db.add(subscription)
            self.db.flush()
        return subscription

    def has_valid_trial(self, subscription: Optional[Subscription], now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return bool(
            subscription
            and subscription.status == SubscriptionStatus.TRIALING.value
            and subscription.trial_ends_at
            and subscription.trial_ends_at > now
        )

    def record_pending_subscription(
        self,
        user_id: str,
        plan: str,
        billing_cycle: str,
        customer_id: str,
        stripe_subscription_id: str,
    ) -> Subscription:
        """
        Store a freshly created incomplete subscription

        A trial that has not ended keeps its status and plan. Only the Stripe
        ids are recorded so the trial continues until payment succeeds.
        """
        subscription = self.get_for_user(user_id)
        if self.has_valid_trial(subscription):
            subscription.stripe_customer_id = customer_id
            subscription.stripe_subscription_id = stripe_subscription_id
            self.db.flush()
            return subscription

        if not subscription:
            subscription = Subscription(user_id=user_id)
            self.db.add(subscription)

        subscription.plan = plan
        subscription.billing_cycle = billing_cycle
        subscription.status = SubscriptionStatus.INCOMPLETE.value
        subscription.amount = from_cents(PRICING[plan][billing_cycle])
        subscription.stripe_customer_id = customer_id
        subscription.stripe_subscription_id = stripe_subscription_id
        self.db.flush()
        return subscription

    # Plan changes

    def apply_plan_change(self, subscription: Subscription, plan: str, billing_cycle: str) -> Subscription:
        """Upgrade takes effect now and drops any scheduled downgrade"""
        subscription.plan = plan
        subscription.billing_cycle = billing_cycle
        subscription.amount = from_cents(PRICING[plan][billing_cycle])
        subscription.scheduled_plan = None
        subscription.scheduled_billing_cycle = None
        subscription.scheduled_amount = None
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        self.db.flush()
        return subscription

    def schedule_downgrade(self, subscription: Subscription, plan: str, billing_cycle: str) -> Subscription:
        """Current plan stays until the renewal applies the scheduled one"""
        subscription.scheduled_plan = plan
        subscription.scheduled_billing_cycle = billing_cycle
        subscription.scheduled_amount = from_cents(PRICING[plan][billing_cycle])
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        self.db.flush()
        return subscription

    def apply_scheduled_change(self, subscription: Subscription) -> Optional[Dict[str, str]]:
        if not subscription.scheduled_plan:
            return None
        change = {
            "subscriptionId": subscription.stripe_subscription_id,
            "plan": subscription.scheduled_plan,
            "billingCycle": subscription.scheduled_billing_cycle or subscription.billing_cycle or "monthly",
        }
        logger.info(f"Applying scheduled {change['plan']}/{change['billingCycle']} for user {subscription.user_id}")
        subscription.plan = change["plan"]
        subscription.billing_cycle = change["billingCycle"]
        subscription.amount = subscription.scheduled_amount
        subscription.scheduled_plan = None
        subscription.scheduled_billing_cycle = None
        subscription.scheduled_amount = None
        self.db.flush()
        return change

    def activate_from_checkout(self, user_id: str, session: Any) -> Subscription:
        """
        Activate the row for a paid checkout session

        The session id is stored so the same session is only applied once.
        """
        metadata = stripe_value(session, "metadata", {}) or {}
        plan = stripe_value(metadata, "plan") or "premium"
        billing_cycle = stripe_value(metadata, "billingCycle") or "monthly"

        subscription = self.get_or_create(user_id)
        stripe_subscription = stripe_value(session, "subscription")
        if stripe_subscription is not None and not isinstance(stripe_subscription, str):
            self.apply_stripe_subscription(subscription, stripe_subscription)
        elif stripe_subscription:
            subscription.stripe_subscription_id = stripe_subscription

        if subscription.status not in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value):
            subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.plan = plan if plan in PRICING else subscription.plan or "premium"
        subscription.billing_cycle = billing_cycle
        if plan in PRICING and billing_cycle in PRICING[plan]:
            subscription.amount = from_cents(PRICING[plan][billing_cycle])

        customer = stripe_value(session, "customer")
        if customer:
            subscription.stripe_customer_id = customer if isinstance(customer, str) else stripe_value(customer, "id")
        subscription.current_period_starts_at = subscription.current_period_starts_at or datetime.utcnow()
        subscription.trial_ends_at = None
        subscription.checkout_session_id = stripe_value(session, "id")
        self.db.flush()
        return subscription

    def apply_stripe_subscription(self, subscription: Subscription, stripe_subscription: Any) -> Subscription:
        """Copy status, plan, cycle, amount and period from a Stripe subscription"""
        metadata = stripe_value(stripe_subscription, "metadata", {}) or {}
        items = stripe_value(stripe_value(stripe_subscription, "items"), "data", []) or []
        price = stripe_value(items[0], "price") if items else None

        stripe_status = stripe_value(stripe_subscription, "status", "incomplete")
        subscription.status = STRIPE_STATUS_MAP.get(stripe_status, stripe_status)
        subscription.plan = stripe_value(metadata, "plan") or subscription.plan or "premium"

        cycle = stripe_value(metadata, "billingCycle")
        if not cycle and price is not None:
            interval = stripe_value(stripe_value(price, "recurring"), "interval")
            cycle = "yearly" if interval == "year" else "monthly"
        subscription.billing_cycle = cycle or subscription.billing_cycle or "monthly"

        unit_amount = stripe_value(price, "unit_amount")
        if unit_amount is not None:
            subscription.amount = from_cents(unit_amount)

        subscription.stripe_subscription_id = stripe_value(stripe_subscription, "id")
        customer = stripe_value(stripe_subscription, "customer")
        if customer:
            subscription.stripe_customer_id = customer if isinstance(customer, str) else stripe_value(customer, "id")

        period = subscription_period(stripe_subscription)
        if period["start"]:
            subscription.current_period_starts_at = stripe_timestamp(period["start"])
        if period["end"]:
            subscription.current_period_ends_at = stripe_timestamp(period["end"])

        subscription.cancel_at_period_end = bool(stripe_value(stripe_subscription, "cancel_at_period_end", False))
        trial_end = stripe_value(stripe_subscription, "trial_end")
        if subscription.status == SubscriptionStatus.ACTIVE.value:
            subscription.trial_ends_at = None
        elif trial_end:
            subscription.trial_ends_at = stripe_timestamp(trial_end)

        # Stripe reports a paused subscription as active with pause_collection set
        pause_collection = stripe_value(stripe_subscription, "pause_collection")
        if pause_collection and subscription.status != SubscriptionStatus.CANCELED.value:
            subscription.status = SubscriptionStatus.PAUSED.value
            subscription.paused_at = subscription.paused_at or datetime.utcnow()
            resumes_at = stripe_value(pause_collection, "resumes_at")
            subscription.pause_resumes_at = stripe_timestamp(resumes_at) if resumes_at else None
        elif not pause_collection and subscription.paused_at:
            subscription.paused_at = None
            subscription.pause_resumes_at = None

        self.db.flush()
        return subscription

    # Webhook handling

    def handle_webhook_event(self, event: Any) -> Dict[str, Any]:
        """
        Apply a verified Stripe event to the local rows

        Returns a small summary dict describing what was processed.
        """
        event_type = stripe_value(event, "type")
        obj = stripe_value(stripe_value(event, "data"), "object")
        logger.info(f"Processing Stripe event {stripe_value(event, 'id')} ({event_type})")

        if event_type == "checkout.session.completed":
            return self._handle_checkout_completed(obj)
        if event_type in ("customer.subscription.created", "customer.subscription.updated"):
            return self._handle_subscription_changed(obj)
        if event_type == "customer.subscription.deleted":
            return self._handle_subscription_deleted(obj)
        if event_type == "invoice.payment_succeeded":
            return self._handle_payment_succeeded(obj)
        if event_type == "invoice.payment_failed":
            return self._handle_payment_failed(obj)

        logger.info(f"Unhandled Stripe event type: {event_type}")
        return {"handled": False, "type": event_type}

    def _find_for_stripe_subscription(self, stripe_subscription: Any) -> Optional[Subscription]:
        subscription = self.get_by_stripe_id(stripe_value(stripe_subscription, "id"))
        if subscription:
            return subscription
        user_id = stripe_value(stripe_value(stripe_subscription, "metadata", {}), "userId")
        if user_id and self.db.query(User).filter(User.id == user_id).first():
            return self.get_or_create(user_id)
        return None

    def _handle_checkout_completed(self, session: Any) -> Dict[str, Any]:
        metadata = stripe_value(session, "metadata", {}) or {}
        user_id = stripe_value(metadata, "userId") or stripe_value(session, "client_reference_id")
        if not user_id or not self.db.query(User).filter(User.id == user_id).first():
            logger.warning("checkout.session.completed without a known userId")
            return {"handled": False, "type": "checkout.session.completed"}

        subscription = self.get_or_create(user_id)
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.plan = stripe_value(metadata, "plan") or subscription.plan or "premium"
        subscription.billing_cycle = stripe_value(metadata, "billingCycle") or subscription.billing_cycle or "monthly"
        subscription.stripe_customer_id = stripe_value(session, "customer") or subscription.stripe_customer_id
        subscription.stripe_subscription_id = stripe_value(session, "subscription") or subscription.stripe_subscription_id
        subscription.trial_ends_at = None
        subscription.checkout_session_id = stripe_value(session, "id") or subscription.checkout_session_id
        amount_total = stripe_value(session, "amount_total")
        if amount_total is not None:
            subscription.amount = from_cents(amount_total)
        self.db.flush()
        return {"handled": True, "type": "checkout.session.completed", "userId": user_id}

    def _handle_subscription_changed(self, stripe_subscription: Any) -> Dict[str, Any]:
        subscription = self._find_for_stripe_subscription(stripe_subscription)
        if not subscription:
            logger.warning(f"No local subscription for Stripe subscription {stripe_value(stripe_subscription, 'id')}")
            return {"handled": False, "type": "customer.subscription.updated"}
        self.apply_stripe_subscription(subscription, stripe_subscription)
        return {"handled": True, "type": "customer.subscription.updated", "userId": subscription.user_id}

    def _handle_subscription_deleted(self, stripe_subscription: Any) -> Dict[str, Any]:
        subscription = self._find_for_stripe_subscription(stripe_subscription)
        if not subscription:
            return {"handled": False, "type": "customer.subscription.deleted"}
        subscription.status = SubscriptionStatus.CANCELED.value
        subscription.cancel_at_period_end = False
        subscription.canceled_at = subscription.canceled_at or datetime.utcnow()
        self.db.flush()
        return {"handled": True, "type": "customer.subscription.deleted", "userId": subscription.user_id}

    def _handle_payment_succeeded(self, invoice: Any) -> Dict[str, Any]:
        stripe_subscription_id = stripe_value(invoice, "subscription")
        subscription = self.get_by_stripe_id(stripe_subscription_id) if stripe_subscription_id else None
        if not subscription:
            return {"handled": False, "type": "invoice.payment_succeeded"}
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.trial_ends_at = None
        result = {"handled": True, "type": "invoice.payment_succeeded", "userId": subscription.user_id}
        if stripe_value(invoice, "billing_reason") == "subscription_cycle":
            change = self.apply_scheduled_change(subscription)
            if change:
                result["scheduledChange"] = change
        self.db.flush()
        return result

    def _handle_payment_failed(self, invoice: Any) -> Dict[str, Any]:
        stripe_subscription_id = stripe_value(invoice, "subscription")
        subscription = self.get_by_stripe_id(stripe_subscription_id) if stripe_subscription_id else None
        if not subscription:
            return {"handled": False, "type": "invoice.payment_failed"}

        subscription.status = SubscriptionStatus.PAST_DUE.value
        amount_due = from_cents(stripe_value(invoice, "amount_due", 0))
        NotificationService(self.db).create(
            subscription.user_id,
            NotificationType.PAYMENT_FAILED,
            "Payment Failed",
            f"We couldn't process your payment of ${amount_due:,.2f}. "
            "Please update your payment method to keep your subscription active.",
            urgency="CRITICAL",
            entity_type="subscription",
            entity_id=subscription.id,
            link_to="/dashboard/billing",
            deliver=True,
        )
        self.db.flush()
        return {"handled": True, "type": "invoice.payment_failed", "userId": subscription.user_id}


def subscription_to_dict(subscription: Optional[Subscription]) -> Optional[Dict[str, Any]]:
    if not subscription:
        return None
    return {
        "id": subscription.id,
        "status": subscription.status,
        "plan": subscription.plan,
        "billingCycle": subscription.billing_cycle,
        "amount": money_to_float(subscription.amount),
        "cancelAtPeriodEnd": subscription.cancel_at_period_end,
        "currentPeriodEndsAt": subscription.current_period_ends_at.isoformat() if subscription.current_period_ends_at else None,
        "trialEndsAt": subscription.trial_ends_at.isoformat() if subscription.trial_ends_at else None,
        "pausedAt": subscription.paused_at.isoformat() if subscription.paused_at else None,
        "pauseResumesAt": subscription.pause_resumes_at.isoformat() if subscription.pause_resumes_at else None,
    }
