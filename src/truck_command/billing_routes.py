"""
Billing API routes - Stripe subscription lifecycle
"""
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Optional
from datetime import datetime, timedelta
import uuid
import logging

import stripe

from .db import get_db, User
from .db.models import SubscriptionStatus
from .auth import get_current_user, verify_user_access
from .config import config
from .services.billing_gateway import (
    BillingGateway,
    get_billing_gateway,
    stripe_timestamp,
    stripe_value,
    subscription_period,
)
from .services.subscription_service import (
    SubscriptionService,
    PlanChangeError,
    VALID_PLANS,
    VALID_BILLING_CYCLES,
    PRICING,
    add_months,
    classify_plan_change,
    format_long_date,
    preview_proration,
    subscription_to_dict,
    unix_seconds,
)
from .services.tier_config import get_effective_tier, TIER_LIMITS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["billing"])

MAX_PAUSE_MONTHS = 3

PORTAL_FLOWS = {
    "update_payment_method": "payment_method_update",
    "update_subscription": "subscription_update",
    "cancel_subscription": "subscription_cancel",
}


class UserIdRequest(BaseModel):
    userId: Optional[str] = None


class CheckoutSessionRequest(BaseModel):
    userId: Optional[str] = None
    email: Optional[str] = None
    priceId: Optional[str] = None
    plan: Optional[str] = None
    billingCycle: Optional[str] = None
    returnUrl: Optional[str] = None


class SubscriptionIntentRequest(BaseModel):
    userId: Optional[str] = None
    email: Optional[str] = None
    plan: Optional[str] = None
    billingCycle: Optional[str] = None
    couponCode: Optional[str] = None


class CancelRequest(BaseModel):
    userId: Optional[str] = None
    reason: Optional[str] = None
    feedback: Optional[str] = None


class PauseRequest(BaseModel):
    userId: Optional[str] = None
    pauseMonths: int = 1


class PortalRequest(BaseModel):
    userId: Optional[str] = None
    returnUrl: Optional[str] = None
    mode: Optional[str] = None


class CouponRequest(BaseModel):
    couponCode: Optional[str] = None
    plan: Optional[str] = None
    billingCycle: Optional[str] = None


class PlanChangeRequest(BaseModel):
    userId: Optional[str] = None
    newPlan: Optional[str] = None
    newBillingCycle: Optional[str] = None
    couponCode: Optional[str] = None


class SessionRequest(BaseModel):
    sessionId: Optional[str] = None


class ActivateRequest(BaseModel):
    userId: Optional[str] = None
    sessionId: Optional[str] = None


def _bad_request(message: str, code: Optional[str] = None) -> HTTPException:
    detail = {"error": message, "code": code} if code else message
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _server_error(message: str, code: Optional[str] = None) -> HTTPException:
    detail = {"error": message, "code": code} if code else message
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


def _is_valid_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except ValueError:
        return False


def _retrieve_coupon(gateway: BillingGateway, code: str):
    """Retrieve a coupon by exact id, then by its uppercase form"""
    code = code.strip()
    try:
        return gateway.retrieve_coupon(code)
    except stripe.InvalidRequestError as e:
        if getattr(e, "code", None) == "resource_missing" and code.upper() != code:
            return gateway.retrieve_coupon(code.upper())
        raise


def _check_plan_change(request: PlanChangeRequest, current_user: User, missing_message: str) -> str:
    if not request.userId or not request.newPlan:
        raise _bad_request(missing_message)
    if request.newPlan not in VALID_PLANS:
        raise _bad_request("Invalid plan. Must be basic, premium, or fleet.")
    if request.newBillingCycle and request.newBillingCycle not in VALID_BILLING_CYCLES:
        raise _bad_request("Invalid billing cycle. Must be monthly or yearly.")
    if not _is_valid_uuid(request.userId):
        raise _bad_request("Invalid user ID format.")
    return verify_user_access(request.userId, current_user)


def _first_item_id(stripe_subscription) -> Optional[str]:
    items = stripe_value(stripe_value(stripe_subscription, "items"), "data", []) or []
    return stripe_value(items[0], "id") if items else None


def _payment_method_summary(stripe_subscription) -> Optional[dict]:
    payment_method = stripe_value(stripe_subscription, "default_payment_method")
    if not payment_method or isinstance(payment_method, str):
        return None
    method_type = stripe_value(payment_method, "type")
    card = stripe_value(payment_method, "card")
    if method_type == "card" and card:
        return {
            "type": "card",
            "brand": stripe_value(card, "brand"),
            "last4": stripe_value(card, "last4"),
            "expMonth": stripe_value(card, "exp_month"),
            "expYear": stripe_value(card, "exp_year"),
        }
    if method_type == "link":
        customer = stripe_value(stripe_subscription, "customer")
        return {
            "type": "link",
            "email": stripe_value(stripe_value(payment_method, "link"), "email") or stripe_value(customer, "email"),
        }
    return None


def _customer_id(value) -> Optional[str]:
    return value if isinstance(value, str) or value is None else stripe_value(value, "id")


@router.get("/subscription")
async def get_subscription(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Current subscription row with the resolved tier"""
    subscription = SubscriptionService(db).get_for_user(current_user.id)
    tier = get_effective_tier(
        subscription.plan if subscription else None,
        subscription.status if subscription else None,
    )
    return {
        "subscription": subscription_to_dict(subscription),
        "tier": tier,
        "limits": {k: (None if v == float("inf") else v) for k, v in TIER_LIMITS.get(tier, {}).items()},
    }


@router.post("/create-checkout-session")
async def create_checkout_session(
    request: CheckoutSessionRequest,
    current_user: User = Depends(get_current_user),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """Create a subscription-mode Stripe Checkout session"""
    user_id = verify_user_access(request.userId, current_user)

    price_id = request.priceId
    if not price_id and request.plan and request.billingCycle:
        price_id = config.get_stripe_price_id(request.plan, request.billingCycle)
    if not price_id:
        raise _bad_request("Missing priceId or plan/billingCycle")

    return_url = request.returnUrl or f"{config.APP_URL}/dashboard/billing"
    metadata = {
        "userId": user_id,
        "plan": request.plan or "",
        "billingCycle": request.billingCycle or "",
    }

    try:
        session = gateway.create_checkout_session(
            customer_email=request.email or current_user.email,
            price_id=price_id,
            success_url=f"{return_url}?session_id={{CHECKOUT_SESSION_ID}}&success=true",
            cancel_url=f"{return_url}?canceled=true",
            metadata=metadata,
        )
        return {"sessionId": stripe_value(session, "id"), "url": stripe_value(session, "url")}
    except stripe.StripeError as e:
        logger.error(f"Stripe checkout session failed for user {user_id}: {e}", exc_info=True)
        raise _server_error(f"Failed to create checkout session: {getattr(e, 'user_message', None) or str(e)}")


def _session_owner(session) -> Optional[str]:
    metadata = stripe_value(session, "metadata", {}) or {}
    return stripe_value(metadata, "userId") or stripe_value(session, "client_reference_id")


@router.post("/verify-session")
async def verify_session(
    request: SessionRequest,
    current_user: User = Depends(get_current_user),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """Report whether a returned checkout session was paid"""
    if not request.sessionId:
        raise _bad_request("Missing session ID")

    try:
        session = gateway.retrieve_checkout_session(request.sessionId)
    except stripe.StripeError as e:
        logger.error(f"Stripe error verifying session {request.sessionId}: {e}", exc_info=True)
        raise _server_error("Failed to verify session")

    owner = _session_owner(session)
    if owner and str(owner) != str(current_user.id):
        logger.warning(f"Checkout session {request.sessionId} belongs to another user")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Session does not belong to this user")

    if stripe_value(session, "payment_status") != "paid":
        return {"valid": False, "error": "Payment not completed"}

    metadata = stripe_value(session, "metadata", {}) or {}
    stripe_subscription = stripe_value(session, "subscription")
    period_end = subscription_period(stripe_subscription)["end"] if not isinstance(stripe_subscription, str) else None
    current_period_end = stripe_timestamp(period_end) if period_end else datetime.utcnow() + timedelta(days=30)

    return {
        "valid": True,
        "customerId": _customer_id(stripe_value(session, "customer")),
        "subscriptionId": _customer_id(stripe_subscription),
        "plan": stripe_value(metadata, "plan") or "premium",
        "billingCycle": stripe_value(metadata, "billingCycle") or "monthly",
        "currentPeriodEnd": current_period_end.isoformat(),
    }


@router.post("/activate-subscription")
async def activate_subscription(
    request: ActivateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """
    Activate the subscription for a paid checkout session

    The session is re-read from Stripe rather than trusted from the client.
    A session that was already applied, here or by the webhook, is a no-op.
    """
    user_id = verify_user_access(request.userId, current_user)
    if not request.sessionId:
        raise _bad_request("Missing session ID")

    service = SubscriptionService(db)
    existing = service.get_for_user(user_id)
    if existing and existing.checkout_session_id == request.sessionId:
        return {"success": True, "message": "Session already processed", "alreadyProcessed": True}

    try:
        session = gateway.retrieve_checkout_session(request.sessionId)
    except stripe.StripeError as e:
        logger.error(f"Stripe error activating session {request.sessionId}: {e}", exc_info=True)
        raise _server_error("Failed to verify checkout session")

    owner = _session_owner(session)
    if owner and str(owner) != str(user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Session does not belong to this user")
    if stripe_value(session, "payment_status") != "paid":
        raise _bad_request("Payment not completed")

    subscription = service.activate_from_checkout(user_id, session)
    logger.info(f"Activated {subscription.plan} subscription for user {user_id} from session {request.sessionId}")
    return {
        "success": True,
        "message": "Subscription activated",
        "alreadyProcessed": False,
        "subscription": subscription_to_dict(subscription),
    }


@router.post("/create-subscription-intent")
async def create_subscription_intent(
    request: SubscriptionIntentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """
    Create an incomplete subscription and return the PaymentIntent client secret

    The client confirms the payment with Stripe Elements. Webhooks move the
    subscription to active.
    """
    if not request.userId or not request.plan or not request.billingCycle:
        raise _bad_request("Missing required fields")

    plan = request.plan.lower()
    billing_cycle = request.billingCycle.lower()
    if plan not in VALID_PLANS:
        raise _bad_request("Invalid plan. Must be basic, premium, or fleet.")
    if billing_cycle not in VALID_BILLING_CYCLES:
        raise _bad_request("Invalid billing cycle. Must be monthly or yearly.")
    if not _is_valid_uuid(request.userId):
        raise _bad_request("Invalid user ID format.")
    user_id = verify_user_access(request.userId, current_user)

    email = request.email or current_user.email
    if not email:
        raise _bad_request("User email not found. Please ensure your profile is complete or try logging in again.")

    service = SubscriptionService(db)
    existing = service.get_for_user(user_id)
    if existing and existing.status == SubscriptionStatus.ACTIVE.value:
        raise _bad_request("You already have an active subscription. Please use the upgrade/downgrade options.")

    price_id = config.get_stripe_price_id(plan, billing_cycle)
    if not price_id:
        logger.error(f"Missing Stripe price id for {plan}/{billing_cycle}")
        raise _server_error(f"Price not configured for {plan} plan with {billing_cycle} billing. Please contact support.")
    if not price_id.startswith("price_"):
        logger.error(f"Invalid Stripe price id configured for {plan}/{billing_cycle}: {price_id}")
        raise _server_error("Invalid price configuration. Please contact support.", code="INVALID_PRICE_ID")

    try:
        customer_id = gateway.get_or_create_customer(
            email=email,
            user_id=user_id,
            customer_id=existing.stripe_customer_id if existing else None,
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe customer lookup failed for user {user_id}: {e}", exc_info=True)
        raise _server_error("Failed to create customer. Please try again.")

    applied_coupon = None
    if request.couponCode and request.couponCode.strip():
        try:
            coupon = _retrieve_coupon(gateway, request.couponCode)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise _bad_request("Invalid coupon code. Please check the code and try again.", code="INVALID_COUPON")
            logger.error(f"Coupon validation failed: {e}", exc_info=True)
            raise _bad_request("Unable to validate coupon. Please try again.", code="COUPON_ERROR")
        except stripe.StripeError as e:
            logger.error(f"Coupon validation failed: {e}", exc_info=True)
            raise _bad_request("Unable to validate coupon. Please try again.", code="COUPON_ERROR")
        if not stripe_value(coupon, "valid", False):
            raise _bad_request("This coupon has expired or is no longer valid.", code="EXPIRED_COUPON")
        applied_coupon = stripe_value(coupon, "id")

    metadata = {"userId": user_id, "plan": plan, "billingCycle": billing_cycle}
    try:
        subscription = gateway.create_incomplete_subscription(
            customer_id=customer_id,
            price_id=price_id,
            metadata=metadata,
            coupon_id=applied_coupon,
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe subscription creation failed for user {user_id}: {e}", exc_info=True)
        message = getattr(e, "user_message", None) or str(e)
        raise _server_error(f"Failed to create subscription: {message}", code=getattr(e, "code", None) or "STRIPE_ERROR")

    latest_invoice = stripe_value(subscription, "latest_invoice")
    payment_intent = stripe_value(latest_invoice, "payment_intent")
    client_secret = stripe_value(payment_intent, "client_secret")
    if not client_secret:
        logger.error(f"Subscription {stripe_value(subscription, 'id')} returned no client secret")
        raise _server_error("Unable to create payment intent. Please try again or contact support.")

    service.record_pending_subscription(
        user_id=user_id,
        plan=plan,
        billing_cycle=billing_cycle,
        customer_id=customer_id,
        stripe_subscription_id=stripe_value(subscription, "id"),
    )

    amount_due = stripe_value(latest_invoice, "amount_due")
    return {
        "clientSecret": client_secret,
        "subscriptionId": stripe_value(subscription, "id"),
        "customerId": customer_id,
        "appliedCoupon": applied_coupon,
        "amountDue": amount_due if amount_due is not None else PRICING[plan][billing_cycle],
    }


@router.post("/create-setup-intent")
async def create_setup_intent(
    request: UserIdRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """SetupIntent for saving a card without charging it"""
    user_id = verify_user_access(request.userId, current_user)
    service = SubscriptionService(db)
    subscription = service.get_for_user(user_id)

    try:
        customer_id = gateway.get_or_create_customer(
            email=current_user.email,
            user_id=user_id,
            customer_id=subscription.stripe_customer_id if subscription else None,
        )
        if subscription and not subscription.stripe_customer_id:
            subscription.stripe_customer_id = customer_id
        setup_intent = gateway.create_setup_intent(customer_id, metadata={"userId": user_id})
    except stripe.StripeError as e:
        logger.error(f"SetupIntent creation failed for user {user_id}: {e}", exc_info=True)
        raise _server_error("Failed to create setup intent")

    return {"clientSecret": stripe_value(setup_intent, "client_secret"), "customerId": customer_id}


@router.post("/reactivate-subscription")
async def reactivate_subscription(
    request: UserIdRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """Undo a pending cancellation"""
    user_id = verify_user_access(request.userId, current_user)
    subscription = SubscriptionService(db).get_for_user(user_id)

    if not subscription or not subscription.stripe_subscription_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No subscription found")
    if not subscription.cancel_at_period_end:
        raise _bad_request("Subscription is not pending cancellation")

    try:
        reactivated = gateway.modify_subscription(
            subscription.stripe_subscription_id,
            cancel_at_period_end=False,
            metadata={"reactivated_at": datetime.utcnow().isoformat(), "reactivated_by": "user"},
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe error reactivating subscription for user {user_id}: {e}", exc_info=True)
        raise _server_error("Failed to reactivate subscription with Stripe")

    subscription.cancel_at_period_end = False
    subscription.canceled_at = None
    subscription.cancellation_reason = None
    subscription.cancellation_feedback = None
    db.flush()

    return {
        "success": True,
        "message": "Your subscription has been reactivated! You will continue to be billed normally.",
        "subscription": {
            "id": stripe_value(reactivated, "id"),
            "status": stripe_value(reactivated, "status"),
            "cancel_at_period_end": stripe_value(reactivated, "cancel_at_period_end", False),
            "current_period_end": subscription_period(reactivated)["end"],
        },
    }


def _load_stripe_subscription(db: Session, gateway: BillingGateway, user_id: str, inactive_message: str,
                              expand: Optional[list] = None):
    subscription = SubscriptionService(db).get_for_user(user_id)
    if not subscription:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active subscription found")
    if not subscription.stripe_subscription_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No Stripe subscription found")

    try:
        stripe_subscription = gateway.retrieve_subscription(subscription.stripe_subscription_id, expand=expand)
    except stripe.StripeError as e:
        logger.error(f"Stripe error retrieving subscription for user {user_id}: {e}", exc_info=True)
        raise _server_error("Failed to retrieve subscription from Stripe")

    if not stripe_subscription or stripe_value(stripe_subscription, "status") == "canceled":
        raise _bad_request(inactive_message)
    return subscription, stripe_subscription


@router.post("/update-subscription")
async def update_subscription(
    request: PlanChangeRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """
    Change plan or billing cycle

    Upgrades swap the Stripe price now with proration and may carry a coupon.
    Downgrades are stored as a scheduled change and the current plan is kept
    until the renewal invoice is paid.
    """
    user_id = _check_plan_change(request, current_user, "Missing required fields: userId and newPlan are required")
    subscription, stripe_subscription = _load_stripe_subscription(
        db, gateway, user_id, "Subscription is not active. Please create a new subscription."
    )

    item_id = _first_item_id(stripe_subscription)
    if not item_id:
        raise _bad_request("Could not find subscription item")

    new_plan = request.newPlan
    current_plan = subscription.plan
    current_cycle = subscription.billing_cycle or "monthly"
    billing_cycle = request.newBillingCycle or current_cycle
    period = subscription_period(stripe_subscription)
    try:
        change_type, cross_scenario, days_remaining = classify_plan_change(
            current_plan, current_cycle, new_plan, billing_cycle, period
        )
    except PlanChangeError as e:
        raise _bad_request(str(e))

    price_id = config.get_stripe_price_id(new_plan, billing_cycle)
    if not price_id:
        logger.error(f"Missing Stripe price id for {new_plan}/{billing_cycle}")
        raise _server_error(f"Price not configured for {new_plan} plan with {billing_cycle} billing. Please contact support.")

    was_canceled = bool(stripe_value(stripe_subscription, "cancel_at_period_end", False))
    service = SubscriptionService(db)
    applied_coupon = None

    try:
        if change_type == "downgrade":
            metadata = dict(stripe_value(stripe_subscription, "metadata", {}) or {})
            metadata.update({
                "scheduled_downgrade": "true",
                "scheduled_plan": new_plan,
                "scheduled_billing_cycle": billing_cycle,
                "scheduled_price_id": price_id,
            })
            params = {"metadata": metadata}
            if was_canceled:
                params["cancel_at_period_end"] = False
            updated = gateway.modify_subscription(subscription.stripe_subscription_id, **params)
        else:
            params = {
                "items": [{"id": item_id, "price": price_id}],
                "proration_behavior": "create_prorations",
                "cancel_at_period_end": False,
                "metadata": {"plan": new_plan, "billingCycle": billing_cycle},
            }
            if request.couponCode and request.couponCode.strip():
                applied_coupon = _upgrade_coupon(gateway, request.couponCode)
                if applied_coupon:
                    params["discounts"] = [{"coupon": applied_coupon["id"]}]
            updated = gateway.modify_subscription(subscription.stripe_subscription_id, **params)
    except stripe.StripeError as e:
        logger.error(f"Stripe error updating subscription for user {user_id}: {e}", exc_info=True)
        raise _server_error(f"Failed to update subscription: {getattr(e, 'user_message', None) or str(e)}")

    if change_type == "downgrade":
        service.schedule_downgrade(subscription, new_plan, billing_cycle)
    else:
        service.apply_plan_change(subscription, new_plan, billing_cycle)
    if was_canceled:
        logger.info(f"Cleared pending cancellation for user {user_id} during {change_type}")

    period_end = subscription_period(updated)["end"] or period["end"]
    current_period_end = stripe_timestamp(period_end) if period_end else None
    cleared = " Your pending cancellation has been removed." if was_canceled else ""
    is_cycle_change = new_plan == current_plan and billing_cycle != current_cycle
    plan_name = new_plan.capitalize()
    effective_on = format_long_date(current_period_end) if current_period_end else "your next renewal"

    if change_type == "upgrade" and is_cycle_change:
        message = f"Your billing has been switched to {billing_cycle}! You're now saving 20% with annual billing.{cleared}"
    elif change_type == "upgrade":
        message = f"Your plan has been upgraded to {plan_name}! You now have access to all new features.{cleared}"
    elif is_cycle_change:
        message = f"Your billing will switch to {billing_cycle} on {effective_on}.{cleared}"
    else:
        message = f"Your plan will change to {plan_name} on {effective_on}. You'll keep your current features until then.{cleared}"

    downgrade = change_type == "downgrade"
    return {
        "success": True,
        "changeType": change_type,
        "cancellationCleared": was_canceled,
        "crossScenario": cross_scenario,
        "appliedCoupon": applied_coupon,
        "subscription": {
            "plan": subscription.plan,
            "scheduledPlan": new_plan if downgrade else None,
            "scheduledBillingCycle": billing_cycle if downgrade else None,
            "billingCycle": subscription.billing_cycle,
            "status": stripe_value(updated, "status"),
            "currentPeriodEnd": current_period_end.isoformat() if current_period_end else None,
            "daysRemaining": days_remaining,
        },
        "message": message,
    }


def _upgrade_coupon(gateway: BillingGateway, code: str) -> Optional[dict]:
    """A bad coupon never blocks an upgrade; it is just left off"""
    try:
        coupon = _retrieve_coupon(gateway, code)
    except stripe.StripeError as e:
        logger.info(f"Coupon {code!r} not applied to upgrade: {e}")
        return None
    if not coupon or not stripe_value(coupon, "valid", False):
        return None
    amount_off = stripe_value(coupon, "amount_off")
    return {
        "id": stripe_value(coupon, "id"),
        "name": stripe_value(coupon, "name"),
        "percentOff": stripe_value(coupon, "percent_off"),
        "amountOff": amount_off / 100 if amount_off else None,
        "duration": stripe_value(coupon, "duration"),
    }


@router.post("/preview-upgrade")
async def preview_upgrade(
    request: PlanChangeRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """Credit, charge and amount due now for a plan change, plus the card on file"""
    user_id = _check_plan_change(request, current_user, "Missing required fields")
    subscription, stripe_subscription = _load_stripe_subscription(
        db, gateway, user_id, "Subscription is not active", expand=["default_payment_method", "customer"]
    )

    item_id = _first_item_id(stripe_subscription)
    if not item_id:
        raise _bad_request("Could not find subscription item")

    current_cycle = subscription.billing_cycle or "monthly"
    billing_cycle = request.newBillingCycle or current_cycle
    if request.newPlan == subscription.plan and billing_cycle == current_cycle:
        raise _bad_request("You are already on this plan with this billing cycle")

    price_id = config.get_stripe_price_id(request.newPlan, billing_cycle)
    if not price_id:
        logger.error(f"Missing Stripe price id for {request.newPlan}/{billing_cycle}")
        raise _server_error(
            f"Price not configured for {request.newPlan} plan with {billing_cycle} billing. Please contact support."
        )

    customer_id = _customer_id(stripe_value(stripe_subscription, "customer"))
    period = subscription_period(stripe_subscription)
    try:
        gateway.preview_subscription_change(customer_id, subscription.stripe_subscription_id, item_id, price_id)
    except stripe.StripeError as e:
        # Fall back to an estimate that credits the whole current price
        logger.warning(f"Proration preview failed for user {user_id}: {e}")
        period = None

    cancel_at = stripe_value(stripe_subscription, "cancel_at")
    return {
        "success": True,
        "proration": preview_proration(subscription.plan, current_cycle, request.newPlan, billing_cycle, period),
        "paymentMethod": _payment_method_summary(stripe_subscription),
        "customerId": customer_id,
        "isCanceledAtPeriodEnd": bool(stripe_value(stripe_subscription, "cancel_at_period_end", False)),
        "cancelAt": stripe_timestamp(cancel_at).isoformat() if cancel_at else None,
    }


@router.post("/cancel-subscription")
async def cancel_subscription(
    request: CancelRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """Cancel at period end; access continues until then"""
    user_id = verify_user_access(request.userId, current_user)
    subscription = SubscriptionService(db).get_for_user(user_id)

    if not subscription or not subscription.stripe_subscription_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active subscription found to cancel")
    if subscription.status == SubscriptionStatus.CANCELED.value:
        raise _bad_request("Subscription is already canceled")

    try:
        gateway.modify_subscription(
            subscription.stripe_subscription_id,
            cancel_at_period_end=True,
            metadata={"cancellation_reason": request.reason or "", "canceled_by": "user"},
        )
    except stripe.CardError as e:
        raise _bad_request(f"Payment method error: {getattr(e, 'user_message', None) or str(e)}")
    except stripe.InvalidRequestError as e:
        raise _bad_request(f"Invalid request: {getattr(e, 'user_message', None) or str(e)}")
    except stripe.StripeError as e:
        logger.error(f"Stripe error canceling subscription for user {user_id}: {e}", exc_info=True)
        raise _server_error("Failed to cancel subscription with Stripe")

    subscription.cancel_at_period_end = True
    subscription.canceled_at = datetime.utcnow()
    subscription.cancellation_reason = request.reason
    subscription.cancellation_feedback = request.feedback
    db.flush()

    return {
        "success": True,
        "message": "Subscription canceled successfully. You will retain access until the end of your current billing period.",
        "cancelAtPeriodEnd": True,
        "currentPeriodEndsAt": subscription.current_period_ends_at.isoformat() if subscription.current_period_ends_at else None,
    }


@router.post("/pause-subscription")
async def pause_subscription(
    request: PauseRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """Pause collection for 1-3 months"""
    if not request.userId:
        raise _bad_request("Missing userId")
    if request.pauseMonths < 1 or request.pauseMonths > MAX_PAUSE_MONTHS:
        raise _bad_request(f"Pause duration must be between 1 and {MAX_PAUSE_MONTHS} months")
    user_id = verify_user_access(request.userId, current_user)

    subscription = SubscriptionService(db).get_for_user(user_id)
    if not subscription or not subscription.stripe_subscription_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active subscription found")
    if subscription.status == SubscriptionStatus.PAUSED.value or subscription.paused_at:
        raise _bad_request("Subscription is already paused")
    if subscription.status != SubscriptionStatus.ACTIVE.value:
        raise _bad_request("Only active subscriptions can be paused")

    now = datetime.utcnow()
    resume_date = add_months(now, request.pauseMonths)
    try:
        gateway.modify_subscription(
            subscription.stripe_subscription_id,
            pause_collection={"behavior": "void", "resumes_at": unix_seconds(resume_date)},
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe error pausing subscription for user {user_id}: {e}", exc_info=True)
        raise _server_error("Failed to pause subscription. Please try again.")

    subscription.status = SubscriptionStatus.PAUSED.value
    subscription.paused_at = now
    subscription.pause_resumes_at = resume_date
    db.flush()

    months = request.pauseMonths
    return {
        "success": True,
        "message": (
            f"Your subscription has been paused for {months} month{'s' if months > 1 else ''}. "
            f"It will automatically resume on {format_long_date(resume_date)}."
        ),
        "pausedUntil": resume_date.isoformat(),
        "pauseMonths": months,
    }


@router.post("/resume-subscription")
async def resume_subscription(
    request: UserIdRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    user_id = verify_user_access(request.userId, current_user)
    subscription = SubscriptionService(db).get_for_user(user_id)

    if not subscription or not subscription.stripe_subscription_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No subscription found")
    if subscription.status != SubscriptionStatus.PAUSED.value and not subscription.paused_at:
        raise _bad_request("Subscription is not paused")

    try:
        gateway.modify_subscription(subscription.stripe_subscription_id, pause_collection="")
    except stripe.StripeError as e:
        logger.error(f"Stripe error resuming subscription for user {user_id}: {e}", exc_info=True)
        raise _server_error("Failed to resume subscription. Please try again.")

    subscription.status = SubscriptionStatus.ACTIVE.value
    subscription.paused_at = None
    subscription.pause_resumes_at = None
    db.flush()

    return {
        "success": True,
        "message": "Your subscription has been resumed! Billing will continue from your next billing cycle.",
    }


@router.post("/apply-retention-coupon")
async def apply_retention_coupon(
    request: UserIdRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """Retention offer shown in the cancellation flow: $5 off for 2 months"""
    user_id = verify_user_access(request.userId, current_user)
    subscription = SubscriptionService(db).get_for_user(user_id)

    if not subscription or not subscription.stripe_subscription_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active subscription found")
    if subscription.status != SubscriptionStatus.ACTIVE.value:
        raise _bad_request("Subscription is not active")

    try:
        gateway.modify_subscription(
            subscription.stripe_subscription_id,
            discounts=[{"coupon": config.STRIPE_RETENTION_COUPON_ID}],
            metadata={"retention_coupon_applied": datetime.utcnow().isoformat()},
        )
    except stripe.StripeError as e:
        code = getattr(e, "code", None)
        if code == "resource_missing":
            raise _bad_request("Discount code not found. Please contact support.")
        if code == "coupon_expired":
            raise _bad_request("This discount has expired. Please contact support for alternatives.")
        logger.error(f"Stripe error applying retention coupon for user {user_id}: {e}", exc_info=True)
        raise _server_error("Failed to apply discount. Please try again.")

    subscription.retention_coupon_applied_at = datetime.utcnow()
    db.flush()

    return {
        "success": True,
        "message": "Discount applied successfully! You'll save $5 on your next 2 billing cycles.",
        "discount": {"amount": "$5 off", "duration": "2 months"},
    }


@router.post("/create-portal-session")
async def create_portal_session(
    request: PortalRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    user_id = verify_user_access(request.userId, current_user)
    subscription = SubscriptionService(db).get_for_user(user_id)
    if not subscription or not subscription.stripe_customer_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")

    flow_data = None
    flow_type = PORTAL_FLOWS.get(request.mode or "")
    if flow_type == "payment_method_update":
        flow_data = {"type": flow_type}
    elif flow_type and subscription.stripe_subscription_id:
        key = "subscription_update" if flow_type == "subscription_update" else "subscription_cancel"
        flow_data = {"type": flow_type, key: {"subscription": subscription.stripe_subscription_id}}

    try:
        session = gateway.create_portal_session(
            subscription.stripe_customer_id,
            return_url=request.returnUrl or f"{config.APP_URL}/dashboard/billing",
            flow_data=flow_data,
        )
    except stripe.StripeError as e:
        logger.error(f"Portal session failed for user {user_id}: {e}", exc_info=True)
        raise _server_error("Failed to create portal session")

    return {"url": stripe_value(session, "url")}


@router.post("/get-billing-history")
async def get_billing_history(
    request: UserIdRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    user_id = verify_user_access(request.userId, current_user)
    subscription = SubscriptionService(db).get_for_user(user_id)
    if not subscription or not subscription.stripe_customer_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active subscription found")

    try:
        invoices = gateway.list_invoices(subscription.stripe_customer_id, limit=50)
    except stripe.StripeError as e:
        logger.error(f"Stripe error fetching invoices for user {user_id}: {e}", exc_info=True)
        raise _server_error("Failed to fetch billing history from Stripe")

    formatted = []
    for invoice in invoices:
        lines = stripe_value(stripe_value(invoice, "lines"), "data", []) or []
        stripe_subscription = stripe_value(invoice, "subscription")
        period_start = stripe_value(invoice, "period_start")
        period_end = stripe_value(invoice, "period_end")
        formatted.append({
            "id": stripe_value(invoice, "id"),
            "number": stripe_value(invoice, "number"),
            "amount_paid": stripe_value(invoice, "amount_paid", 0),
            "total": stripe_value(invoice, "total", 0),
            "status": stripe_value(invoice, "status"),
            "created": (stripe_value(invoice, "created", 0) or 0) * 1000,
            "currency": stripe_value(invoice, "currency"),
            "description": (
                stripe_value(invoice, "description")
                or (stripe_value(lines[0], "description") if lines else None)
                or ("Subscription" if stripe_subscription else "Payment")
            ),
            "invoice_pdf": stripe_value(invoice, "invoice_pdf"),
            "hosted_invoice_url": stripe_value(invoice, "hosted_invoice_url"),
            "period_start": period_start * 1000 if period_start else None,
            "period_end": period_end * 1000 if period_end else None,
            "subscription_id": stripe_subscription if isinstance(stripe_subscription, str) else stripe_value(stripe_subscription, "id"),
        })

    return {"success": True, "invoices": formatted}


@router.post("/get-payment-method")
async def get_payment_method(
    request: UserIdRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    user_id = verify_user_access(request.userId, current_user)
    subscription = SubscriptionService(db).get_for_user(user_id)
    if not subscription or not subscription.stripe_customer_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active subscription found")

    try:
        payment_method = gateway.get_default_payment_method(subscription.stripe_customer_id)
    except stripe.StripeError as e:
        logger.error(f"Stripe error fetching payment method for user {user_id}: {e}", exc_info=True)
        raise _server_error("Failed to fetch payment method from Stripe")

    card = stripe_value(payment_method, "card") if payment_method else None
    if not card:
        return {"success": True, "paymentMethod": None}

    return {
        "success": True,
        "paymentMethod": {
            "id": stripe_value(payment_method, "id"),
            "brand": stripe_value(card, "brand"),
            "last4": stripe_value(card, "last4"),
            "expMonth": stripe_value(card, "exp_month"),
            "expYear": stripe_value(card, "exp_year"),
        },
    }


@router.post("/validate-coupon")
async def validate_coupon(
    request: CouponRequest,
    current_user: User = Depends(get_current_user),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """Check a coupon and preview the discounted price"""
    if not request.couponCode or not request.couponCode.strip():
        raise _bad_request("Coupon code is required")

    try:
        coupon = _retrieve_coupon(gateway, request.couponCode)
    except stripe.InvalidRequestError as e:
        if getattr(e, "code", None) == "resource_missing":
            return {"valid": False, "error": "Invalid coupon code"}
        logger.error(f"Error validating coupon: {e}", exc_info=True)
        raise _server_error("Failed to validate coupon")
    except stripe.StripeError as e:
        logger.error(f"Error validating coupon: {e}", exc_info=True)
        raise _server_error("Failed to validate coupon")

    if not coupon or not stripe_value(coupon, "valid", False):
        return {"valid": False, "error": "This coupon is no longer valid"}

    redeem_by = stripe_value(coupon, "redeem_by")
    if redeem_by and redeem_by < unix_seconds(datetime.utcnow()):
        return {"valid": False, "error": "This coupon has expired"}

    max_redemptions = stripe_value(coupon, "max_redemptions")
    if max_redemptions and (stripe_value(coupon, "times_redeemed", 0) or 0) >= max_redemptions:
        return {"valid": False, "error": "This coupon has reached its maximum redemptions"}

    original_price = 0
    if request.plan and request.billingCycle:
        original_price = PRICING.get(request.plan, {}).get(request.billingCycle, 0)

    percent_off = stripe_value(coupon, "percent_off")
    amount_off = stripe_value(coupon, "amount_off")
    discount_amount = 0
    discount_display = ""
    if percent_off:
        discount_amount = round(original_price * (percent_off / 100))
        discount_display = f"{percent_off:g}% off"
    elif amount_off:
        discount_amount = min(amount_off, original_price)
        discount_display = f"${amount_off / 100:.2f} off"

    duration = stripe_value(coupon, "duration")
    duration_in_months = stripe_value(coupon, "duration_in_months")
    if duration == "once":
        duration_message = "Applied to first payment only"
    elif duration == "repeating":
        duration_message = f"Applied for {duration_in_months} month{'s' if (duration_in_months or 0) > 1 else ''}"
    elif duration == "forever":
        duration_message = "Applied to all future payments"
    else:
        duration_message = ""

    final_price = max(0, original_price - discount_amount)
    return {
        "valid": True,
        "coupon": {
            "id": stripe_value(coupon, "id"),
            "name": stripe_value(coupon, "name") or stripe_value(coupon, "id"),
            "percentOff": percent_off,
            "amountOff": amount_off / 100 if amount_off else None,
            "duration": duration,
            "durationInMonths": duration_in_months,
            "discountDisplay": discount_display,
            "durationMessage": duration_message,
        },
        "pricing": {
            "originalPrice": original_price / 100,
            "discountAmount": discount_amount / 100,
            "finalPrice": final_price / 100,
        } if request.plan and request.billingCycle else None,
    }


@router.post("/sync-subscription")
async def sync_subscription(
    request: UserIdRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """Pull the Stripe subscription and copy it onto the local row"""
    user_id = verify_user_access(request.userId, current_user, missing_message="User ID is required")
    service = SubscriptionService(db)
    subscription = service.get_for_user(user_id)
    if not subscription or not subscription.stripe_subscription_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No Stripe subscription found")

    try:
        stripe_subscription = gateway.retrieve_subscription(subscription.stripe_subscription_id)
    except stripe.StripeError as e:
        logger.error(f"Stripe error syncing subscription for user {user_id}: {e}", exc_info=True)
        raise _server_error("Failed to sync subscription with Stripe")

    service.apply_stripe_subscription(subscription, stripe_subscription)
    return {"success": True, "subscription": subscription_to_dict(subscription)}


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """
    Stripe webhook endpoint with signature verification
    """
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise _bad_request("No signature")

    body = await request.body()
    try:
        event = gateway.construct_webhook_event(body, signature)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Stripe webhook signature verification failed: {e}")
        raise _bad_request(f"Webhook signature verification failed: {e}")
    except ValueError as e:
        logger.warning(f"Invalid Stripe webhook payload: {e}")
        raise _bad_request(f"Webhook Error: {e}")

    try:
        result = SubscriptionService(db).handle_webhook_event(event)
    except Exception as e:
        logger.error(f"Stripe webhook processing failed: {e}", exc_info=True)
        raise _server_error("Webhook processing failed")

    change = result.get("scheduledChange")
    if change:
        _push_scheduled_price(gateway, change)

    return {"received": True, "processed": result.get("handled", False)}


def _push_scheduled_price(gateway: BillingGateway, change: dict) -> None:
    """
    Move the Stripe subscription onto a downgrade that just took effect

    A Stripe failure fails the webhook so the rollback and Stripe's retry
    keep both sides in step.
    """
    price_id = config.get_stripe_price_id(change["plan"], change["billingCycle"])
    if not price_id:
        logger.error(f"Missing Stripe price id for scheduled {change['plan']}/{change['billingCycle']}")
        raise _server_error("Price not configured for scheduled plan change")
    try:
        stripe_subscription = gateway.retrieve_subscription(change["subscriptionId"])
        item_id = _first_item_id(stripe_subscription)
        if not item_id:
            raise _server_error("Could not find subscription item")
        gateway.modify_subscription(
            change["subscriptionId"],
            items=[{"id": item_id, "price": price_id}],
            proration_behavior="none",
            metadata={"plan": change["plan"], "billingCycle": change["billingCycle"], "scheduled_downgrade": ""},
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe error applying scheduled change to {change['subscriptionId']}: {e}", exc_info=True)
        raise _server_error("Webhook processing failed")
    logger.info(f"Applied scheduled {change['plan']}/{change['billingCycle']} to {change['subscriptionId']}")
