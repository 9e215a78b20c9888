"""
Billing Gateway - Abstract interface for the payment provider
Stripe is the only provider; the interface keeps route handlers testable.
"""
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List
from datetime import datetime
import logging

logger = logging.getLogger(__name__)


def stripe_value(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a Stripe object or a plain dict"""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        value = getattr(obj, key)
    except (AttributeError, KeyError):
        return default
    return default if value is None else value


def stripe_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Convert a Stripe unix timestamp to a naive UTC datetime"""
    if not value:
        return None
    return datetime.utcfromtimestamp(int(value))


def subscription_period(subscription: Any) -> Dict[str, Optional[int]]:
    """
    Current period bounds of a Stripe subscription

    Newer API versions report the period on the subscription items instead
    of the subscription itself.
    """
    start = stripe_value(subscription, "current_period_start")
    end = stripe_value(subscription, "current_period_end")
    if start is None or end is None:
        items = stripe_value(stripe_value(subscription, "items"), "data", []) or []
        if items:
            start = start or stripe_value(items[0], "current_period_start")
            end = end or stripe_value(items[0], "current_period_end")
    return {"start": start, "end": end}


class BillingGateway(ABC):
    """Abstract base class for payment providers"""

    @abstractmethod
    def get_or_create_customer(self, email: str, user_id: str, customer_id: Optional[str] = None) -> str:
        """Return an existing customer id or create a customer"""
        pass

    @abstractmethod
    def create_checkout_session(self, customer_email: Optional[str], price_id: str, success_url: str,
                                cancel_url: str, metadata: Dict[str, str]) -> Any:
        pass

    @abstractmethod
    def create_incomplete_subscription(self, customer_id: str, price_id: str, metadata: Dict[str, str],
                                       coupon_id: Optional[str] = None) -> Any:
        """Create a subscription awaiting first payment"""
        pass

    @abstractmethod
    def create_setup_intent(self, customer_id: str, metadata: Optional[Dict] = None) -> Any:
        pass

    @abstractmethod
    def retrieve_subscription(self, subscription_id: str, expand: Optional[List[str]] = None) -> Any:
        pass

    @abstractmethod
    def retrieve_checkout_session(self, session_id: str) -> Any:
        """Checkout session with its subscription expanded"""
        pass

    @abstractmethod
    def preview_subscription_change(self, customer_id: str, subscription_id: str, item_id: str,
                                    price_id: str) -> Any:
        """Preview invoice for swapping the subscription item to a new price"""
        pass

    @abstractmethod
    def modify_subscription(self, subscription_id: str, **params) -> Any:
        pass

    @abstractmethod
    def cancel_subscription(self, subscription_id: str) -> Any:
        """Cancel immediately with proration"""
        pass

    @abstractmethod
    def retrieve_coupon(self, coupon_id: str) -> Any:
        pass

    @abstractmethod
    def create_portal_session(self, customer_id: str, return_url: str,
                              flow_data: Optional[Dict] = None) -> Any:
        pass

    @abstractmethod
    def list_invoices(self, customer_id: str, limit: int = 50) -> List[Any]:
        pass

    @abstractmethod
    def get_default_payment_method(self, customer_id: str) -> Optional[Any]:
        pass

    @abstractmethod
    def construct_webhook_event(self, payload: bytes, signature: str) -> Any:
        """Verify the signature and parse the event"""
        pass


class StripeGateway(BillingGateway):
    """Stripe payment gateway"""

    def __init__(self, api_key: str, webhook_secret: Optional[str], is_test: bool = False):
        """
        Initialize Stripe gateway

        Args:
            api_key: Stripe API key (test or live)
            webhook_secret: Stripe webhook signing secret
            is_test: Whether using test mode
        """
        import stripe
        self.stripe = stripe
        self.stripe.api_key = api_key
        self.webhook_secret = webhook_secret
        self.is_test = is_test

    def get_or_create_customer(self, email: str, user_id: str, customer_id: Optional[str] = None) -> str:
        if customer_id:
            return customer_id

        existing = self.stripe.Customer.list(email=email, limit=1)
        if existing.data:
            return existing.data[0].id

        customer = self.stripe.Customer.create(email=email, metadata={"userId": user_id})
        logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
        return customer.id

    def create_checkout_session(self, customer_email: Optional[str], price_id: str, success_url: str,
                                cancel_url: str, metadata: Dict[str, str]) -> Any:
        params = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
            "client_reference_id": metadata.get("userId"),
        }
        if customer_email:
            params["customer_email"] = customer_email
        return self.stripe.checkout.Session.create(**params)

    def create_incomplete_subscription(self, customer_id: str, price_id: str, metadata: Dict[str, str],
                                       coupon_id: Optional[str] = None) -> Any:
        params = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {
                "save_default_payment_method": "on_subscription",
                "payment_method_types": ["card", "link"],
            },
            "expand": ["latest_invoice.payment_intent"],
            "metadata": metadata,
        }
        if coupon_id:
            params["discounts"] = [{"coupon": coupon_id}]
        return self.stripe.Subscription.create(**params)

    def create_setup_intent(self, customer_id: str, metadata: Optional[Dict] = None) -> Any:
        return self.stripe.SetupIntent.create(
            customer=customer_id,
            payment_method_types=["card"],
            usage="off_session",
            metadata=metadata or {},
        )

    def retrieve_subscription(self, subscription_id: str, expand: Optional[List[str]] = None) -> Any:
        if expand:
            return self.stripe.Subscription.retrieve(subscription_id, expand=expand)
        return self.stripe.Subscription.retrieve(subscription_id)

    def retrieve_checkout_session(self, session_id: str) -> Any:
        return self.stripe.checkout.Session.retrieve(session_id, expand=["subscription", "customer"])

    def preview_subscription_change(self, customer_id: str, subscription_id: str, item_id: str,
                                    price_id: str) -> Any:
        return self.stripe.Invoice.create_preview(
            customer=customer_id,
            subscription=subscription_id,
            subscription_details={
                "items": [{"id": item_id, "price": price_id}],
                "proration_behavior": "create_prorations",
            },
        )

    def modify_subscription(self, subscription_id: str, **params) -> Any:
        return self.stripe.Subscription.modify(subscription_id, **params)

    def cancel_subscription(self, subscription_id: str) -> Any:
        return self.stripe.Subscription.cancel(subscription_id, prorate=True)

    def retrieve_coupon(self, coupon_id: str) -> Any:
        return self.stripe.Coupon.retrieve(coupon_id)

    def create_portal_session(self, customer_id: str, return_url: str,
                              flow_data: Optional[Dict] = None) -> Any:
        params = {"customer": customer_id, "return_url": return_url}
        if flow_data:
            params["flow_data"] = flow_data
        return self.stripe.billing_portal.Session.create(**params)

    def list_invoices(self, customer_id: str, limit: int = 50) -> List[Any]:
        invoices = self.stripe.Invoice.list(customer=customer_id, limit=limit)
        return list(invoices.data)

    def get_default_payment_method(self, customer_id: str) -> Optional[Any]:
        customer = self.stripe.Customer.retrieve(
            customer_id, expand=["invoice_settings.default_payment_method"]
        )
        payment_method = stripe_value(stripe_value(customer, "invoice_settings"), "default_payment_method")
        if payment_method:
            return payment_method

        # Fall back to the first card on file
        methods = self.stripe.PaymentMethod.list(customer=customer_id, type="card", limit=1)
        return methods.data[0] if methods.data else None

    def construct_webhook_event(self, payload: bytes, signature: str) -> Any:
        if not self.webhook_secret:
            raise ValueError("Missing webhook secret env variable")
        return self.stripe.Webhook.construct_event(payload, signature, self.webhook_secret)


_gateway: Optional[BillingGateway] = None


def get_billing_gateway() -> BillingGateway:
    """
    Get billing gateway instance (singleton)
    Used as a FastAPI dependency so tests can override it.
    """
    global _gateway
    if _gateway is None:
        from ..config import config
        if not config.STRIPE_SECRET_KEY:
            logger.warning("STRIPE_SECRET_KEY is not set - Stripe calls will fail")
        _gateway = StripeGateway(
            api_key=config.STRIPE_SECRET_KEY or "",
            webhook_secret=config.STRIPE_WEBHOOK_SECRET,
            is_test=(config.STRIPE_SECRET_KEY or "").startswith("sk_test"),
        )
    return _gateway
