"""
Pytest configuration and fixtures
"""
import pytest
import json
import os
import sys
from pathlib import Path
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
import stripe

# Add repo root and src to path
root_path = Path(__file__).parent.parent
sys.path.insert(0, str(root_path))
sys.path.insert(0, str(root_path / "src"))

# Set test environment variables before importing
os.environ["ENV"] = "test"
os.environ["SECRET_KEY"] = "test-secret-key-for-truck-command-tests-only-32"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CORS_ORIGINS"] = "http://localhost:3000"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("CRON_SECRET", None)
os.environ.pop("RESEND_API_KEY", None)
os.environ.pop("TWILIO_ACCOUNT_SID", None)

# Import after setting env vars
from truck_command.db import Base, get_db, User, Subscription
from truck_command.auth import get_password_hash, create_access_token
from truck_command.services.billing_gateway import BillingGateway, get_billing_gateway
from api_server import app


class FakeBillingGateway(BillingGateway):
    """Records calls instead of talking to Stripe"""

    def __init__(self):
        self.calls: List[tuple] = []
        # Stripe objects by id; tests fill these in
        self.subscriptions: Dict[str, dict] = {}
        self.sessions: Dict[str, dict] = {}
        self.coupons: Dict[str, object] = {}
        self.modify_error: Optional[Exception] = None
        self.preview_error: Optional[Exception] = None

    def get_or_create_customer(self, email: str, user_id: str, customer_id: Optional[str] = None) -> str:
        self.calls.append(("get_or_create_customer", email))
        return customer_id or "cus_test"

    def create_checkout_session(self, customer_email, price_id, success_url, cancel_url, metadata):
        self.calls.append(("create_checkout_session", price_id))
        return {"id": "cs_test", "url": "https://checkout.stripe.test/cs_test"}

    def create_incomplete_subscription(self, customer_id, price_id, metadata, coupon_id=None):
        self.calls.append(("create_incomplete_subscription", price_id, coupon_id))
        return {
            "id": "sub_test",
            "status": "incomplete",
            "latest_invoice": {"amount_due": 3150, "payment_intent": {"client_secret": "pi_secret"}},
        }

    def create_setup_intent(self, customer_id, metadata=None):
        return {"id": "seti_test", "client_secret": "seti_secret"}

    def retrieve_subscription(self, subscription_id, expand=None):
        self.calls.append(("retrieve_subscription", subscription_id, expand))
        return self.subscriptions.get(subscription_id, {"id": subscription_id, "status": "active"})

    def retrieve_checkout_session(self, session_id):
        self.calls.append(("retrieve_checkout_session", session_id))
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: {session_id}", "id",
                                             code="resource_missing")
        return self.sessions[session_id]

    def preview_subscription_change(self, customer_id, subscription_id, item_id, price_id):
        self.calls.append(("preview_subscription_change", subscription_id, item_id, price_id))
        if self.preview_error:
            raise self.preview_error
        return {"amount_due": 1500}

    def modify_subscription(self, subscription_id, **params):
        self.calls.append(("modify_subscription", subscription_id, params))
        if self.modify_error:
            raise self.modify_error
        current = self.subscriptions.get(subscription_id, {"id": subscription_id, "status": "active"})
        return {**current, **params}

    def cancel_subscription(self, subscription_id):
        self.calls.append(("cancel_subscription", subscription_id))
        return {"id": subscription_id, "status": "canceled"}

    def retrieve_coupon(self, coupon_id):
        coupon = self.coupons.get(coupon_id, {"id": coupon_id, "valid": True, "percent_off": 10})
        if isinstance(coupon, Exception):
            raise coupon
        return coupon

    def create_portal_session(self, customer_id, return_url, flow_data=None):
        return {"url": "https://billing.stripe.test/session"}

    def list_invoices(self, customer_id, limit=50):
        return []

    def get_default_payment_method(self, customer_id):
        return None

    def construct_webhook_event(self, payload, signature):
        if signature != "t=1,v1=valid":
            raise ValueError("Invalid payload")
        return json.loads(payload)


@pytest.fixture(scope="function")
def test_engine():
    """Fresh in-memory database per test"""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine):
    """Create a database session for each test"""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    session = TestingSessionLocal()

    # Same commit/rollback contract as the real dependency
    def override_get_db():
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db

    yield session

    session.close()
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def billing_gateway():
    gateway = FakeBillingGateway()
    app.dependency_overrides[get_billing_gateway] = lambda: gateway
    return gateway


@pytest.fixture(scope="function")
def client(db_session, billing_gateway):
    """Create test client"""
    return TestClient(app)


def make_user(db_session: Session, email: str = "test@example.com", plan: Optional[str] = None,
              status: str = "active") -> User:
    user = User(
        email=email,
        hashed_password=get_password_hash("testpassword123"),
        full_name="Test User",
        business_name="Test Trucking LLC",
        is_active=True,
    )
    db_session.add(user)
    db_session.flush()
    if plan:
        db_session.add(Subscription(
            user_id=user.id,
            plan=plan,
            status=status,
            billing_cycle="monthly",
            stripe_customer_id="cus_test",
            stripe_subscription_id=f"sub_{user.id[:8]}",
            current_period_ends_at=datetime.utcnow() + timedelta(days=30),
        ))
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def test_user(db_session: Session):
    """Basic tier user without a subscription"""
    return make_user(db_session)


@pytest.fixture(scope="function")
def premium_user(db_session: Session):
    return make_user(db_session, email="premium@example.com", plan="premium")


@pytest.fixture(scope="function")
def fleet_user(db_session: Session):
    return make_user(db_session, email="fleet@example.com", plan="fleet")


def headers_for(user: User) -> Dict[str, str]:
    token = create_access_token(data={"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
def auth_headers(test_user):
    return headers_for(test_user)


@pytest.fixture(scope="function")
def premium_headers(premium_user):
    return headers_for(premium_user)


@pytest.fixture(scope="function")
def fleet_headers(fleet_user):
    return headers_for(fleet_user)
