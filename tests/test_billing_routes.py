"""
Tests for billing endpoints against a fake Stripe gateway
"""
import json
from datetime import datetime, timedelta

import pytest
import stripe

from truck_command.config import config
from truck_command.db import Notification, Subscription
from truck_command.services.billing_gateway import stripe_timestamp
from truck_command.services.subscription_service import (
    PlanChangeError,
    SubscriptionService,
    classify_plan_change,
    preview_proration,
    unix_seconds,
)
from conftest import make_user, headers_for


PRICE_IDS = {
    "STRIPE_BASIC_MONTHLY_PRICE_ID": "price_basic_monthly",
    "STRIPE_BASIC_YEARLY_PRICE_ID": "price_basic_yearly",
    "STRIPE_PREMIUM_MONTHLY_PRICE_ID": "price_premium_monthly",
    "STRIPE_PREMIUM_YEARLY_PRICE_ID": "price_premium_yearly",
    "STRIPE_FLEET_MONTHLY_PRICE_ID": "price_fleet_monthly",
    "STRIPE_FLEET_YEARLY_PRICE_ID": "price_fleet_yearly",
}


@pytest.fixture
def price_ids(monkeypatch):
    for name, value in PRICE_IDS.items():
        monkeypatch.setenv(name, value)


def subscription_for(db_session, user) -> Subscription:
    db_session.expire_all()
    return db_session.query(Subscription).filter(Subscription.user_id == user.id).one()


def post_event(client, event_type, obj):
    event = {"id": "evt_test", "type": event_type, "data": {"object": obj}}
    return client.post("/api/webhook", content=json.dumps(event), headers={"stripe-signature": "t=1,v1=valid"})


def stripe_error(code):
    return stripe.InvalidRequestError(f"Stripe error {code}", "coupon", code=code)


class TestOwnershipChecks:

    def test_missing_user_id(self, client, auth_headers):
        response = client.post("/api/create-checkout-session", json={"priceId": "price_123"}, headers=auth_headers)
        assert response.status_code == 400

    def test_other_users_id(self, client, auth_headers, premium_user):
        response = client.post("/api/create-checkout-session",
                               json={"userId": premium_user.id, "priceId": "price_123"},
                               headers=auth_headers)
        assert response.status_code == 401

    def test_checkout_session(self, client, test_user, auth_headers, billing_gateway):
        response = client.post("/api/create-checkout-session",
                               json={"userId": test_user.id, "priceId": "price_123"},
                               headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {"sessionId": "cs_test", "url": "https://checkout.stripe.test/cs_test"}
        assert ("create_checkout_session", "price_123") in billing_gateway.calls


class TestSubscriptionLifecycle:

    def test_subscription_reports_tier(self, client, premium_headers):
        response = client.get("/api/subscription", headers=premium_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["tier"] == "premium"
        assert data["limits"]["trucks"] == 3
        assert data["limits"]["loadsPerMonth"] is None

    def test_reactivate_requires_pending_cancellation(self, client, premium_user, premium_headers):
        response = client.post("/api/reactivate-subscription", json={"userId": premium_user.id},
                               headers=premium_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "Subscription is not pending cancellation"

    def test_reactivate_without_subscription(self, client, test_user, auth_headers):
        response = client.post("/api/reactivate-subscription", json={"userId": test_user.id}, headers=auth_headers)
        assert response.status_code == 404

    def test_cancel_then_reactivate(self, client, db_session, premium_user, premium_headers, billing_gateway):
        cancel = client.post("/api/cancel-subscription",
                             json={"userId": premium_user.id, "reason": "too_expensive"},
                             headers=premium_headers)
        assert cancel.status_code == 200
        assert cancel.json()["cancelAtPeriodEnd"] is True

        subscription = db_session.query(Subscription).filter(Subscription.user_id == premium_user.id).one()
        assert subscription.cancel_at_period_end
        assert subscription.cancellation_reason == "too_expensive"

        reactivate = client.post("/api/reactivate-subscription", json={"userId": premium_user.id},
                                 headers=premium_headers)
        assert reactivate.status_code == 200
        db_session.refresh(subscription)
        assert not subscription.cancel_at_period_end
        assert subscription.canceled_at is None


class TestCoupons:

    def test_coupon_required(self, client, auth_headers):
        response = client.post("/api/validate-coupon", json={"couponCode": "  "}, headers=auth_headers)
        assert response.status_code == 400

    def test_coupon_preview(self, client, auth_headers):
        response = client.post("/api/validate-coupon",
                               json={"couponCode": "SAVE10", "plan": "premium", "billingCycle": "monthly"},
                               headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["coupon"]["discountDisplay"] == "10% off"
        assert data["pricing"] == {"originalPrice": 35.0, "discountAmount": 3.5, "finalPrice": 31.5}


class TestWebhook:

    def test_missing_signature(self, client):
        response = client.post("/api/webhook", content=b"{}")
        assert response.status_code == 400
        assert response.json()["error"] == "No signature"

    def test_invalid_payload(self, client):
        response = client.post("/api/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"})
        assert response.status_code == 400
        assert response.json()["error"].startswith("Webhook Error")


class TestPauseAndResume:

    @pytest.mark.parametrize("months", [0, 4])
    def test_pause_duration_limits(self, client, premium_user, premium_headers, months):
        response = client.post("/api/pause-subscription", json={"userId": premium_user.id, "pauseMonths": months},
                               headers=premium_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "Pause duration must be between 1 and 3 months"

    def test_pause_sets_resume_date(self, client, db_session, premium_user, premium_headers, billing_gateway):
        response = client.post("/api/pause-subscription", json={"userId": premium_user.id, "pauseMonths": 2},
                               headers=premium_headers)
        assert response.status_code == 200
        assert response.json()["pauseMonths"] == 2

        subscription = subscription_for(db_session, premium_user)
        assert subscription.status == "paused"
        assert subscription.paused_at is not None

        name, subscription_id, params = billing_gateway.calls[-1]
        assert (name, subscription_id) == ("modify_subscription", subscription.stripe_subscription_id)
        assert params["pause_collection"]["behavior"] == "void"
        assert params["pause_collection"]["resumes_at"] == unix_seconds(subscription.pause_resumes_at)

    def test_already_paused(self, client, premium_user, premium_headers):
        body = {"userId": premium_user.id, "pauseMonths": 1}
        assert client.post("/api/pause-subscription", json=body, headers=premium_headers).status_code == 200

        again = client.post("/api/pause-subscription", json=body, headers=premium_headers)
        assert again.status_code == 400
        assert again.json()["error"] == "Subscription is already paused"

    def test_only_active_subscriptions_pause(self, client, db_session):
        user = make_user(db_session, email="late@example.com", plan="premium", status="past_due")
        response = client.post("/api/pause-subscription", json={"userId": user.id}, headers=headers_for(user))
        assert response.status_code == 400
        assert response.json()["error"] == "Only active subscriptions can be paused"

    def test_pause_without_subscription(self, client, test_user, auth_headers):
        response = client.post("/api/pause-subscription", json={"userId": test_user.id}, headers=auth_headers)
        assert response.status_code == 404

    def test_resume_requires_pause(self, client, premium_user, premium_headers):
        response = client.post("/api/resume-subscription", json={"userId": premium_user.id}, headers=premium_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "Subscription is not paused"

    def test_pause_then_resume(self, client, db_session, premium_user, premium_headers, billing_gateway):
        client.post("/api/pause-subscription", json={"userId": premium_user.id}, headers=premium_headers)
        response = client.post("/api/resume-subscription", json={"userId": premium_user.id}, headers=premium_headers)
        assert response.status_code == 200

        subscription = subscription_for(db_session, premium_user)
        assert subscription.status == "active"
        assert subscription.paused_at is None
        assert subscription.pause_resumes_at is None
        assert billing_gateway.calls[-1][2] == {"pause_collection": ""}


class TestStripePauseState:

    def stripe_subscription(self, subscription, **fields):
        return {
            "id": subscription.stripe_subscription_id,
            "status": "active",
            "customer": "cus_test",
            "metadata": {"plan": "premium", "billingCycle": "monthly"},
            **fields,
        }

    def test_update_event_keeps_pause(self, client, db_session, premium_user, premium_headers):
        client.post("/api/pause-subscription", json={"userId": premium_user.id, "pauseMonths": 1},
                    headers=premium_headers)
        subscription = subscription_for(db_session, premium_user)
        resumes_at = unix_seconds(datetime.utcnow() + timedelta(days=31))

        response = post_event(client, "customer.subscription.updated", self.stripe_subscription(
            subscription, pause_collection={"behavior": "void", "resumes_at": resumes_at},
        ))
        assert response.status_code == 200
        assert response.json() == {"received": True, "processed": True}

        subscription = subscription_for(db_session, premium_user)
        assert subscription.status == "paused"
        assert subscription.paused_at is not None
        assert subscription.pause_resumes_at == stripe_timestamp(resumes_at)

    def test_pause_started_in_stripe(self, db_session, premium_user):
        subscription = subscription_for(db_session, premium_user)
        resumes_at = unix_seconds(datetime(2030, 1, 1))
        SubscriptionService(db_session).apply_stripe_subscription(subscription, self.stripe_subscription(
            subscription, pause_collection={"behavior": "void", "resumes_at": resumes_at},
        ))
        assert subscription.status == "paused"
        assert subscription.pause_resumes_at == datetime(2030, 1, 1)

    def test_resumed_in_stripe_clears_pause(self, db_session, premium_user):
        subscription = subscription_for(db_session, premium_user)
        subscription.status = "paused"
        subscription.paused_at = datetime.utcnow()
        subscription.pause_resumes_at = datetime.utcnow() + timedelta(days=10)

        SubscriptionService(db_session).apply_stripe_subscription(subscription, self.stripe_subscription(subscription))
        assert subscription.status == "active"
        assert subscription.paused_at is None
        assert subscription.pause_resumes_at is None

    def test_canceled_wins_over_pause(self, db_session, premium_user):
        subscription = subscription_for(db_session, premium_user)
        SubscriptionService(db_session).apply_stripe_subscription(subscription, self.stripe_subscription(
            subscription, status="canceled", pause_collection={"behavior": "void"},
        ))
        assert subscription.status == "canceled"


class TestRetentionCoupon:

    def test_applies_retention_coupon(self, client, db_session, premium_user, premium_headers, billing_gateway):
        response = client.post("/api/apply-retention-coupon", json={"userId": premium_user.id},
                               headers=premium_headers)
        assert response.status_code == 200
        assert response.json()["discount"] == {"amount": "$5 off", "duration": "2 months"}
        assert billing_gateway.calls[-1][2]["discounts"] == [{"coupon": config.STRIPE_RETENTION_COUPON_ID}]
        assert subscription_for(db_session, premium_user).retention_coupon_applied_at is not None

    @pytest.mark.parametrize("code, message", [
        ("resource_missing", "Discount code not found. Please contact support."),
        ("coupon_expired", "This discount has expired. Please contact support for alternatives."),
    ])
    def test_stripe_coupon_errors(self, client, db_session, premium_user, premium_headers, billing_gateway,
                                  code, message):
        billing_gateway.modify_error = stripe_error(code)
        response = client.post("/api/apply-retention-coupon", json={"userId": premium_user.id},
                               headers=premium_headers)
        assert response.status_code == 400
        assert response.json()["error"] == message
        assert subscription_for(db_session, premium_user).retention_coupon_applied_at is None

    def test_other_stripe_error(self, client, premium_user, premium_headers, billing_gateway):
        billing_gateway.modify_error = stripe.APIConnectionError("Network down")
        response = client.post("/api/apply-retention-coupon", json={"userId": premium_user.id},
                               headers=premium_headers)
        assert response.status_code == 500

    def test_requires_active_subscription(self, client, db_session):
        user = make_user(db_session, email="trial@example.com", plan="premium", status="trialing")
        response = client.post("/api/apply-retention-coupon", json={"userId": user.id}, headers=headers_for(user))
        assert response.status_code == 400
        assert response.json()["error"] == "Subscription is not active"


class TestSubscriptionIntent:

    def body(self, user, **overrides):
        return {"userId": user.id, "plan": "premium", "billingCycle": "monthly", **overrides}

    @pytest.mark.parametrize("overrides, message", [
        ({"plan": "gold"}, "Invalid plan. Must be basic, premium, or fleet."),
        ({"billingCycle": "weekly"}, "Invalid billing cycle. Must be monthly or yearly."),
        ({"userId": "not-a-uuid"}, "Invalid user ID format."),
    ])
    def test_invalid_input(self, client, test_user, auth_headers, overrides, message):
        response = client.post("/api/create-subscription-intent", json=self.body(test_user, **overrides),
                               headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"] == message

    def test_active_subscription_must_change_plan(self, client, premium_user, premium_headers, price_ids):
        response = client.post("/api/create-subscription-intent", json=self.body(premium_user, plan="fleet"),
                               headers=premium_headers)
        assert response.status_code == 400
        assert "upgrade/downgrade" in response.json()["error"]

    def test_unknown_coupon(self, client, test_user, auth_headers, billing_gateway, price_ids):
        billing_gateway.coupons["NOPE"] = stripe_error("resource_missing")
        response = client.post("/api/create-subscription-intent", json=self.body(test_user, couponCode="NOPE"),
                               headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_COUPON"

    def test_expired_coupon(self, client, test_user, auth_headers, billing_gateway, price_ids):
        billing_gateway.coupons["OLD"] = {"id": "OLD", "valid": False}
        response = client.post("/api/create-subscription-intent", json=self.body(test_user, couponCode="OLD"),
                               headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["code"] == "EXPIRED_COUPON"

    def test_creates_incomplete_subscription(self, client, db_session, test_user, auth_headers, billing_gateway,
                                             price_ids):
        response = client.post("/api/create-subscription-intent", json=self.body(test_user, couponCode="SAVE10"),
                               headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["clientSecret"] == "pi_secret"
        assert data["appliedCoupon"] == "SAVE10"
        assert ("create_incomplete_subscription", "price_premium_monthly", "SAVE10") in billing_gateway.calls

        subscription = subscription_for(db_session, test_user)
        assert subscription.status == "incomplete"
        assert subscription.plan == "premium"
        assert subscription.amount == 35
        assert subscription.stripe_subscription_id == "sub_test"

    def test_unexpired_trial_is_kept(self, client, db_session, billing_gateway, price_ids):
        user = make_user(db_session, email="trial@example.com", plan="basic", status="trialing")
        trial_end = datetime.utcnow() + timedelta(days=5)
        subscription_for(db_session, user).trial_ends_at = trial_end
        db_session.commit()

        response = client.post("/api/create-subscription-intent", json=self.body(user), headers=headers_for(user))
        assert response.status_code == 200

        subscription = subscription_for(db_session, user)
        assert subscription.status == "trialing"
        assert subscription.plan == "basic"
        assert subscription.trial_ends_at == trial_end
        assert subscription.stripe_subscription_id == "sub_test"


class TestSyncSubscription:

    def test_requires_stripe_subscription(self, client, test_user, auth_headers):
        response = client.post("/api/sync-subscription", json={"userId": test_user.id}, headers=auth_headers)
        assert response.status_code == 404

    def test_copies_stripe_state(self, client, premium_user, premium_headers, billing_gateway):
        stripe_id = f"sub_{premium_user.id[:8]}"
        period_end = unix_seconds(datetime(2025, 6, 1))
        billing_gateway.subscriptions[stripe_id] = {
            "id": stripe_id,
            "status": "past_due",
            "customer": "cus_9",
            "cancel_at_period_end": True,
            "metadata": {"plan": "fleet"},
            "items": {"data": [{
                "id": "si_1",
                "price": {"unit_amount": 72000, "recurring": {"interval": "year"}},
                "current_period_start": unix_seconds(datetime(2024, 6, 1)),
                "current_period_end": period_end,
            }]},
        }

        response = client.post("/api/sync-subscription", json={"userId": premium_user.id}, headers=premium_headers)
        assert response.status_code == 200
        data = response.json()["subscription"]
        assert data["status"] == "past_due"
        assert data["plan"] == "fleet"
        assert data["billingCycle"] == "yearly"
        assert data["amount"] == 720.0
        assert data["cancelAtPeriodEnd"] is True
        assert data["currentPeriodEndsAt"] == "2025-06-01T00:00:00"


class TestWebhookEvents:

    def test_checkout_completed_activates(self, client, db_session, test_user):
        response = post_event(client, "checkout.session.completed", {
            "id": "cs_1",
            "metadata": {"userId": test_user.id, "plan": "fleet", "billingCycle": "monthly"},
            "customer": "cus_1",
            "subscription": "sub_1",
            "amount_total": 7500,
        })
        assert response.json()["processed"] is True

        subscription = subscription_for(db_session, test_user)
        assert subscription.status == "active"
        assert subscription.plan == "fleet"
        assert subscription.amount == 75
        assert subscription.checkout_session_id == "cs_1"

    def test_payment_failed_marks_past_due(self, client, db_session, premium_user):
        subscription = subscription_for(db_session, premium_user)
        response = post_event(client, "invoice.payment_failed", {
            "id": "in_1", "subscription": subscription.stripe_subscription_id, "amount_due": 3500,
        })
        assert response.json()["processed"] is True

        assert subscription_for(db_session, premium_user).status == "past_due"
        notification = db_session.query(Notification).filter(Notification.user_id == premium_user.id).one()
        assert notification.notification_type == "PAYMENT_FAILED"
        assert notification.urgency == "CRITICAL"
        assert "$35.00" in notification.message

    def test_payment_succeeded_reactivates(self, client, db_session):
        user = make_user(db_session, email="late@example.com", plan="premium", status="past_due")
        subscription = subscription_for(db_session, user)
        post_event(client, "invoice.payment_succeeded", {"id": "in_2", "subscription": subscription.stripe_subscription_id})
        assert subscription_for(db_session, user).status == "active"

    def test_subscription_deleted(self, client, db_session, premium_user):
        subscription = subscription_for(db_session, premium_user)
        post_event(client, "customer.subscription.deleted", {"id": subscription.stripe_subscription_id})
        subscription = subscription_for(db_session, premium_user)
        assert subscription.status == "canceled"
        assert subscription.canceled_at is not None

    def test_unhandled_event(self, client):
        response = post_event(client, "customer.created", {"id": "cus_1"})
        assert response.status_code == 200
        assert response.json() == {"received": True, "processed": False}

    def test_renewal_applies_scheduled_downgrade(self, client, db_session, premium_user, billing_gateway, price_ids):
        service = SubscriptionService(db_session)
        subscription = subscription_for(db_session, premium_user)
        service.schedule_downgrade(subscription, "basic", "monthly")
        db_session.commit()
        stripe_id = subscription.stripe_subscription_id
        billing_gateway.subscriptions[stripe_id] = {"id": stripe_id, "status": "active", "items": {"data": [{"id": "si_1"}]}}

        response = post_event(client, "invoice.payment_succeeded", {
            "id": "in_3", "subscription": stripe_id, "billing_reason": "subscription_cycle",
        })
        assert response.status_code == 200

        subscription = subscription_for(db_session, premium_user)
        assert subscription.plan == "basic"
        assert subscription.amount == 20
        assert subscription.scheduled_plan is None
        params = billing_gateway.calls[-1][2]
        assert params["items"] == [{"id": "si_1", "price": "price_basic_monthly"}]
        assert params["proration_behavior"] == "none"


class TestPlanChangeRules:

    NOW = datetime(2024, 3, 15, 12, 0)

    def period(self, days_before, days_after):
        return {
            "start": unix_seconds(self.NOW - timedelta(days=days_before)),
            "end": unix_seconds(self.NOW + timedelta(days=days_after)),
        }

    def test_same_plan_rejected(self):
        with pytest.raises(PlanChangeError):
            classify_plan_change("premium", "monthly", "premium", "monthly", self.period(10, 20), self.NOW)

    @pytest.mark.parametrize("current, new, expected", [
        (("basic", "monthly"), ("fleet", "monthly"), "upgrade"),
        (("fleet", "monthly"), ("basic", "monthly"), "downgrade"),
        (("premium", "monthly"), ("premium", "yearly"), "upgrade"),
        (("premium", "yearly"), ("premium", "monthly"), "downgrade"),
        (("fleet", "yearly"), ("premium", "yearly"), "downgrade"),
    ])
    def test_change_type(self, current, new, expected):
        change_type, cross, _ = classify_plan_change(*current, *new, self.period(10, 20), self.NOW)
        assert change_type == expected
        assert cross is None

    def test_lower_plan_on_yearly_cycle(self):
        change_type, cross, days_remaining = classify_plan_change(
            "premium", "monthly", "basic", "yearly", self.period(10, 20), self.NOW
        )
        assert change_type == "upgrade"
        assert days_remaining == 20
        assert cross["requiresPayment"] is True
        assert cross["newPrice"] == 192.0
        assert cross["remainingValue"] == pytest.approx(23.33, abs=0.01)

    def test_proration_credit_rounds_to_dollars(self):
        preview = preview_proration("premium", "monthly", "fleet", "monthly", self.period(15, 15), self.NOW)
        assert preview["daysRemaining"] == 15
        assert preview["totalDays"] == 30
        assert preview["credit"] == 18.0
        assert preview["charge"] == 75.0
        assert preview["amountDueNow"] == 57.0
        assert preview["nextBillingDate"] == "April 15, 2024"

    def test_proration_estimate_without_period(self):
        preview = preview_proration("premium", "monthly", "fleet", "yearly", None, self.NOW)
        assert preview["estimatedOnly"] is True
        assert preview["credit"] == 35.0
        assert preview["amountDueNow"] == 685.0
        assert preview["nextBillingDate"] == "March 15, 2025"


class TestUpdateSubscription:

    @pytest.fixture
    def stripe_subscription(self, premium_user, billing_gateway, price_ids):
        stripe_id = f"sub_{premium_user.id[:8]}"
        now = datetime.utcnow()
        subscription = {
            "id": stripe_id,
            "status": "active",
            "customer": "cus_test",
            "cancel_at_period_end": False,
            "metadata": {"plan": "premium", "billingCycle": "monthly"},
            "current_period_start": unix_seconds(now - timedelta(days=10)),
            "current_period_end": unix_seconds(now + timedelta(days=20)),
            "items": {"data": [{"id": "si_1"}]},
        }
        billing_gateway.subscriptions[stripe_id] = subscription
        return subscription

    def change(self, client, user, headers, **body):
        return client.post("/api/update-subscription", json={"userId": user.id, **body}, headers=headers)

    @pytest.mark.parametrize("body, message", [
        ({"newPlan": None}, "Missing required fields: userId and newPlan are required"),
        ({"newPlan": "gold"}, "Invalid plan. Must be basic, premium, or fleet."),
        ({"newPlan": "fleet", "newBillingCycle": "weekly"}, "Invalid billing cycle. Must be monthly or yearly."),
        ({"newPlan": "fleet", "userId": "12345"}, "Invalid user ID format."),
    ])
    def test_invalid_input(self, client, premium_user, premium_headers, body, message):
        response = self.change(client, premium_user, premium_headers, **body)
        assert response.status_code == 400
        assert response.json()["error"] == message

    def test_without_subscription(self, client, test_user, auth_headers):
        response = self.change(client, test_user, auth_headers, newPlan="fleet")
        assert response.status_code == 404

    def test_without_stripe_subscription(self, client, db_session, test_user, auth_headers):
        db_session.add(Subscription(user_id=test_user.id, plan="basic", status="active", billing_cycle="monthly"))
        db_session.commit()
        response = self.change(client, test_user, auth_headers, newPlan="fleet")
        assert response.status_code == 404
        assert response.json()["error"] == "No Stripe subscription found"

    def test_canceled_in_stripe(self, client, premium_user, premium_headers, stripe_subscription):
        stripe_subscription["status"] = "canceled"
        response = self.change(client, premium_user, premium_headers, newPlan="fleet")
        assert response.status_code == 400
        assert response.json()["error"] == "Subscription is not active. Please create a new subscription."

    def test_same_plan(self, client, premium_user, premium_headers, stripe_subscription):
        response = self.change(client, premium_user, premium_headers, newPlan="premium")
        assert response.status_code == 400
        assert response.json()["error"] == "You are already on this plan with this billing cycle"

    def test_upgrade_with_coupon(self, client, db_session, premium_user, premium_headers, billing_gateway,
                                 stripe_subscription):
        response = self.change(client, premium_user, premium_headers, newPlan="fleet", couponCode="SAVE10")
        assert response.status_code == 200
        data = response.json()
        assert data["changeType"] == "upgrade"
        assert data["appliedCoupon"]["id"] == "SAVE10"
        assert data["subscription"]["plan"] == "fleet"
        assert data["message"].startswith("Your plan has been upgraded to Fleet!")

        params = billing_gateway.calls[-1][2]
        assert params["items"] == [{"id": "si_1", "price": "price_fleet_monthly"}]
        assert params["proration_behavior"] == "create_prorations"
        assert params["discounts"] == [{"coupon": "SAVE10"}]

        subscription = subscription_for(db_session, premium_user)
        assert subscription.plan == "fleet"
        assert subscription.amount == 75

    def test_bad_coupon_does_not_block_upgrade(self, client, premium_user, premium_headers, billing_gateway,
                                               stripe_subscription):
        billing_gateway.coupons["NOPE"] = stripe_error("resource_missing")
        response = self.change(client, premium_user, premium_headers, newPlan="fleet", couponCode="NOPE")
        assert response.status_code == 200
        assert response.json()["appliedCoupon"] is None
        assert "discounts" not in billing_gateway.calls[-1][2]

    def test_switch_to_yearly(self, client, premium_user, premium_headers, stripe_subscription):
        response = self.change(client, premium_user, premium_headers, newPlan="premium", newBillingCycle="yearly")
        data = response.json()
        assert data["changeType"] == "upgrade"
        assert "switched to yearly" in data["message"]
        assert data["subscription"]["billingCycle"] == "yearly"

    def test_downgrade_is_scheduled(self, client, db_session, premium_user, premium_headers, billing_gateway,
                                    stripe_subscription):
        response = self.change(client, premium_user, premium_headers, newPlan="basic")
        assert response.status_code == 200
        data = response.json()
        assert data["changeType"] == "downgrade"
        assert data["subscription"]["plan"] == "premium"
        assert data["subscription"]["scheduledPlan"] == "basic"
        assert "You'll keep your current features until then." in data["message"]

        params = billing_gateway.calls[-1][2]
        assert "items" not in params
        assert params["metadata"]["scheduled_plan"] == "basic"
        assert params["metadata"]["scheduled_price_id"] == "price_basic_monthly"

        subscription = subscription_for(db_session, premium_user)
        assert subscription.plan == "premium"
        assert subscription.scheduled_plan == "basic"
        assert subscription.scheduled_amount == 20

    def test_downgrade_clears_pending_cancellation(self, client, db_session, premium_user, premium_headers,
                                                   billing_gateway, stripe_subscription):
        stripe_subscription["cancel_at_period_end"] = True
        subscription = subscription_for(db_session, premium_user)
        subscription.cancel_at_period_end = True
        subscription.canceled_at = datetime.utcnow()
        db_session.commit()

        data = self.change(client, premium_user, premium_headers, newPlan="basic").json()
        assert data["cancellationCleared"] is True
        assert "pending cancellation has been removed" in data["message"]
        assert billing_gateway.calls[-1][2]["cancel_at_period_end"] is False

        subscription = subscription_for(db_session, premium_user)
        assert subscription.cancel_at_period_end is False
        assert subscription.canceled_at is None

    def test_upgrade_drops_scheduled_downgrade(self, client, db_session, premium_user, premium_headers,
                                               stripe_subscription):
        self.change(client, premium_user, premium_headers, newPlan="basic")
        self.change(client, premium_user, premium_headers, newPlan="fleet")
        subscription = subscription_for(db_session, premium_user)
        assert subscription.plan == "fleet"
        assert subscription.scheduled_plan is None


class TestPreviewUpgrade:

    @pytest.fixture
    def stripe_subscription(self, premium_user, billing_gateway, price_ids):
        stripe_id = f"sub_{premium_user.id[:8]}"
        now = datetime.utcnow()
        subscription = {
            "id": stripe_id,
            "status": "active",
            "customer": {"id": "cus_test", "email": "premium@example.com"},
            "cancel_at_period_end": False,
            "current_period_start": unix_seconds(now - timedelta(days=15)),
            "current_period_end": unix_seconds(now + timedelta(days=15)),
            "default_payment_method": {
                "type": "card",
                "card": {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030},
            },
            "items": {"data": [{"id": "si_1"}]},
        }
        billing_gateway.subscriptions[stripe_id] = subscription
        return subscription

    def preview(self, client, user, headers, **body):
        return client.post("/api/preview-upgrade", json={"userId": user.id, **body}, headers=headers)

    def test_preview(self, client, premium_user, premium_headers, billing_gateway, stripe_subscription):
        response = self.preview(client, premium_user, premium_headers, newPlan="fleet")
        assert response.status_code == 200
        data = response.json()
        assert data["customerId"] == "cus_test"
        assert data["paymentMethod"]["last4"] == "4242"
        assert data["proration"]["newPlanPrice"] == 75.0
        assert data["proration"]["charge"] == 75.0
        assert "estimatedOnly" not in data["proration"]

        stripe_id = stripe_subscription["id"]
        assert ("retrieve_subscription", stripe_id, ["default_payment_method", "customer"]) in billing_gateway.calls
        assert ("preview_subscription_change", stripe_id, "si_1", "price_fleet_monthly") in billing_gateway.calls

    def test_estimate_when_preview_fails(self, client, premium_user, premium_headers, billing_gateway,
                                         stripe_subscription):
        billing_gateway.preview_error = stripe.APIConnectionError("Network down")
        data = self.preview(client, premium_user, premium_headers, newPlan="fleet").json()
        assert data["proration"]["estimatedOnly"] is True
        assert data["proration"]["credit"] == 35.0
        assert data["proration"]["amountDueNow"] == 40.0

    def test_same_plan(self, client, premium_user, premium_headers, stripe_subscription):
        response = self.preview(client, premium_user, premium_headers, newPlan="premium")
        assert response.status_code == 400

    def test_without_subscription(self, client, test_user, auth_headers):
        response = self.preview(client, test_user, auth_headers, newPlan="fleet")
        assert response.status_code == 404


class TestCheckoutReturn:

    def paid_session(self, user, **overrides):
        return {
            "id": "cs_paid",
            "payment_status": "paid",
            "metadata": {"userId": user.id, "plan": "fleet", "billingCycle": "yearly"},
            "customer": "cus_new",
            "subscription": {
                "id": "sub_new",
                "status": "active",
                "customer": "cus_new",
                "metadata": {"plan": "fleet", "billingCycle": "yearly"},
                "current_period_start": unix_seconds(datetime(2024, 1, 1)),
                "current_period_end": unix_seconds(datetime(2025, 1, 1)),
            },
            **overrides,
        }

    def test_verify_requires_session_id(self, client, auth_headers):
        response = client.post("/api/verify-session", json={}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "Missing session ID"

    def test_verify_unpaid(self, client, test_user, auth_headers, billing_gateway):
        billing_gateway.sessions["cs_open"] = self.paid_session(test_user, id="cs_open", payment_status="unpaid")
        response = client.post("/api/verify-session", json={"sessionId": "cs_open"}, headers=auth_headers)
        assert response.json() == {"valid": False, "error": "Payment not completed"}

    def test_verify_paid(self, client, test_user, auth_headers, billing_gateway):
        billing_gateway.sessions["cs_paid"] = self.paid_session(test_user)
        data = client.post("/api/verify-session", json={"sessionId": "cs_paid"}, headers=auth_headers).json()
        assert data["valid"] is True
        assert data["plan"] == "fleet"
        assert data["billingCycle"] == "yearly"
        assert data["customerId"] == "cus_new"
        assert data["subscriptionId"] == "sub_new"
        assert data["currentPeriodEnd"] == "2025-01-01T00:00:00"

    def test_verify_other_users_session(self, client, test_user, premium_user, auth_headers, billing_gateway):
        billing_gateway.sessions["cs_paid"] = self.paid_session(premium_user)
        response = client.post("/api/verify-session", json={"sessionId": "cs_paid"}, headers=auth_headers)
        assert response.status_code == 403

    def test_verify_stripe_failure(self, client, auth_headers):
        response = client.post("/api/verify-session", json={"sessionId": "cs_missing"}, headers=auth_headers)
        assert response.status_code == 500

    def test_activate_once(self, client, db_session, test_user, auth_headers, billing_gateway):
        billing_gateway.sessions["cs_paid"] = self.paid_session(test_user)
        body = {"userId": test_user.id, "sessionId": "cs_paid"}

        first = client.post("/api/activate-subscription", json=body, headers=auth_headers)
        assert first.status_code == 200
        assert first.json()["subscription"]["plan"] == "fleet"
        assert first.json()["subscription"]["status"] == "active"

        subscription = subscription_for(db_session, test_user)
        assert subscription.stripe_subscription_id == "sub_new"
        assert subscription.stripe_customer_id == "cus_new"
        assert subscription.amount == 720
        assert subscription.checkout_session_id == "cs_paid"

        second = client.post("/api/activate-subscription", json=body, headers=auth_headers)
        assert second.json()["alreadyProcessed"] is True
        assert billing_gateway.calls.count(("retrieve_checkout_session", "cs_paid")) == 1

    def test_activate_after_webhook_is_noop(self, client, test_user, auth_headers, billing_gateway):
        post_event(client, "checkout.session.completed", {
            "id": "cs_paid",
            "metadata": {"userId": test_user.id, "plan": "fleet", "billingCycle": "yearly"},
            "customer": "cus_new",
            "subscription": "sub_new",
        })
        response = client.post("/api/activate-subscription", json={"userId": test_user.id, "sessionId": "cs_paid"},
                               headers=auth_headers)
        assert response.json()["alreadyProcessed"] is True

    def test_activate_unpaid(self, client, test_user, auth_headers, billing_gateway):
        billing_gateway.sessions["cs_open"] = self.paid_session(test_user, id="cs_open", payment_status="unpaid")
        response = client.post("/api/activate-subscription", json={"userId": test_user.id, "sessionId": "cs_open"},
                               headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "Payment not completed"
