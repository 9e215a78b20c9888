"""
Tests for tier configuration and plan gating
"""
import pytest

from truck_command.db import Load
from truck_command.services.plan_policy import PlanPolicy, FeatureNotAvailable, UsageLimitExceeded
from truck_command.services.tier_config import (
    UNLIMITED,
    get_effective_tier,
    get_limit,
    has_feature,
    is_tier_at_least,
    is_within_limit,
)
from conftest import make_user


class TestTierConfig:

    def test_trial_gets_basic(self):
        assert get_effective_tier("fleet", "trialing") == "basic"
        assert get_effective_tier(None) == "basic"
        assert get_effective_tier("Premium", "active") == "premium"

    def test_basic_limits(self):
        assert get_limit("basic", "trucks") == 1
        assert get_limit("basic", "loadsPerMonth") == 50
        assert get_limit("premium", "loadsPerMonth") == UNLIMITED

    def test_within_limit_is_strict(self):
        assert is_within_limit("basic", "loadsPerMonth", 49)
        assert not is_within_limit("basic", "loadsPerMonth", 50)
        assert is_within_limit("enterprise", "trucks", 10_000)
        assert not is_within_limit("basic", "unknownLimit", 0)

    def test_features(self):
        assert not has_feature("basic", "iftaCalculator")
        assert has_feature("premium", "iftaCalculator")
        assert not has_feature("premium", "notificationsSMS")
        assert has_feature("fleet", "notificationsSMS")
        assert has_feature("nonsense", "dashboard")

    def test_tier_order(self):
        assert is_tier_at_least("fleet", "premium")
        assert not is_tier_at_least("basic", "premium")
        assert is_tier_at_least("trial", "basic")


class TestPlanPolicy:

    def test_feature_denied_for_basic(self, db_session, test_user):
        with pytest.raises(FeatureNotAvailable) as exc_info:
            PlanPolicy(db_session, test_user).check_feature("compliance")
        assert exc_info.value.required_tier == "premium"

    def test_trialing_subscription_is_basic(self, db_session):
        user = make_user(db_session, "trial@example.com", plan="premium", status="trialing")
        assert PlanPolicy(db_session, user).get_plan() == "basic"

    def test_limit_exceeded(self, db_session, test_user):
        with pytest.raises(UsageLimitExceeded):
            PlanPolicy(db_session, test_user).enforce_limit("trucks", 1)


class TestFeatureGates:

    def test_basic_user_blocked_from_ifta(self, client, auth_headers):
        response = client.get("/api/ifta/summary?quarter=2024-Q1", headers=auth_headers)
        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "FEATURE_NOT_AVAILABLE"
        assert body["upgradeRequired"] is True
        assert body["requiredTier"] == "premium"

    def test_basic_user_blocked_from_compliance(self, client, auth_headers):
        response = client.get("/api/compliance", headers=auth_headers)
        assert response.status_code == 403
        assert response.json()["feature"] == "compliance"

    def test_premium_user_gets_ifta_summary(self, client, premium_headers):
        response = client.get("/api/ifta/summary?quarter=2024-Q1", headers=premium_headers)
        assert response.status_code == 200
        assert response.json()["totalMiles"] == 0

    def test_bad_quarter_is_rejected(self, client, premium_headers):
        response = client.get("/api/ifta/summary?quarter=Q1-2024", headers=premium_headers)
        assert response.status_code == 400
        assert "YYYY-QN" in response.json()["error"]

    def test_monthly_load_limit(self, client, db_session, test_user, auth_headers):
        for i in range(50):
            db_session.add(Load(user_id=test_user.id, load_number=f"L{10000 + i}",
                            origin="Dallas, TX", destination="Tulsa, OK"))
        db_session.commit()

        response = client.post("/api/loads", json={"customer": "Acme", "origin": "Dallas, TX",
                                                   "destination": "Tulsa, OK", "rate": 1000},
                               headers=auth_headers)
        assert response.status_code == 403
        assert response.json()["code"] == "PLAN_LIMIT_EXCEEDED"

    def test_requires_authentication(self, client):
        response = client.get("/api/ifta/summary?quarter=2024-Q1")
        assert response.status_code == 401
