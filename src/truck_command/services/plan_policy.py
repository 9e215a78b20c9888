"""
Plan Policy - Centralized tier enforcement
Resolves the caller's effective tier from the subscription row and gates
features and usage limits against the tier tables.
"""
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional, Dict
from fastapi import HTTPException, status
import logging

from ..db import User, Subscription
from .tier_config import (
    get_effective_tier,
    has_feature,
    get_limit,
    is_within_limit,
    get_required_tier_for_feature,
    FEATURE_DESCRIPTIONS,
    TIER_LIMITS,
)

logger = logging.getLogger(__name__)


class PlanPolicyError(Exception):
    """Base exception for plan policy errors"""
    pass


class FeatureNotAvailable(PlanPolicyError):
    """Raised when the user's tier does not include a feature"""

    def __init__(self, feature: str, message: Optional[str] = None, tier: str = "basic"):
        self.feature = feature
        self.tier = tier
        self.required_tier = get_required_tier_for_feature(feature)
        if message is None:
            name = FEATURE_DESCRIPTIONS.get(feature, {}).get("name", feature)
            message = f"{name} requires {self.required_tier.capitalize()} or higher plan"
        super().__init__(message)

    def to_http(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": str(self),
                "code": "FEATURE_NOT_AVAILABLE",
                "feature": self.feature,
                "currentTier": self.tier,
                "requiredTier": self.required_tier,
                "upgradeRequired": True,
            },
        )


class UsageLimitExceeded(PlanPolicyError):
    """Raised when usage limit is exceeded"""

    def __init__(self, limit_name: str, limit, used: int, tier: str):
        self.limit_name = limit_name
        self.limit = limit
        self.used = used
        self.tier = tier
        super().__init__(f"You have reached your {TIER_LIMITS.get(tier, {}).get('name', tier)} plan limit for {limit_name} ({limit})")

    def to_http(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": str(self),
                "code": "PLAN_LIMIT_EXCEEDED",
                "limitName": self.limit_name,
                "limit": self.limit,
                "used": self.used,
                "currentTier": self.tier,
                "upgradeRequired": True,
            },
        )


class PlanPolicy:
    """
    Centralized plan policy enforcement
    """

    def __init__(self, db: Session, user: User):
        self.db = db
        self.user = user
        self._subscription: Optional[Subscription] = None
        self._loaded = False

    def _get_subscription(self) -> Optional[Subscription]:
        if not self._loaded:
            self._subscription = self.db.query(Subscription).filter(
                Subscription.user_id == self.user.id
            ).first()
            self._loaded = True
        return self._subscription

    def get_plan(self) -> str:
        """Effective tier name ('basic', 'premium', 'fleet', 'enterprise')"""
        subscription = self._get_subscription()
        if not subscription:
            return "basic"
        return get_effective_tier(subscription.plan, subscription.status)

    def check_feature_access(self, feature: str) -> bool:
        return has_feature(self.get_plan(), feature)

    def check_feature(self, feature: str, message: Optional[str] = None) -> None:
        """
        Raise FeatureNotAvailable when the tier lacks a feature

        Args:
            feature: Feature key from TIER_FEATURES
            message: Optional user-facing message
        """
        tier = self.get_plan()
        if not has_feature(tier, feature):
            logger.info(f"Feature {feature} denied for user {self.user.id} (tier: {tier})")
            raise FeatureNotAvailable(feature, message, tier)

    def require_feature(self, feature: str, message: Optional[str] = None) -> None:
        """check_feature for route handlers: converts the denial to a 403"""
        try:
            self.check_feature(feature, message)
        except FeatureNotAvailable as e:
            raise e.to_http()

    def enforce_limit(self, limit_name: str, current_count: int) -> None:
        tier = self.get_plan()
        if not is_within_limit(tier, limit_name, current_count):
            raise UsageLimitExceeded(limit_name, get_limit(tier, limit_name), current_count, tier)

    def require_within_limit(self, limit_name: str, current_count: int) -> None:
        try:
            self.enforce_limit(limit_name, current_count)
        except UsageLimitExceeded as e:
            raise e.to_http()

    def get_features(self, keys) -> Dict[str, bool]:
        tier = self.get_plan()
        return {key: has_feature(tier, key) for key in keys}


def month_start(now: Optional[datetime] = None) -> datetime:
    """First instant of the current month, used for per-month counters"""
    now = now or datetime.utcnow()
    return datetime(now.year, now.month, 1)
