"""
Subscription tier configuration
Defines limits and features for each subscription plan
"""
import math
from typing import Optional, Union

TIERS = {
    # Trial users get Basic features
    "trial": "basic",
    "basic": "basic",
    "premium": "premium",
    "fleet": "fleet",
    "enterprise": "enterprise",
}

TIER_ORDER = ["basic", "premium", "fleet", "enterprise"]

UNLIMITED = math.inf

TIER_LIMITS = {
    "basic": {
        "name": "Basic",
        "price": {"monthly": 20, "yearly": 16},
        "trucks": 1,
        "drivers": 1,
        "loadsPerMonth": 50,
        "invoicesPerMonth": 50,
        "customers": 50,
        "teamUsers": 1,
    },
    "premium": {
        "name": "Premium",
        "price": {"monthly": 35, "yearly": 28},
        "trucks": 3,
        "drivers": 3,
        "loadsPerMonth": UNLIMITED,
        "invoicesPerMonth": UNLIMITED,
        "customers": UNLIMITED,
        "teamUsers": 1,
    },
    "fleet": {
        "name": "Fleet",
        "price": {"monthly": 75, "yearly": 60},
        "trucks": 12,
        "drivers": 12,
        "loadsPerMonth": UNLIMITED,
        "invoicesPerMonth": UNLIMITED,
        "customers": UNLIMITED,
        "teamUsers": 6,  # 1 per 2 trucks
    },
    "enterprise": {
        "name": "Enterprise",
        "price": {"monthly": None, "yearly": None},  # Contact sales
        "trucks": UNLIMITED,
        "drivers": UNLIMITED,
        "loadsPerMonth": UNLIMITED,
        "invoicesPerMonth": UNLIMITED,
        "customers": UNLIMITED,
        "teamUsers": UNLIMITED,
    },
}

_BASIC_FEATURES = {
    # Dashboard
    "dashboard": True,
    "dashboardAdvancedWidgets": False,
    # Load management
    "loadManagement": True,
    "loadAssignment": True,
    "loadDocuments": True,
    # Invoicing
    "invoices": True,
    "invoiceExport": False,
    # Expenses
    "expenses": True,
    "expenseExport": False,
    # Customers
    "customers": True,
    "customerExport": False,
    # Fleet management (1 truck, 1 driver)
    "fleetManagement": True,
    "fleetReports": False,
    "maintenanceScheduling": False,
    # Compliance
    "compliance": False,
    "complianceAlerts": False,
    # IFTA & mileage
    "iftaCalculator": False,
    "stateMileage": False,
    # Fuel tracker
    "fuelTracker": True,
    "fuelTrackerReceipts": False,
    "fuelTrackerSync": False,
    # Notifications
    "notificationsInApp": True,
    "notificationsEmail": False,
    "notificationsSMS": False,
    "notificationsQuietHours": False,
    "notificationsDigest": False,
    # Notification categories
    "notifCompliance": False,
    "notifDriverAlerts": False,
    "notifLoadUpdates": True,
    "notifIFTADeadlines": False,
    "notifMaintenance": False,
    "notifFuelAlerts": False,
    "notifBilling": True,
    "notifSystem": True,
    # Export
    "exportPDF": True,
    "exportCSV": False,
    "exportExcel": False,
    # Support
    "supportEmail": True,
    "supportPhone": False,
    "supportPriority": False,
    # Integrations
    "eldIntegration": False,
    "eldIftaSync": False,
    "eldHosTracking": False,
    "eldGpsTracking": False,
    "eldDiagnostics": False,
    "quickbooksIntegration": False,
}

_PREMIUM_FEATURES = {
    **_BASIC_FEATURES,
    "dashboardAdvancedWidgets": True,
    "invoiceExport": True,
    "expenseExport": True,
    "customerExport": True,
    "compliance": True,
    "complianceAlerts": True,
    "iftaCalculator": True,
    "stateMileage": True,
    "fuelTrackerReceipts": True,
    "fuelTrackerSync": True,
    "notificationsEmail": True,
    "notificationsDigest": True,
    "notifCompliance": True,
    "notifDriverAlerts": True,
    "notifIFTADeadlines": True,
    "notifMaintenance": True,
    "notifFuelAlerts": True,
    "eldIntegration": True,
    "eldIftaSync": True,
    "eldHosTracking": True,
    "quickbooksIntegration": True,
}

# Fleet turns on every remaining standard feature
_FLEET_FEATURES = {feature: True for feature in _BASIC_FEATURES}

_ENTERPRISE_FEATURES = {
    **_FLEET_FEATURES,
    "apiAccess": True,
    "customIntegrations": True,
    "dedicatedManager": True,
    "slaGuarantee": True,
    "customReporting": True,
    "onboarding": True,
}

TIER_FEATURES = {
    "basic": _BASIC_FEATURES,
    "premium": _PREMIUM_FEATURES,
    "fleet": _FLEET_FEATURES,
    "enterprise": _ENTERPRISE_FEATURES,
}

# Feature descriptions for upgrade prompts
FEATURE_DESCRIPTIONS = {
    "compliance": {
        "name": "Compliance Tracking",
        "description": "Track document expirations, licenses, and regulatory compliance",
        "requiredTier": "premium",
    },
    "iftaCalculator": {
        "name": "IFTA Calculator",
        "description": "Generate quarterly IFTA tax reports automatically",
        "requiredTier": "premium",
    },
    "stateMileage": {
        "name": "State Mileage Tracker",
        "description": "Track miles driven in each state for IFTA reporting",
        "requiredTier": "premium",
    },
    "fleetReports": {
        "name": "Fleet Reports",
        "description": "Advanced fleet analytics and reporting",
        "requiredTier": "fleet",
    },
    "maintenanceScheduling": {
        "name": "Maintenance Scheduling",
        "description": "Schedule and track vehicle maintenance",
        "requiredTier": "fleet",
    },
    "notificationsSMS": {
        "name": "SMS Notifications",
        "description": "Receive critical alerts via text message",
        "requiredTier": "fleet",
    },
    "notificationsQuietHours": {
        "name": "Quiet Hours",
        "description": "Pause non-critical notifications during specific hours",
        "requiredTier": "fleet",
    },
    "exportCSV": {
        "name": "CSV/Excel Export",
        "description": "Export data in CSV and Excel formats",
        "requiredTier": "fleet",
    },
    "notificationsEmail": {
        "name": "Email Notifications",
        "description": "Receive notifications via email",
        "requiredTier": "premium",
    },
    "fuelTrackerReceipts": {
        "name": "Fuel Receipt Upload",
        "description": "Upload and store fuel receipts",
        "requiredTier": "premium",
    },
    "eldIntegration": {
        "name": "ELD Integration",
        "description": "Connect your ELD provider to sync vehicles, drivers and logs",
        "requiredTier": "premium",
    },
    "eldIftaSync": {
        "name": "ELD IFTA Sync",
        "description": "Import jurisdiction mileage from your ELD into IFTA reports",
        "requiredTier": "premium",
    },
    "eldHosTracking": {
        "name": "Hours of Service",
        "description": "Monitor driver duty status and available drive time",
        "requiredTier": "premium",
    },
    "eldGpsTracking": {
        "name": "GPS Fleet Tracking",
        "description": "See live vehicle locations and route history",
        "requiredTier": "fleet",
    },
    "eldDiagnostics": {
        "name": "Vehicle Diagnostics",
        "description": "Track engine fault codes reported by your ELD",
        "requiredTier": "fleet",
    },
    "quickbooksIntegration": {
        "name": "QuickBooks Integration",
        "description": "Sync expenses and invoices to QuickBooks Online",
        "requiredTier": "premium",
    },
}


def get_effective_tier(plan: Optional[str], status: Optional[str] = None) -> str:
    """Trial users get basic features regardless of the plan they picked"""
    if status == "trialing":
        return "basic"
    if not plan or plan == "null":
        return "basic"
    return plan.lower()


def has_feature(tier: Optional[str], feature: str) -> bool:
    """Check if a feature is available for a tier (unknown tiers fall back to basic)"""
    effective_tier = (tier or "basic").lower()
    tier_features = TIER_FEATURES.get(effective_tier, TIER_FEATURES["basic"])
    return tier_features.get(feature) is True


def get_limit(tier: Optional[str], limit_name: str) -> Optional[Union[int, float]]:
    effective_tier = (tier or "basic").lower()
    tier_limits = TIER_LIMITS.get(effective_tier, TIER_LIMITS["basic"])
    return tier_limits.get(limit_name)


def is_within_limit(tier: Optional[str], limit_name: str, current_count: int) -> bool:
    limit = get_limit(tier, limit_name)
    if limit == UNLIMITED:
        return True
    if limit is None:
        return False
    return current_count < limit


def get_required_tier_for_feature(feature: str) -> str:
    description = FEATURE_DESCRIPTIONS.get(feature)
    if description:
        return description["requiredTier"]
    return "premium"


def is_tier_at_least(current_tier: Optional[str], required_tier: str) -> bool:
    """Compare tiers by rank (basic < premium < fleet < enterprise)"""
    current = TIERS.get((current_tier or "basic").lower(), "basic")
    required = TIERS.get(required_tier.lower(), "basic")
    return TIER_ORDER.index(current) >= TIER_ORDER.index(required)
