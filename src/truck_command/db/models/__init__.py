"""
Database models for Truck Command
Every row is scoped to a user through user_id (directly or via its parent)
"""
from .user import User
from .subscription import Subscription, SubscriptionStatus, SubscriptionPlan, BillingCycle
from .customer import Customer
from .invoice import Invoice, InvoiceItem, InvoicePayment, InvoiceActivity, InvoiceStatus
from .load import Load, LoadStatus, Earning
from .fleet import Vehicle, Driver
from .compliance import ComplianceItem, ComplianceStatus
from .fuel import FuelEntry
from .expense import Expense, EXPENSE_CATEGORIES
from .ifta import IftaTrip, IftaReport, TripSource
from .mileage import MileageTrip, MileageCrossing
from .eld import (
    EldConnection,
    EldConnectionStatus,
    EldVehicleLocation,
    EldHosLog,
    EldHosDailyLog,
    EldFaultCode,
    EldIftaMileage,
    EldSyncJob,
    SyncJobStatus,
)
from .quickbooks import (
    QuickBooksConnection,
    QuickBooksConnectionStatus,
    QuickBooksAccountMapping,
    QuickBooksSyncRecord,
    QuickBooksSyncHistory,
)
from .notification import Notification, NotificationPreference, NotificationType

__all__ = [
    "User",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionPlan",
    "BillingCycle",
    "Customer",
    "Invoice",
    "InvoiceItem",
    "InvoicePayment",
    "InvoiceActivity",
    "InvoiceStatus",
    "Load",
    "LoadStatus",
    "Earning",
    "Vehicle",
    "Driver",
    "ComplianceItem",
    "ComplianceStatus",
    "FuelEntry",
    "Expense",
    "EXPENSE_CATEGORIES",
    "IftaTrip",
    "IftaReport",
    "TripSource",
    "MileageTrip",
    "MileageCrossing",
    "EldConnection",
    "EldConnectionStatus",
    "EldVehicleLocation",
    "EldHosLog",
    "EldHosDailyLog",
    "EldFaultCode",
    "EldIftaMileage",
    "EldSyncJob",
    "SyncJobStatus",
    "QuickBooksConnection",
    "QuickBooksConnectionStatus",
    "QuickBooksAccountMapping",
    "QuickBooksSyncRecord",
    "QuickBooksSyncHistory",
    "Notification",
    "NotificationPreference",
    "NotificationType",
]
