"""
QuickBooks Online integration
"""
from .api_client import QuickBooksClient, QuickBooksError, QuickBooksAuthError
from .connection import QuickBooksConnectionService, QuickBooksConnectionError
from .mapping import QuickBooksMappingService, MappingError, TC_EXPENSE_CATEGORIES, find_best_match
from .sync import QuickBooksSyncService, SyncError, PAYMENT_METHOD_MAP

__all__ = [
    "QuickBooksClient",
    "QuickBooksError",
    "QuickBooksAuthError",
    "QuickBooksConnectionService",
    "QuickBooksConnectionError",
    "QuickBooksMappingService",
    "MappingError",
    "TC_EXPENSE_CATEGORIES",
    "find_best_match",
    "QuickBooksSyncService",
    "SyncError",
    "PAYMENT_METHOD_MAP",
]
