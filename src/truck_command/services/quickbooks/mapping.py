"""
Expense category to QuickBooks account mapping
"""
from sqlalchemy.orm import Session
from typing import Optional, Dict, Any, List
import logging

from ...db.models import QuickBooksConnection, QuickBooksAccountMapping, EXPENSE_CATEGORIES
from .api_client import QuickBooksClient

logger = logging.getLogger(__name__)

TC_EXPENSE_CATEGORIES = list(EXPENSE_CATEGORIES)

TRUCKING_CATEGORY_DEFAULTS = {
    "Fuel": {
        "keywords": ["fuel", "gas", "diesel", "petroleum"],
        "defaultName": "Fuel and Oil",
        "fallbackName": "Automobile Expense",
    },
    "Maintenance": {
        "keywords": ["maintenance", "repair", "service"],
        "defaultName": "Repairs and Maintenance",
        "fallbackName": "Equipment Repairs",
    },
    "Insurance": {
        "keywords": ["insurance"],
        "defaultName": "Insurance Expense",
        "fallbackName": "Insurance",
    },
    "Tolls": {
        "keywords": ["toll", "travel", "highway"],
        "defaultName": "Travel Expense",
        "fallbackName": "Automobile Expense",
    },
    "Office": {
        "keywords": ["office", "supplies", "administrative"],
        "defaultName": "Office Supplies",
        "fallbackName": "Office Expense",
    },
    "Permits": {
        "keywords": ["permit", "license", "registration", "fees"],
        "defaultName": "Licenses and Permits",
        "fallbackName": "Legal and Professional Fees",
    },
    "Meals": {
        "keywords": ["meal", "food", "entertainment", "per diem"],
        "defaultName": "Meals and Entertainment",
        "fallbackName": "Travel Expense",
    },
    "Other": {
        "keywords": ["other", "miscellaneous", "misc"],
        "defaultName": "Other Expense",
        "fallbackName": "Miscellaneous",
    },
}


class MappingError(Exception):
    pass


def find_best_match(qb_accounts: List[Dict[str, Any]], tc_category: str) -> Optional[Dict[str, Any]]:
    """Exact default name, then exact fallback name, then the first keyword contained in a name"""
    defaults = TRUCKING_CATEGORY_DEFAULTS.get(tc_category)
    if not defaults:
        return None

    for wanted in (defaults["defaultName"], defaults["fallbackName"]):
        for account in qb_accounts:
            if (account.get("Name") or "").lower() == wanted.lower():
                return account

    for keyword in defaults["keywords"]:
        for account in qb_accounts:
            if keyword.lower() in (account.get("Name") or "").lower():
                return account
    return None


def mapping_to_dict(mapping: QuickBooksAccountMapping) -> Dict[str, Any]:
    return {
        "id": mapping.id,
        "tcCategory": mapping.tc_category,
        "qbAccountId": mapping.qb_account_id,
        "qbAccountName": mapping.qb_account_name,
        "qbAccountType": mapping.qb_account_type,
        "updatedAt": mapping.updated_at.isoformat() if mapping.updated_at else None,
    }


class QuickBooksMappingService:
    def __init__(self, db: Session):
        self.db = db

    def get_mappings(self, connection_id: int) -> List[QuickBooksAccountMapping]:
        return self.db.query(QuickBooksAccountMapping).filter(
            QuickBooksAccountMapping.connection_id == connection_id
        ).order_by(QuickBooksAccountMapping.tc_category).all()

    def get_mapping_for_category(self, connection_id: int, tc_category: str) -> Optional[QuickBooksAccountMapping]:
        return self.db.query(QuickBooksAccountMapping).filter(
            QuickBooksAccountMapping.connection_id == connection_id,
            QuickBooksAccountMapping.tc_category == tc_category,
        ).first()

    def upsert_mapping(self, connection: QuickBooksConnection, tc_category: str, qb_account_id: str,
                       qb_account_name: str, qb_account_type: str = "Expense") -> QuickBooksAccountMapping:
        if tc_category not in TC_EXPENSE_CATEGORIES:
            raise MappingError(f"Invalid category. Valid categories: {', '.join(TC_EXPENSE_CATEGORIES)}")

        mapping = self.get_mapping_for_category(connection.id, tc_category)
        if mapping is None:
            mapping = QuickBooksAccountMapping(
                connection_id=connection.id, user_id=connection.user_id, tc_category=tc_category
            )
            self.db.add(mapping)
        mapping.qb_account_id = qb_account_id
        mapping.qb_account_name = qb_account_name
        mapping.qb_account_type = qb_account_type
        self.db.flush()
        logger.info(f"Mapped {tc_category} -> {qb_account_name}")
        return mapping

    def delete_mapping(self, connection: QuickBooksConnection, mapping_id: int) -> bool:
        mapping = self.db.query(QuickBooksAccountMapping).filter(
            QuickBooksAccountMapping.id == mapping_id,
            QuickBooksAccountMapping.connection_id == connection.id,
        ).first()
        if not mapping:
            return False
        self.db.delete(mapping)
        self.db.flush()
        return True

    def auto_map_categories(self, client: QuickBooksClient) -> Dict[str, Any]:
        """Match every category against the company's expense accounts"""
        qb_accounts = client.get_expense_accounts()
        if not qb_accounts:
            raise MappingError("No expense accounts found in QuickBooks")

        mapped, unmapped = [], []
        for tc_category in TC_EXPENSE_CATEGORIES:
            match = find_best_match(qb_accounts, tc_category)
            if not match:
                unmapped.append(tc_category)
                continue
            self.upsert_mapping(client.connection, tc_category, match["Id"], match["Name"],
                                match.get("AccountType") or "Expense")
            mapped.append({"tcCategory": tc_category, "qbAccount": match["Name"], "qbAccountId": match["Id"]})

        logger.info(f"Auto-mapped {len(mapped)} categories, {len(unmapped)} unmapped")
        return {"success": True, "mapped": mapped, "unmapped": unmapped, "totalQbAccounts": len(qb_accounts)}

    def list_expense_accounts(self, client: QuickBooksClient) -> List[Dict[str, Any]]:
        accounts = [
            {
                "id": account.get("Id"),
                "name": account.get("Name"),
                "type": account.get("AccountType"),
                "subType": account.get("AccountSubType"),
                "fullyQualifiedName": account.get("FullyQualifiedName"),
            }
            for account in client.get_expense_accounts()
        ]
        return sorted(accounts, key=lambda a: (a["name"] or "").lower())

    def get_mapping_status(self, connection_id: int) -> Dict[str, Any]:
        mappings = self.get_mappings(connection_id)
        mapped_categories = {m.tc_category for m in mappings}
        unmapped = [c for c in TC_EXPENSE_CATEGORIES if c not in mapped_categories]
        return {
            "categories": TC_EXPENSE_CATEGORIES,
            "totalCategories": len(TC_EXPENSE_CATEGORIES),
            "mappedCount": len(mappings),
            "unmappedCount": len(unmapped),
            "isComplete": not unmapped,
            "mappings": {m.tc_category: mapping_to_dict(m) for m in mappings},
            "unmappedCategories": unmapped,
        }
