"""
Push expenses and invoices to QuickBooks
Expenses become Purchases, invoices become QuickBooks Invoices. Every attempt
is recorded so bulk runs skip what has already been synced.
"""
from sqlalchemy.orm import Session
from datetime import datetime, date
from typing import Optional, Dict, Any, List
import logging

from ...db.models import (
    QuickBooksConnection,
    QuickBooksAccountMapping,
    QuickBooksSyncRecord,
    QuickBooksSyncHistory,
    Expense,
    Invoice,
    Customer,
)
from .api_client import QuickBooksClient, QuickBooksError
from .mapping import QuickBooksMappingService

logger = logging.getLogger(__name__)

PAYMENT_METHOD_MAP = {
    "Credit Card": "CreditCard",
    "Debit Card": "CreditCard",
    "Cash": "Cash",
    "Check": "Check",
    "Bank Transfer": "Check",
    "EFT": "Check",
    "Fuel Card": "CreditCard",
    "Other": "Cash",
}

ENTITY_TYPES = {"expense": "Purchase", "invoice": "Invoice"}


class SyncError(Exception):
    pass


def map_expense_to_purchase(expense: Expense, mapping: QuickBooksAccountMapping,
                            payment_account: Dict[str, Any]) -> Dict[str, Any]:
    amount = float(expense.amount or 0)
    note_parts = [expense.notes, "(Tax Deductible)" if expense.deductible else None, f"TC ID: {expense.id}"]
    return {
        "PaymentType": PAYMENT_METHOD_MAP.get(expense.payment_method, "Cash"),
        "TxnDate": expense.date.isoformat() if expense.date else None,
        "TotalAmt": amount,
        "AccountRef": {"value": payment_account["Id"], "name": payment_account.get("Name")},
        "PrivateNote": " | ".join(p for p in note_parts if p),
        "Line": [{
            "DetailType": "AccountBasedExpenseLineDetail",
            "Amount": amount,
            "Description": expense.description,
            "AccountBasedExpenseLineDetail": {
                "AccountRef": {"value": mapping.qb_account_id, "name": mapping.qb_account_name},
            },
        }],
    }


def map_invoice_to_qb_invoice(invoice: Invoice, qb_customer_id: str) -> Dict[str, Any]:
    def line(index: int, amount: float, description: Optional[str], qty: float, unit_price: float) -> Dict[str, Any]:
        return {
            "DetailType": "SalesItemLineDetail",
            "Amount": amount,
            "Description": description or "Transportation Services",
            "LineNum": index,
            "SalesItemLineDetail": {
                "Qty": qty,
                "UnitPrice": unit_price,
                "ItemRef": {"value": "1", "name": "Services"},
            },
        }

    if invoice.items:
        lines = [
            line(i, float(item.amount), item.description, float(item.quantity or 1), float(item.unit_price or 0))
            for i, item in enumerate(invoice.items, start=1)
        ]
    else:
        total = float(invoice.total or 0)
        lines = [line(1, total, None, 1, total)]

    txn_date = invoice.invoice_date or (invoice.created_at.date() if invoice.created_at else None)
    payload = {
        "CustomerRef": {"value": qb_customer_id},
        "TxnDate": txn_date.isoformat() if txn_date else None,
        "DueDate": invoice.due_date.isoformat() if invoice.due_date else None,
        "DocNumber": invoice.invoice_number,
        "PrivateNote": f"TC Invoice ID: {invoice.id}",
        "Line": lines,
    }
    if invoice.notes:
        payload["CustomerMemo"] = {"value": invoice.notes}
    return payload


def history_to_dict(history: QuickBooksSyncHistory) -> Dict[str, Any]:
    return {
        "id": history.id,
        "syncType": history.sync_type,
        "entityTypes": history.entity_types,
        "status": history.status,
        "recordsSynced": history.records_synced,
        "recordsFailed": history.records_failed,
        "errorMessage": history.error_message,
        "startedAt": history.started_at.isoformat() if history.started_at else None,
        "completedAt": history.completed_at.isoformat() if history.completed_at else None,
    }


class QuickBooksSyncService:
    def __init__(self, db: Session, client: QuickBooksClient):
        self.db = db
        self.client = client
        self.connection: QuickBooksConnection = client.connection
        self.mappings = QuickBooksMappingService(db)

    # Bookkeeping

    def record_sync(self, entity_type: str, local_id: int, qb_id: Optional[str], status: str,
                    error: Optional[str] = None) -> QuickBooksSyncRecord:
        record = self.get_sync_record(entity_type, local_id)
        if record is None:
            record = QuickBooksSyncRecord(
                connection_id=self.connection.id,
                user_id=self.connection.user_id,
                entity_type=entity_type,
                local_entity_id=local_id,
            )
            self.db.add(record)
        record.qb_entity_id = qb_id
        record.qb_entity_type = ENTITY_TYPES[entity_type]
        record.sync_status = status
        record.error_message = error
        record.last_synced_at = datetime.utcnow()
        self.db.flush()
        return record

    def get_sync_record(self, entity_type: str, local_id: int) -> Optional[QuickBooksSyncRecord]:
        return self.db.query(QuickBooksSyncRecord).filter(
            QuickBooksSyncRecord.connection_id == self.connection.id,
            QuickBooksSyncRecord.entity_type == entity_type,
            QuickBooksSyncRecord.local_entity_id == local_id,
        ).first()

    def synced_ids(self, entity_type: str) -> set:
        rows = self.db.query(QuickBooksSyncRecord.local_entity_id).filter(
            QuickBooksSyncRecord.connection_id == self.connection.id,
            QuickBooksSyncRecord.entity_type == entity_type,
            QuickBooksSyncRecord.sync_status == "synced",
        ).all()
        return {row[0] for row in rows}

    def _start_history(self, sync_type: str, entity_types: List[str]) -> QuickBooksSyncHistory:
        history = QuickBooksSyncHistory(
            connection_id=self.connection.id,
            user_id=self.connection.user_id,
            sync_type=sync_type,
            entity_types=entity_types,
            status="started",
            started_at=datetime.utcnow(),
        )
        self.db.add(history)
        self.db.flush()
        return history

    def _complete_history(self, history: QuickBooksSyncHistory, synced: int, failed: int) -> None:
        if failed == 0:
            history.status = "completed"
        elif synced > 0:
            history.status = "partial"
        else:
            history.status = "failed"
        history.records_synced = synced
        history.records_failed = failed
        history.completed_at = datetime.utcnow()
        self.connection.last_sync_at = datetime.utcnow()
        self.db.flush()

    # Payment source

    def _cache_account(self, kind: str, account: Dict[str, Any]) -> None:
        if kind == "bank":
            self.connection.default_bank_account_id = account["Id"]
            self.connection.default_bank_account_name = account.get("Name")
        else:
            self.connection.default_cc_account_id = account["Id"]
            self.connection.default_cc_account_name = account.get("Name")
        logger.info(f"Cached {kind} account: {account.get('Name')} ({account['Id']})")

    def get_payment_account(self, payment_method: Optional[str]) -> Optional[Dict[str, Any]]:
        """Credit card account for card payments, the bank account otherwise or as fallback"""
        connection = self.connection
        if PAYMENT_METHOD_MAP.get(payment_method, "Cash") == "CreditCard":
            if connection.default_cc_account_id:
                return {"Id": connection.default_cc_account_id, "Name": connection.default_cc_account_name}
            cc_accounts = self.client.get_credit_card_accounts()
            if cc_accounts:
                self._cache_account("credit_card", cc_accounts[0])
                return cc_accounts[0]
            logger.info("No Credit Card accounts found, falling back to Bank account")

        if connection.default_bank_account_id:
            return {"Id": connection.default_bank_account_id, "Name": connection.default_bank_account_name}
        bank_accounts = self.client.get_bank_accounts()
        if bank_accounts:
            self._cache_account("bank", bank_accounts[0])
            return bank_accounts[0]
        return None

    # Single entity

    def sync_expense(self, expense: Expense) -> Dict[str, Any]:
        """
        Create a Purchase for one expense

        Raises:
            SyncError: missing mapping, payment account or API failure (recorded as failed)
        """
        mapping = self.mappings.get_mapping_for_category(self.connection.id, expense.category)
        if not mapping:
            raise SyncError(f"No QuickBooks account mapped for category: {expense.category}")

        try:
            payment_account = self.get_payment_account(expense.payment_method)
            if not payment_account:
                raise SyncError("No Bank or Credit Card account found in QuickBooks. Please create one first.")
            result = self.client.create_purchase(map_expense_to_purchase(expense, mapping, payment_account))
            if not result.get("Id"):
                raise SyncError("Failed to create purchase in QuickBooks")
        except (QuickBooksError, SyncError) as e:
            self.record_sync("expense", expense.id, None, "failed", str(e))
            raise SyncError(str(e))

        self.record_sync("expense", expense.id, result["Id"], "synced")
        logger.info(f"Synced expense {expense.id} -> QB Purchase {result['Id']}")
        return {"success": True, "qbEntityId": result["Id"], "qbEntityType": "Purchase"}

    def _customer_name(self, invoice: Invoice) -> str:
        if invoice.customer_id:
            customer = self.db.query(Customer).filter(Customer.id == invoice.customer_id).first()
            if customer:
                return customer.company_name or customer.name
        return invoice.customer or "Unknown Customer"

    def sync_invoice(self, invoice: Invoice) -> Dict[str, Any]:
        try:
            qb_customer = self.client.find_or_create_customer(self._customer_name(invoice))
            if not qb_customer.get("Id"):
                raise SyncError("Failed to find or create customer in QuickBooks")
            result = self.client.create_invoice(map_invoice_to_qb_invoice(invoice, qb_customer["Id"]))
            if not result.get("Id"):
                raise SyncError("Failed to create invoice in QuickBooks")
        except (QuickBooksError, SyncError) as e:
            self.record_sync("invoice", invoice.id, None, "failed", str(e))
            raise SyncError(str(e))

        self.record_sync("invoice", invoice.id, result["Id"], "synced")
        logger.info(f"Synced invoice {invoice.id} -> QB Invoice {result['Id']}")
        return {"success": True, "qbEntityId": result["Id"], "qbEntityType": "Invoice"}

    # Bulk

    def _bulk(self, entity_type: str, entities: List[Any], sync_one, describe) -> Dict[str, Any]:
        label = f"{entity_type}s"
        if not entities:
            return {"success": True, "synced": 0, "failed": 0, "message": f"No {label} to sync"}

        already = self.synced_ids(entity_type)
        pending = [e for e in entities if e.id not in already]
        if not pending:
            return {"success": True, "synced": 0, "failed": 0, "message": f"All {label} already synced"}

        history = self._start_history("bulk", [entity_type])
        synced, errors = 0, []
        for entity in pending:
            try:
                sync_one(entity)
                synced += 1
            except SyncError as e:
                errors.append({**describe(entity), "error": str(e)})

        self._complete_history(history, synced, len(errors))
        logger.info(f"Bulk {entity_type} sync complete: {synced} synced, {len(errors)} failed")
        result = {
            "success": True,
            "message": f"Synced {synced} {label} to QuickBooks",
            "synced": synced,
            "failed": len(errors),
            "total": len(pending),
            "syncHistoryId": history.id,
        }
        if errors:
            result["errors"] = errors
        return result

    def bulk_sync_expenses(self, expense_ids: Optional[List[int]] = None, start_date: Optional[date] = None,
                           end_date: Optional[date] = None, categories: Optional[List[str]] = None) -> Dict[str, Any]:
        query = self.db.query(Expense).filter(Expense.user_id == self.connection.user_id)
        if expense_ids:
            query = query.filter(Expense.id.in_(expense_ids))
        if start_date:
            query = query.filter(Expense.date >= start_date)
        if end_date:
            query = query.filter(Expense.date <= end_date)
        if categories:
            query = query.filter(Expense.category.in_(categories))
        expenses = query.order_by(Expense.date.asc()).all()
        return self._bulk("expense", expenses, self.sync_expense,
                          lambda e: {"expenseId": e.id, "description": e.description})

    def bulk_sync_invoices(self, invoice_ids: Optional[List[int]] = None, start_date: Optional[date] = None,
                           end_date: Optional[date] = None, status: Optional[str] = None) -> Dict[str, Any]:
        query = self.db.query(Invoice).filter(Invoice.user_id == self.connection.user_id)
        if invoice_ids:
            query = query.filter(Invoice.id.in_(invoice_ids))
        if start_date:
            query = query.filter(Invoice.invoice_date >= start_date)
        if end_date:
            query = query.filter(Invoice.invoice_date <= end_date)
        if status:
            query = query.filter(Invoice.status == status)
        invoices = query.order_by(Invoice.invoice_date.asc()).all()
        return self._bulk("invoice", invoices, self.sync_invoice,
                          lambda i: {"invoiceId": i.id, "invoiceNumber": i.invoice_number})

    def retry_failed(self) -> Dict[str, Any]:
        failed_records = self.db.query(QuickBooksSyncRecord).filter(
            QuickBooksSyncRecord.connection_id == self.connection.id,
            QuickBooksSyncRecord.sync_status == "failed",
        ).all()
        if not failed_records:
            return {"success": True, "retried": 0, "succeeded": 0, "stillFailed": 0,
                    "message": "No failed syncs to retry"}

        succeeded = still_failed = 0
        for record in failed_records:
            model = Expense if record.entity_type == "expense" else Invoice
            entity = self.db.query(model).filter(
                model.id == record.local_entity_id, model.user_id == self.connection.user_id
            ).first()
            if not entity:
                continue
            sync_one = self.sync_expense if record.entity_type == "expense" else self.sync_invoice
            try:
                sync_one(entity)
                succeeded += 1
            except SyncError:
                still_failed += 1

        return {
            "success": True,
            "message": f"Retried {len(failed_records)} failed syncs",
            "retried": len(failed_records),
            "succeeded": succeeded,
            "stillFailed": still_failed,
        }

    def get_sync_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        rows = self.db.query(QuickBooksSyncHistory).filter(
            QuickBooksSyncHistory.connection_id == self.connection.id
        ).order_by(QuickBooksSyncHistory.started_at.desc()).limit(limit).all()
        return [history_to_dict(h) for h in rows]

    def get_sync_stats(self) -> Dict[str, Any]:
        def count(**filters) -> int:
            query = self.db.query(QuickBooksSyncRecord).filter(QuickBooksSyncRecord.connection_id == self.connection.id)
            for column, value in filters.items():
                query = query.filter(getattr(QuickBooksSyncRecord, column) == value)
            return query.count()

        return {
            "totalExpensesSynced": count(entity_type="expense", sync_status="synced"),
            "totalInvoicesSynced": count(entity_type="invoice", sync_status="synced"),
            "failedSyncs": count(sync_status="failed"),
            "pendingSyncs": count(sync_status="pending"),
            "lastSyncAt": self.connection.last_sync_at.isoformat() if self.connection.last_sync_at else None,
        }
