"""
QuickBooks Online integration models
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, JSON, Boolean, UniqueConstraint
from datetime import datetime
import enum

from ..base import Base


class QuickBooksConnectionStatus(str, enum.Enum):
    ACTIVE = "active"
    TOKEN_EXPIRED = "token_expired"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class QuickBooksConnection(Base):
    """OAuth link between a user and a QuickBooks company (realm)"""
    __tablename__ = "quickbooks_connections"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, unique=True, index=True)
    realm_id = Column(String, nullable=False)
    company_name = Column(String, nullable=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    status = Column(String(20), default=QuickBooksConnectionStatus.ACTIVE.value, nullable=False)
    error_message = Column(Text, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    auto_sync_expenses = Column(Boolean, default=True, nullable=False)
    auto_sync_invoices = Column(Boolean, default=True, nullable=False)

    # Cached payment source accounts
    default_bank_account_id = Column(String, nullable=True)
    default_bank_account_name = Column(String, nullable=True)
    default_cc_account_id = Column(String, nullable=True)
    default_cc_account_name = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class QuickBooksAccountMapping(Base):
    """Maps an expense category to a QuickBooks expense account"""
    __tablename__ = "quickbooks_account_mappings"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("quickbooks_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    tc_category = Column(String, nullable=False)
    qb_account_id = Column(String, nullable=False)
    qb_account_name = Column(String, nullable=True)
    qb_account_type = Column(String, default="Expense", nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("connection_id", "tc_category", name="uq_qb_mappings_connection_category"),
    )


class QuickBooksSyncRecord(Base):
    """Links a local expense or invoice to the QuickBooks entity created for it"""
    __tablename__ = "quickbooks_sync_records"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("quickbooks_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    entity_type = Column(String(20), nullable=False)  # expense, invoice
    local_entity_id = Column(Integer, nullable=False)
    qb_entity_id = Column(String, nullable=True)
    qb_entity_type = Column(String(20), nullable=True)  # Purchase, Invoice
    sync_status = Column(String(20), nullable=False)  # synced, pending, failed
    error_message = Column(Text, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("connection_id", "entity_type", "local_entity_id", name="uq_qb_sync_records_entity"),
    )


class QuickBooksSyncHistory(Base):
    __tablename__ = "quickbooks_sync_history"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("quickbooks_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    sync_type = Column(String(20), nullable=False)  # single, bulk
    entity_types = Column(JSON, nullable=True)
    status = Column(String(20), default="started", nullable=False)  # started, completed, partial, failed
    records_synced = Column(Integer, default=0, nullable=False)
    records_failed = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
