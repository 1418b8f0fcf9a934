"""
PostgreSQL Database Models - SQLAlchemy ORM
Approval requests, purchase orders and the audit log
"""
from datetime import datetime, timezone
from typing import List, Optional
from sqlalchemy import (
    Integer, String, Text, DateTime, Boolean, Float, Index, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column
import uuid as uuid_lib

from .connection import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==================== APPROVAL REQUEST MODEL ====================

class ApprovalRequest(Base):
    """Two-stage approval requests (inventory and procurement)"""
    __tablename__ = "approval_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid_lib.uuid4()))
    request_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    request_seq: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    requested_by: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    requested_by_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    item_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)  # weak reference
    item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority: Mapped[str] = mapped_column(String(20), default="medium")
    supplier: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    manager_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    manager_approved_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    manager_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    project_manager_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    project_manager_approved_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    project_manager_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_stage: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index('idx_approvals_status_flags', 'status', 'manager_approved', 'project_manager_approved'),
        Index('idx_approvals_requested_by_created_at', 'requested_by', 'created_at'),
        CheckConstraint("NOT project_manager_approved OR manager_approved", name="ck_approvals_stage_order"),
        CheckConstraint(
            "status <> 'approved' OR (manager_approved AND project_manager_approved)",
            name="ck_approvals_approved_flags",
        ),
        CheckConstraint("quantity > 0 AND unit_price >= 0", name="ck_approvals_amounts"),
    )


# ==================== PURCHASE ORDER MODEL ====================

class PurchaseOrder(Base):
    """Purchase orders - written elsewhere, synced and projected here"""
    __tablename__ = "purchase_orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid_lib.uuid4()))
    order_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    approval_request_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    supplier_name: Mapped[str] = mapped_column(String(255), nullable=False)
    items_count: Mapped[int] = mapped_column(Integer, default=0)
    total_amount: Mapped[float] = mapped_column(Float, default=0)
    status: Mapped[str] = mapped_column(String(50), default="pending", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_orders_status_created_at', 'status', 'created_at'),
    )


# ==================== AUDIT LOG MODEL ====================

class AuditLog(Base):
    """Audit trail of approval transitions"""
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid_lib.uuid4()))
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    changes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON as text
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False)
    user_role: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
    )


# ==================== CHANGE FEED ====================

WATCHED_TABLES = ("approval_requests", "purchase_orders")

# pg_notify rejects payloads of 8000 bytes or more.
NOTIFY_PAYLOAD_LIMIT = 7900
LARGE_TEXT_COLUMNS = ("description", "reason", "rejection_reason")


def change_feed_ddl(channel: str) -> List[str]:
    """Statements installing the triggers behind the change feed.

    ``notify_change_feed`` publishes {"table", "operation", "before", "after"};
    ``before`` is null for inserts and ``after`` is null for deletes. A payload
    that would not fit in a notification is replaced by
    {"table", "operation", "id", "truncated": true}, keeping for deletes a
    ``before`` image without the free-text columns. Listeners re-read
    truncated inserts and updates by id.

    ``bump_updated_at`` advances ``updated_at`` on every UPDATE, so writes
    that bypass the ORM still carry a newer version.
    """
    dropped_columns = ", ".join(f"'{column}'" for column in LARGE_TEXT_COLUMNS)
    statements = [
        f"""
        CREATE OR REPLACE FUNCTION notify_change_feed() RETURNS trigger AS $$
        DECLARE
            payload text;
        BEGIN
            payload := json_build_object(
                'table', TG_TABLE_NAME,
                'operation', lower(TG_OP),
                'before', CASE WHEN TG_OP = 'INSERT' THEN NULL ELSE row_to_json(OLD) END,
                'after', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE row_to_json(NEW) END
            )::text;
            IF octet_length(payload) >= {NOTIFY_PAYLOAD_LIMIT} THEN
                payload := json_build_object(
                    'table', TG_TABLE_NAME,
                    'operation', lower(TG_OP),
                    'truncated', true,
                    'id', CASE WHEN TG_OP = 'DELETE' THEN OLD.id ELSE NEW.id END,
                    'before', CASE WHEN TG_OP = 'DELETE'
                        THEN to_jsonb(OLD) - ARRAY[{dropped_columns}]
                        ELSE NULL END,
                    'after', NULL
                )::text;
            END IF;
            PERFORM pg_notify('{channel}', payload);
            RETURN COALESCE(NEW, OLD);
        END;
        $$ LANGUAGE plpgsql
        """,
        """
        CREATE OR REPLACE FUNCTION bump_updated_at() RETURNS trigger AS $$
        BEGIN
            IF NEW.updated_at IS NULL OR NEW.updated_at <= OLD.updated_at THEN
                NEW.updated_at := greatest(
                    clock_timestamp(), OLD.updated_at + interval '1 microsecond'
                );
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql
        """,
    ]
    for table in WATCHED_TABLES:
        statements.append(f"DROP TRIGGER IF EXISTS {table}_bump_updated_at ON {table}")
        statements.append(
            f"CREATE TRIGGER {table}_bump_updated_at "
            f"BEFORE UPDATE ON {table} "
            f"FOR EACH ROW EXECUTE FUNCTION bump_updated_at()"
        )
        statements.append(f"DROP TRIGGER IF EXISTS {table}_change_feed ON {table}")
        statements.append(
            f"CREATE TRIGGER {table}_change_feed "
            f"AFTER INSERT OR UPDATE OR DELETE ON {table} "
            f"FOR EACH ROW EXECUTE FUNCTION notify_change_feed()"
        )
    return statements
