"""
Boundary decoding for change-feed payloads.

Raw payloads arrive as loosely-typed JSON objects of the shape
``{table, operation, before, after}``. They are turned into ``ChangeEvent``
values carrying typed domain records before anything else sees them;
unknown tables, operations or row shapes are rejected with
``MalformedChangeEvent``.
"""
import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Union

from app.approvals.domain.errors import MalformedChangeEvent
from app.approvals.domain.models import (
    ApprovalKind,
    ApprovalRequest,
    ApprovalStage,
    ApprovalStatus,
    Priority,
    PurchaseOrder,
)
from app.approvals.domain.state_machine import invariant_violations

APPROVAL_REQUESTS_TABLE = "approval_requests"
PURCHASE_ORDERS_TABLE = "purchase_orders"

Record = Union[ApprovalRequest, PurchaseOrder]


class ChangeOperation(str, enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    operation: ChangeOperation
    before: Optional[Record] = None
    after: Optional[Record] = None

    @property
    def record_id(self) -> str:
        record = self.after if self.after is not None else self.before
        return record.id


def _parse_datetime(value: Any, field: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            raise MalformedChangeEvent(f"Invalid timestamp in {field}: {value!r}")
    else:
        raise MalformedChangeEvent(f"Missing timestamp {field}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_datetime(value: Any, field: str) -> Optional[datetime]:
    if value is None:
        return None
    return _parse_datetime(value, field)


def _require(row: Mapping[str, Any], field: str) -> Any:
    if row.get(field) is None:
        raise MalformedChangeEvent(f"Missing field {field}")
    return row[field]


def approval_request_from_row(row: Mapping[str, Any]) -> ApprovalRequest:
    """Decode one ``approval_requests`` row; any stored total is ignored."""
    try:
        rejection_stage = row.get("rejection_stage")
        record = ApprovalRequest(
            id=str(_require(row, "id")),
            request_number=row.get("request_number"),
            kind=ApprovalKind(_require(row, "kind")),
            requested_by=str(_require(row, "requested_by")),
            requested_by_name=row.get("requested_by_name"),
            item_id=row.get("item_id"),
            item_name=str(_require(row, "item_name")),
            description=row.get("description"),
            reason=row.get("reason"),
            priority=Priority(row.get("priority") or Priority.MEDIUM.value),
            supplier=row.get("supplier"),
            category=row.get("category"),
            quantity=int(_require(row, "quantity")),
            unit_price=float(_require(row, "unit_price")),
            status=ApprovalStatus(_require(row, "status")),
            manager_approved=bool(row.get("manager_approved", False)),
            manager_approved_by=row.get("manager_approved_by"),
            manager_approved_at=_optional_datetime(
                row.get("manager_approved_at"), "manager_approved_at"
            ),
            project_manager_approved=bool(row.get("project_manager_approved", False)),
            project_manager_approved_by=row.get("project_manager_approved_by"),
            project_manager_approved_at=_optional_datetime(
                row.get("project_manager_approved_at"), "project_manager_approved_at"
            ),
            rejected_by=row.get("rejected_by"),
            rejected_at=_optional_datetime(row.get("rejected_at"), "rejected_at"),
            rejection_stage=ApprovalStage(rejection_stage) if rejection_stage else None,
            rejection_reason=row.get("rejection_reason"),
            created_at=_parse_datetime(row.get("created_at"), "created_at"),
            updated_at=_parse_datetime(row.get("updated_at"), "updated_at"),
        )
    except MalformedChangeEvent:
        raise
    except (TypeError, ValueError) as e:
        raise MalformedChangeEvent(f"Invalid approval request row: {e}")

    violations = invariant_violations(record)
    if violations:
        raise MalformedChangeEvent(
            f"Approval request {record.id} violates invariants: {'; '.join(violations)}"
        )
    return record


def purchase_order_from_row(row: Mapping[str, Any]) -> PurchaseOrder:
    try:
        return PurchaseOrder(
            id=str(_require(row, "id")),
            order_number=row.get("order_number"),
            supplier_name=str(_require(row, "supplier_name")),
            items_count=int(row.get("items_count") or 0),
            total_amount=float(row.get("total_amount") or 0),
            status=str(_require(row, "status")),
            approval_request_id=row.get("approval_request_id"),
            created_at=_parse_datetime(row.get("created_at"), "created_at"),
            updated_at=_parse_datetime(row.get("updated_at"), "updated_at"),
        )
    except MalformedChangeEvent:
        raise
    except (TypeError, ValueError) as e:
        raise MalformedChangeEvent(f"Invalid purchase order row: {e}")


ROW_DECODERS: Dict[str, Callable[[Mapping[str, Any]], Record]] = {
    APPROVAL_REQUESTS_TABLE: approval_request_from_row,
    PURCHASE_ORDERS_TABLE: purchase_order_from_row,
}


def decode_change_event(payload: Any) -> ChangeEvent:
    if not isinstance(payload, Mapping):
        raise MalformedChangeEvent("Change event must be an object")

    table = payload.get("table")
    decoder = ROW_DECODERS.get(table) if isinstance(table, str) else None
    if decoder is None:
        raise MalformedChangeEvent(f"Unknown table: {table!r}")

    raw_operation = payload.get("operation")
    if isinstance(raw_operation, str):
        raw_operation = raw_operation.lower()
    try:
        operation = ChangeOperation(raw_operation)
    except ValueError:
        raise MalformedChangeEvent(f"Unknown operation: {payload.get('operation')!r}")

    raw_before = payload.get("before")
    raw_after = payload.get("after")
    if operation in (ChangeOperation.INSERT, ChangeOperation.UPDATE) and raw_after is None:
        raise MalformedChangeEvent(f"{operation.value} event without 'after'")
    if operation == ChangeOperation.DELETE and raw_before is None:
        raise MalformedChangeEvent("delete event without 'before'")

    for raw in (raw_before, raw_after):
        if raw is not None and not isinstance(raw, Mapping):
            raise MalformedChangeEvent("Row images must be objects")

    before = decoder(raw_before) if raw_before is not None else None
    after = decoder(raw_after) if raw_after is not None else None
    if before is not None and after is not None and before.id != after.id:
        raise MalformedChangeEvent("before and after describe different records")

    return ChangeEvent(table=table, operation=operation, before=before, after=after)
