"""
Event reconciliation engine.

Applies decoded change-feed events to an immutable, id-indexed snapshot and
returns the next snapshot plus the workflow notifications implied by the
change. No I/O happens here.

Ordering guarantee: per-id monotonicity. A record is only ever replaced by a
version with a strictly newer ``updated_at``; replays and late deliveries are
dropped. Nothing is assumed about ordering across ids, and events for
different ids commute.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from app.approvals.domain.change_events import (
    APPROVAL_REQUESTS_TABLE,
    PURCHASE_ORDERS_TABLE,
    ChangeEvent,
    ChangeOperation,
    Record,
)
from app.approvals.domain.events import DomainEvent, derive_domain_events


def _ordered(records: Iterable[Record]) -> List[Record]:
    by_id = sorted(records, key=lambda record: record.id)
    return sorted(by_id, key=lambda record: record.created_at, reverse=True)


@dataclass(frozen=True)
class Snapshot:
    """Id-indexed records of one table.

    ``tombstones`` remembers the version at which an id was deleted so that a
    late update older than the deletion cannot bring it back.
    """

    records: Mapping[str, Record] = field(default_factory=dict)
    tombstones: Mapping[str, datetime] = field(default_factory=dict)

    @classmethod
    def from_records(cls, records: Iterable[Record]) -> "Snapshot":
        indexed: Dict[str, Record] = {}
        for record in records:
            held = indexed.get(record.id)
            if held is None or record.updated_at > held.updated_at:
                indexed[record.id] = record
        return cls(records=indexed)

    def get_by_id(self, record_id: str) -> Optional[Record]:
        return self.records.get(record_id)

    def get_all(self) -> List[Record]:
        return _ordered(self.records.values())

    def __len__(self) -> int:
        return len(self.records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self.records

    def with_record(self, record: Record) -> "Snapshot":
        records = dict(self.records)
        records[record.id] = record
        tombstones = {k: v for k, v in self.tombstones.items() if k != record.id}
        return Snapshot(records=records, tombstones=tombstones)

    def without_record(self, record_id: str, version: datetime) -> "Snapshot":
        records = {k: v for k, v in self.records.items() if k != record_id}
        tombstones = dict(self.tombstones)
        tombstones[record_id] = version
        return Snapshot(records=records, tombstones=tombstones)


@dataclass(frozen=True)
class DashboardSnapshot:
    approvals: Snapshot = field(default_factory=Snapshot)
    orders: Snapshot = field(default_factory=Snapshot)

    def table(self, name: str) -> Optional[Snapshot]:
        if name == APPROVAL_REQUESTS_TABLE:
            return self.approvals
        if name == PURCHASE_ORDERS_TABLE:
            return self.orders
        return None

    def with_table(self, name: str, snapshot: Snapshot) -> "DashboardSnapshot":
        if name == APPROVAL_REQUESTS_TABLE:
            return DashboardSnapshot(approvals=snapshot, orders=self.orders)
        return DashboardSnapshot(approvals=self.approvals, orders=snapshot)


@dataclass(frozen=True)
class ReconcileResult:
    snapshot: DashboardSnapshot
    notifications: Sequence[DomainEvent] = ()
    applied: bool = False


def _upsert(
    snapshot: Snapshot, event: ChangeEvent
) -> tuple[Snapshot, Optional[Record], Optional[Record]]:
    incoming = event.after
    deleted_at = snapshot.tombstones.get(incoming.id)
    if deleted_at is not None and incoming.updated_at <= deleted_at:
        return snapshot, None, None

    held = snapshot.get_by_id(incoming.id)
    if held is None:
        # Implicit insert: an update for an id the initial load missed.
        baseline = event.before if event.operation == ChangeOperation.UPDATE else None
        return snapshot.with_record(incoming), baseline, incoming

    if incoming.updated_at <= held.updated_at:
        return snapshot, None, None
    return snapshot.with_record(incoming), held, incoming


def _delete(snapshot: Snapshot, event: ChangeEvent) -> Snapshot:
    removed = event.before
    held = snapshot.get_by_id(removed.id)
    if held is None:
        return snapshot
    if removed.updated_at < held.updated_at:
        return snapshot
    return snapshot.without_record(removed.id, max(removed.updated_at, held.updated_at))


def reconcile(snapshot: DashboardSnapshot, event: ChangeEvent) -> ReconcileResult:
    table_snapshot = snapshot.table(event.table)
    if table_snapshot is None:
        return ReconcileResult(snapshot=snapshot)

    if event.operation == ChangeOperation.DELETE:
        updated = _delete(table_snapshot, event)
        if updated is table_snapshot:
            return ReconcileResult(snapshot=snapshot)
        return ReconcileResult(snapshot=snapshot.with_table(event.table, updated), applied=True)

    updated, before, after = _upsert(table_snapshot, event)
    if updated is table_snapshot:
        return ReconcileResult(snapshot=snapshot)

    notifications: List[DomainEvent] = []
    if event.table == APPROVAL_REQUESTS_TABLE:
        notifications = derive_domain_events(before, after)
    return ReconcileResult(
        snapshot=snapshot.with_table(event.table, updated),
        notifications=notifications,
        applied=True,
    )


def reconcile_all(
    snapshot: DashboardSnapshot, events: Iterable[ChangeEvent]
) -> ReconcileResult:
    notifications: List[DomainEvent] = []
    applied = False
    for event in events:
        result = reconcile(snapshot, event)
        snapshot = result.snapshot
        notifications.extend(result.notifications)
        applied = applied or result.applied
    return ReconcileResult(snapshot=snapshot, notifications=notifications, applied=applied)
