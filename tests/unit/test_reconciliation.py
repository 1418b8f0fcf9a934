import itertools
from dataclasses import replace

from app.approvals.domain import state_machine
from app.approvals.domain.change_events import ChangeEvent, ChangeOperation
from app.approvals.domain.events import DomainEventType
from app.approvals.domain.models import ApprovalStage, ApprovalStatus
from app.approvals.domain.reconciliation import (
    DashboardSnapshot,
    Snapshot,
    reconcile,
    reconcile_all,
)
from tests.factories import at, make_order, make_request


def insert(record, table="approval_requests"):
    return ChangeEvent(table=table, operation=ChangeOperation.INSERT, after=record)


def update(after, before=None, table="approval_requests"):
    return ChangeEvent(table=table, operation=ChangeOperation.UPDATE, before=before, after=after)


def delete(before, table="approval_requests"):
    return ChangeEvent(table=table, operation=ChangeOperation.DELETE, before=before)


def test_insert_adds_record_and_announces_submission():
    result = reconcile(DashboardSnapshot(), insert(make_request()))

    assert result.applied is True
    assert result.snapshot.approvals.get_by_id("req-1") == make_request()
    assert [event.type for event in result.notifications] == [DomainEventType.REQUEST_SUBMITTED]


def test_replaying_an_event_is_idempotent(manager):
    approved = state_machine.approve_as_manager(make_request(), manager, at(1)).after
    events = [insert(make_request()), update(approved, make_request())]

    once = reconcile_all(DashboardSnapshot(), events)
    twice = reconcile_all(once.snapshot, events)

    assert twice.snapshot == once.snapshot
    assert twice.applied is False
    assert list(twice.notifications) == []


def test_older_update_is_ignored(manager):
    newer = state_machine.approve_as_manager(make_request(), manager, at(5)).after
    snapshot = reconcile(DashboardSnapshot(), insert(newer)).snapshot

    result = reconcile(snapshot, update(make_request(updated_at=at(2))))

    assert result.applied is False
    assert result.snapshot.approvals.get_by_id("req-1") == newer


def test_events_for_different_ids_commute():
    events = [
        insert(make_request("a", created_at=at(1), updated_at=at(1))),
        insert(make_request("b", created_at=at(2), updated_at=at(2))),
        insert(make_order("po-1", created_at=at(3), updated_at=at(3)), table="purchase_orders"),
    ]

    snapshots = [
        reconcile_all(DashboardSnapshot(), list(order)).snapshot
        for order in itertools.permutations(events)
    ]

    assert all(snapshot == snapshots[0] for snapshot in snapshots)
    assert len(snapshots[0].approvals) == 2
    assert len(snapshots[0].orders) == 1


def test_late_update_after_rejection_is_discarded(manager):
    # A manager approval stamped before the rejection arrives after it.
    pending = make_request()
    late_approval = state_machine.approve_as_manager(pending, manager, at(1)).after
    rejected = state_machine.reject(pending, manager, ApprovalStage.MANAGER, at(2)).after
    snapshot = reconcile(DashboardSnapshot(), insert(pending)).snapshot
    snapshot = reconcile(snapshot, update(rejected, pending)).snapshot

    result = reconcile(snapshot, update(late_approval, pending))

    final = result.snapshot.approvals.get_by_id("req-1")
    assert result.applied is False
    assert final.status == ApprovalStatus.REJECTED
    assert final.manager_approved is False


def test_update_for_unknown_id_is_implicit_insert(manager):
    approved = state_machine.approve_as_manager(make_request(), manager, at(1)).after

    result = reconcile(DashboardSnapshot(), update(approved, make_request()))

    assert result.snapshot.approvals.get_by_id("req-1") == approved
    assert [event.type for event in result.notifications] == [DomainEventType.MANAGER_APPROVED]


def test_implicit_insert_without_before_reports_current_stage(manager, project_manager):
    approved = state_machine.approve_as_manager(make_request(), manager, at(1)).after
    approved = state_machine.approve_as_project_manager(approved, project_manager, at(2)).after

    result = reconcile(DashboardSnapshot(), update(approved))

    assert [event.type for event in result.notifications] == [DomainEventType.FULLY_APPROVED]
    assert result.notifications[0].audience_user_id == "emp-1"


def test_project_manager_approval_notifies_requester_once(manager, project_manager):
    manager_approved = state_machine.approve_as_manager(make_request(), manager, at(1)).after
    approved = state_machine.approve_as_project_manager(
        manager_approved, project_manager, at(2)
    ).after
    snapshot = reconcile(DashboardSnapshot(), insert(manager_approved)).snapshot

    result = reconcile(snapshot, update(approved, manager_approved))

    assert [event.type for event in result.notifications] == [DomainEventType.FULLY_APPROVED]


def test_delete_removes_record_and_blocks_older_updates():
    record = make_request(updated_at=at(3))
    snapshot = reconcile(DashboardSnapshot(), insert(record)).snapshot

    deleted = reconcile(snapshot, delete(record))
    late = reconcile(deleted.snapshot, update(make_request(updated_at=at(2))))

    assert "req-1" not in deleted.snapshot.approvals
    assert deleted.notifications == ()
    assert late.applied is False
    assert "req-1" not in late.snapshot.approvals


def test_delete_of_unknown_id_is_a_no_op():
    result = reconcile(DashboardSnapshot(), delete(make_request()))

    assert result.applied is False


def test_purchase_order_changes_produce_no_notifications():
    order = make_order()
    snapshot = reconcile(DashboardSnapshot(), insert(order, "purchase_orders")).snapshot

    result = reconcile(
        snapshot,
        update(replace(order, status="delivered", updated_at=at(1)), order, "purchase_orders"),
    )

    assert result.applied is True
    assert result.notifications == []
    assert result.snapshot.orders.get_by_id("po-1").status == "delivered"


def test_snapshot_lists_newest_first_with_id_tiebreak():
    snapshot = Snapshot.from_records(
        [
            make_request("b", created_at=at(1), updated_at=at(1)),
            make_request("c", created_at=at(2), updated_at=at(2)),
            make_request("a", created_at=at(1), updated_at=at(1)),
        ]
    )

    assert [record.id for record in snapshot.get_all()] == ["c", "a", "b"]
