from dataclasses import replace

import pytest

from app.approvals.domain import state_machine
from app.approvals.domain.errors import InvalidTransition, ValidationError
from app.approvals.domain.models import (
    ApprovalKind,
    ApprovalStage,
    ApprovalStatus,
    ApprovalSubmission,
    Priority,
)
from tests.factories import T0, at, make_request


def test_submit_creates_pending_request_with_computed_total(employee):
    payload = ApprovalSubmission(kind="inventory", item_name="Cement", quantity=100, unit_price=50)

    transition = state_machine.submit(employee, payload, request_id="req-1", now=T0)
    request = transition.after

    assert transition.before is None
    assert request.status == ApprovalStatus.PENDING
    assert request.manager_approved is False
    assert request.project_manager_approved is False
    assert request.computed_total == 5000
    assert request.requested_by == employee.id
    assert request.created_at == request.updated_at == T0


def test_submit_keeps_supplier_only_for_procurement(employee):
    inventory = ApprovalSubmission(
        kind="inventory", item_name="Bolts", quantity=1, unit_price=1, supplier="Acme"
    )
    procurement = replace(inventory, kind="procurement", priority="urgent")

    assert state_machine.submit(employee, inventory, "a", T0).after.supplier is None
    request = state_machine.submit(employee, procurement, "b", T0).after
    assert request.kind == ApprovalKind.PROCUREMENT
    assert request.supplier == "Acme"
    assert request.priority == Priority.URGENT


@pytest.mark.parametrize(
    "overrides",
    [
        {"kind": "transfer"},
        {"priority": "whenever"},
        {"item_name": "   "},
        {"quantity": 0},
        {"unit_price": -1},
    ],
)
def test_submit_rejects_malformed_payload(employee, overrides):
    payload = ApprovalSubmission(kind="inventory", item_name="Cement", quantity=1, unit_price=1)

    with pytest.raises(ValidationError):
        state_machine.submit(employee, replace(payload, **overrides), "req-1", T0)


def test_manager_approval_keeps_status_pending(manager):
    request = make_request()

    transition = state_machine.approve_as_manager(request, manager, at(1))

    assert transition.after.manager_approved is True
    assert transition.after.manager_approved_by == manager.id
    assert transition.after.status == ApprovalStatus.PENDING
    assert transition.expected == {"status": "pending", "manager_approved": False}
    assert state_machine.waiting_for(transition.after) == ApprovalStage.PROJECT_MANAGER


def test_project_manager_approval_completes_request(manager, project_manager):
    approved = state_machine.approve_as_manager(make_request(), manager, at(1)).after

    transition = state_machine.approve_as_project_manager(approved, project_manager, at(2))

    assert transition.after.project_manager_approved is True
    assert transition.after.status == ApprovalStatus.APPROVED
    assert state_machine.waiting_for(transition.after) is None
    assert state_machine.stage_of(transition.after) == state_machine.Stage.APPROVED


def test_project_manager_cannot_approve_before_manager(project_manager):
    request = make_request()

    with pytest.raises(InvalidTransition):
        state_machine.approve_as_project_manager(request, project_manager, at(1))

    assert request.project_manager_approved is False
    assert request.status == ApprovalStatus.PENDING


def test_manager_cannot_approve_twice(manager):
    approved = state_machine.approve_as_manager(make_request(), manager, at(1)).after

    with pytest.raises(InvalidTransition):
        state_machine.approve_as_manager(approved, manager, at(2))


def test_reject_freezes_flags_as_they_were(manager, project_manager):
    approved = state_machine.approve_as_manager(make_request(), manager, at(1)).after

    transition = state_machine.reject(
        approved, project_manager, ApprovalStage.PROJECT_MANAGER, at(2), reason="Over budget"
    )
    rejected = transition.after

    assert rejected.status == ApprovalStatus.REJECTED
    assert rejected.manager_approved is True
    assert rejected.project_manager_approved is False
    assert rejected.rejection_stage == ApprovalStage.PROJECT_MANAGER
    assert rejected.rejection_reason == "Over budget"
    assert transition.expected["manager_approved"] is True


@pytest.mark.parametrize("terminal", ["approved", "rejected"])
def test_no_transition_leaves_a_terminal_state(manager, project_manager, terminal):
    request = state_machine.approve_as_manager(make_request(), manager, at(1)).after
    if terminal == "approved":
        request = state_machine.approve_as_project_manager(request, project_manager, at(2)).after
    else:
        request = state_machine.reject(request, manager, ApprovalStage.MANAGER, at(2)).after

    with pytest.raises(InvalidTransition):
        state_machine.approve_as_project_manager(request, project_manager, at(3))
    with pytest.raises(InvalidTransition):
        state_machine.reject(request, manager, ApprovalStage.MANAGER, at(3))


def test_updated_at_strictly_increases_when_clock_stalls(manager):
    request = make_request()

    transition = state_machine.approve_as_manager(request, manager, T0)

    assert transition.after.updated_at > request.updated_at


def test_every_reachable_state_satisfies_invariants(manager, project_manager):
    pending = make_request()
    manager_approved = state_machine.approve_as_manager(pending, manager, at(1)).after
    approved = state_machine.approve_as_project_manager(
        manager_approved, project_manager, at(2)
    ).after
    rejected_early = state_machine.reject(pending, manager, ApprovalStage.MANAGER, at(1)).after
    rejected_late = state_machine.reject(
        manager_approved, project_manager, ApprovalStage.PROJECT_MANAGER, at(2)
    ).after

    for record in (pending, manager_approved, approved, rejected_early, rejected_late):
        assert state_machine.invariant_violations(record) == []
        assert (record.status == ApprovalStatus.APPROVED) == (
            record.manager_approved and record.project_manager_approved
        )


def test_invariant_violations_reports_inconsistent_records():
    broken = make_request(project_manager_approved=True, status=ApprovalStatus.APPROVED)

    violations = state_machine.invariant_violations(broken)

    assert "project manager approval without manager approval" in violations
    assert any("stamps incomplete" in violation for violation in violations)
