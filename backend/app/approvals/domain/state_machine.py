"""
Two-stage approval state machine.

Pure functions only: every transition takes the current record and returns a
``Transition`` describing the new record plus the compare-and-set condition
the store write must be guarded by. ``status`` is never assigned by callers;
it is always derived here from the two approval flags.
"""
import enum
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from app.approvals.domain.errors import InvalidTransition, ValidationError
from app.approvals.domain.models import (
    Actor,
    ApprovalKind,
    ApprovalRequest,
    ApprovalStage,
    ApprovalStatus,
    ApprovalSubmission,
    Priority,
)


class Stage(str, enum.Enum):
    PENDING = "pending"
    MANAGER_APPROVED = "manager_approved"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Transition:
    before: Optional[ApprovalRequest]
    after: ApprovalRequest
    expected: Dict[str, object]


TICK = timedelta(microseconds=1)


def derive_status(
    manager_approved: bool,
    project_manager_approved: bool,
    rejected: bool = False,
) -> ApprovalStatus:
    if rejected:
        return ApprovalStatus.REJECTED
    if manager_approved and project_manager_approved:
        return ApprovalStatus.APPROVED
    return ApprovalStatus.PENDING


def stage_of(record: ApprovalRequest) -> Stage:
    if record.status == ApprovalStatus.REJECTED:
        return Stage.REJECTED
    if record.status == ApprovalStatus.APPROVED:
        return Stage.APPROVED
    if record.manager_approved:
        return Stage.MANAGER_APPROVED
    return Stage.PENDING


def waiting_for(record: ApprovalRequest) -> Optional[ApprovalStage]:
    """Return the stage whose approval the record is waiting on, if any."""
    stage = stage_of(record)
    if stage == Stage.PENDING:
        return ApprovalStage.MANAGER
    if stage == Stage.MANAGER_APPROVED:
        return ApprovalStage.PROJECT_MANAGER
    return None


def invariant_violations(record: ApprovalRequest) -> List[str]:
    violations = []

    if record.project_manager_approved and not record.manager_approved:
        violations.append("project manager approval without manager approval")

    rejected = record.status == ApprovalStatus.REJECTED
    if not rejected:
        expected = derive_status(record.manager_approved, record.project_manager_approved)
        if record.status != expected:
            violations.append(f"status {record.status.value} does not match flags")

    stamp_groups = (
        (
            "manager approval",
            record.manager_approved,
            (record.manager_approved_by, record.manager_approved_at),
        ),
        (
            "project manager approval",
            record.project_manager_approved,
            (record.project_manager_approved_by, record.project_manager_approved_at),
        ),
        (
            "rejection",
            rejected,
            (record.rejected_by, record.rejected_at, record.rejection_stage),
        ),
    )
    for label, is_set, stamps in stamp_groups:
        stamped = [value is not None for value in stamps]
        if is_set and not all(stamped):
            violations.append(f"{label} stamps incomplete")
        elif not is_set and any(stamped):
            violations.append(f"{label} stamps set without {label}")

    if record.quantity <= 0:
        violations.append("quantity must be positive")
    if record.unit_price < 0:
        violations.append("unit price must not be negative")
    if record.updated_at < record.created_at:
        violations.append("updated_at precedes created_at")

    return violations


def _next_timestamp(record: ApprovalRequest, now: datetime) -> datetime:
    # updated_at must strictly increase even when the clock has not moved.
    return max(now, record.updated_at + TICK)


def _checked(transition: Transition) -> Transition:
    violations = invariant_violations(transition.after)
    if violations:
        raise InvalidTransition("; ".join(violations))
    return transition


def validate_submission(payload: ApprovalSubmission) -> Tuple[ApprovalKind, Priority]:
    try:
        kind = ApprovalKind(payload.kind)
    except ValueError:
        raise ValidationError(f"Unknown request kind: {payload.kind}")
    try:
        priority = Priority(payload.priority)
    except ValueError:
        raise ValidationError(f"Unknown priority: {payload.priority}")

    if not payload.item_name or not payload.item_name.strip():
        raise ValidationError("Item name is required")
    if payload.quantity <= 0:
        raise ValidationError("Quantity must be greater than zero")
    if payload.unit_price < 0:
        raise ValidationError("Unit price must not be negative")
    return kind, priority


def submit(
    requester: Actor,
    payload: ApprovalSubmission,
    request_id: str,
    now: datetime,
    request_number: Optional[str] = None,
) -> Transition:
    kind, priority = validate_submission(payload)

    record = ApprovalRequest(
        id=request_id,
        request_number=request_number,
        kind=kind,
        requested_by=requester.id,
        requested_by_name=requester.name,
        item_id=payload.item_id,
        item_name=payload.item_name.strip(),
        description=payload.description,
        reason=payload.reason,
        priority=priority,
        supplier=payload.supplier if kind == ApprovalKind.PROCUREMENT else None,
        category=payload.category if kind == ApprovalKind.PROCUREMENT else None,
        quantity=payload.quantity,
        unit_price=payload.unit_price,
        status=derive_status(False, False),
        created_at=now,
        updated_at=now,
    )
    return _checked(Transition(before=None, after=record, expected={}))


def approve_as_manager(record: ApprovalRequest, actor: Actor, now: datetime) -> Transition:
    if record.is_terminal:
        raise InvalidTransition(f"Request is already {record.status.value}")
    if record.manager_approved:
        raise InvalidTransition("Request is already approved by a manager")

    after = replace(
        record,
        manager_approved=True,
        manager_approved_by=actor.id,
        manager_approved_at=now,
        status=derive_status(True, record.project_manager_approved),
        updated_at=_next_timestamp(record, now),
    )
    expected = {"status": ApprovalStatus.PENDING.value, "manager_approved": False}
    return _checked(Transition(before=record, after=after, expected=expected))


def approve_as_project_manager(
    record: ApprovalRequest, actor: Actor, now: datetime
) -> Transition:
    if record.is_terminal:
        raise InvalidTransition(f"Request is already {record.status.value}")
    if not record.manager_approved:
        raise InvalidTransition("Manager approval is required first")
    if record.project_manager_approved:
        raise InvalidTransition("Request is already approved by a project manager")

    after = replace(
        record,
        project_manager_approved=True,
        project_manager_approved_by=actor.id,
        project_manager_approved_at=now,
        status=derive_status(record.manager_approved, True),
        updated_at=_next_timestamp(record, now),
    )
    expected = {
        "status": ApprovalStatus.PENDING.value,
        "manager_approved": True,
        "project_manager_approved": False,
    }
    return _checked(Transition(before=record, after=after, expected=expected))


def reject(
    record: ApprovalRequest,
    actor: Actor,
    stage: ApprovalStage,
    now: datetime,
    reason: Optional[str] = None,
) -> Transition:
    if record.is_terminal:
        raise InvalidTransition(f"Request is already {record.status.value}")

    # Flags are kept as they were: they record what happened before rejection.
    after = replace(
        record,
        status=derive_status(
            record.manager_approved, record.project_manager_approved, rejected=True
        ),
        rejected_by=actor.id,
        rejected_at=now,
        rejection_stage=stage,
        rejection_reason=reason,
        updated_at=_next_timestamp(record, now),
    )
    expected = {
        "status": ApprovalStatus.PENDING.value,
        "manager_approved": record.manager_approved,
        "project_manager_approved": record.project_manager_approved,
    }
    return _checked(Transition(before=record, after=after, expected=expected))
