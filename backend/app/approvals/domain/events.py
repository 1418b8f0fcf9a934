import enum
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from app.approvals.domain.models import ApprovalRequest, ApprovalStatus, Role


class DomainEventType(str, enum.Enum):
    REQUEST_SUBMITTED = "request_submitted"
    MANAGER_APPROVED = "manager_approved"
    FULLY_APPROVED = "fully_approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class DomainEvent:
    """Synthetic workflow event derived from a before/after pair; never stored."""

    type: DomainEventType
    request_id: str
    request_number: Optional[str]
    item_name: str
    actor_id: Optional[str]
    occurred_at: datetime
    audience_role: Optional[Role] = None
    audience_user_id: Optional[str] = None
    message: str = ""


def _label(record: ApprovalRequest) -> str:
    return record.request_number or record.item_name


def _event(record: ApprovalRequest, event_type: DomainEventType) -> DomainEvent:
    label = _label(record)
    kind = record.kind.value

    # The audience is whoever has to act (or be told) next.
    if event_type == DomainEventType.REQUEST_SUBMITTED:
        return DomainEvent(
            type=event_type,
            request_id=record.id,
            request_number=record.request_number,
            item_name=record.item_name,
            actor_id=record.requested_by,
            occurred_at=record.created_at,
            audience_role=Role.MANAGER,
            message=f"New {kind} request {label} needs your approval",
        )
    if event_type == DomainEventType.MANAGER_APPROVED:
        return DomainEvent(
            type=event_type,
            request_id=record.id,
            request_number=record.request_number,
            item_name=record.item_name,
            actor_id=record.manager_approved_by,
            occurred_at=record.manager_approved_at or record.updated_at,
            audience_role=Role.PROJECT_MANAGER,
            message=f"{kind.capitalize()} request {label} approved by manager, needs your final approval",
        )
    if event_type == DomainEventType.FULLY_APPROVED:
        return DomainEvent(
            type=event_type,
            request_id=record.id,
            request_number=record.request_number,
            item_name=record.item_name,
            actor_id=record.project_manager_approved_by,
            occurred_at=record.project_manager_approved_at or record.updated_at,
            audience_user_id=record.requested_by,
            message=f"Your {kind} request {label} has been approved",
        )
    return DomainEvent(
        type=event_type,
        request_id=record.id,
        request_number=record.request_number,
        item_name=record.item_name,
        actor_id=record.rejected_by,
        occurred_at=record.rejected_at or record.updated_at,
        audience_user_id=record.requested_by,
        message=f"Your {kind} request {label} has been rejected",
    )


def derive_domain_events(
    before: Optional[ApprovalRequest], after: ApprovalRequest
) -> List[DomainEvent]:
    """Diff two versions of one record into the workflow events it implies.

    With no prior version only the record's current stage is reported, so a
    record first seen after it was already approved yields a single
    ``FULLY_APPROVED`` event rather than its whole history.
    """
    if before is None:
        if after.status == ApprovalStatus.REJECTED:
            return [_event(after, DomainEventType.REJECTED)]
        if after.status == ApprovalStatus.APPROVED:
            return [_event(after, DomainEventType.FULLY_APPROVED)]
        if after.manager_approved:
            return [_event(after, DomainEventType.MANAGER_APPROVED)]
        return [_event(after, DomainEventType.REQUEST_SUBMITTED)]

    events = []
    if after.manager_approved and not before.manager_approved:
        events.append(_event(after, DomainEventType.MANAGER_APPROVED))
    if after.status == ApprovalStatus.APPROVED and before.status != ApprovalStatus.APPROVED:
        events.append(_event(after, DomainEventType.FULLY_APPROVED))
    if after.status == ApprovalStatus.REJECTED and before.status != ApprovalStatus.REJECTED:
        events.append(_event(after, DomainEventType.REJECTED))
    return events


def is_addressed_to(event: DomainEvent, role: Role, actor_id: Optional[str]) -> bool:
    if role == Role.ADMIN:
        return True
    if event.audience_user_id is not None and event.audience_user_id == actor_id:
        return True
    return event.audience_role == role
