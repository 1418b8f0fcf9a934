from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from app.approvals.domain.events import DomainEvent
from app.approvals.domain.models import ApprovalRequest, ApprovalStats
from app.approvals.domain.projection import ProjectionItem
from app.approvals.domain.state_machine import waiting_for


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def approval_request_to_response(request: ApprovalRequest) -> Dict[str, Any]:
    pending_stage = waiting_for(request)
    return {
        "id": request.id,
        "request_number": request.request_number,
        "kind": request.kind.value,
        "requested_by": request.requested_by,
        "requested_by_name": request.requested_by_name,
        "item_id": request.item_id,
        "item_name": request.item_name,
        "description": request.description,
        "reason": request.reason,
        "priority": request.priority.value,
        "supplier": request.supplier,
        "category": request.category,
        "quantity": request.quantity,
        "unit_price": request.unit_price,
        "computed_total": request.computed_total,
        "status": request.status.value,
        "waiting_for": pending_stage.value if pending_stage else None,
        "manager_approved": request.manager_approved,
        "manager_approved_by": request.manager_approved_by,
        "manager_approved_at": _iso(request.manager_approved_at),
        "project_manager_approved": request.project_manager_approved,
        "project_manager_approved_by": request.project_manager_approved_by,
        "project_manager_approved_at": _iso(request.project_manager_approved_at),
        "rejected_by": request.rejected_by,
        "rejected_at": _iso(request.rejected_at),
        "rejection_stage": request.rejection_stage.value if request.rejection_stage else None,
        "rejection_reason": request.rejection_reason,
        "created_at": _iso(request.created_at),
        "updated_at": _iso(request.updated_at),
    }


def projection_item_to_response(item: ProjectionItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "kind": item.kind,
        "source": item.source,
        "display_name": item.display_name,
        "display_amount": item.display_amount,
        "display_quantity": item.display_quantity,
        "display_reference": item.display_reference,
        "status": item.status,
        "created_at": _iso(item.created_at),
    }


def domain_event_to_response(event: DomainEvent) -> Dict[str, Any]:
    return {
        "type": event.type.value,
        "request_id": event.request_id,
        "request_number": event.request_number,
        "item_name": event.item_name,
        "actor_id": event.actor_id,
        "occurred_at": _iso(event.occurred_at),
        "audience_role": event.audience_role.value if event.audience_role else None,
        "audience_user_id": event.audience_user_id,
        "message": event.message,
    }


def dashboard_update_to_response(
    items: Sequence[ProjectionItem],
    notifications: Sequence[DomainEvent],
    degraded: bool = False,
) -> Dict[str, Any]:
    return {
        "type": "projection",
        "degraded": degraded,
        "items": [projection_item_to_response(item) for item in items],
        "notifications": [domain_event_to_response(event) for event in notifications],
    }


def stats_to_response(stats: ApprovalStats) -> Dict[str, Any]:
    return {
        "pending_for_me": stats.pending_for_me,
        "total_requests": stats.total_requests,
        "approved_requests": stats.approved_requests,
        "rejected_requests": stats.rejected_requests,
    }
