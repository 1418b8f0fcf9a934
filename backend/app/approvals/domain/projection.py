"""
Projection builder.

Merges approval requests and purchase orders into one display list with a
uniform shape. Everything here is derived from a ``DashboardSnapshot`` on
each call; nothing is cached.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from app.approvals.domain.change_events import APPROVAL_REQUESTS_TABLE, PURCHASE_ORDERS_TABLE
from app.approvals.domain.models import (
    ApprovalKind,
    ApprovalRequest,
    ApprovalStatus,
    PurchaseOrder,
    Role,
)
from app.approvals.domain.reconciliation import DashboardSnapshot

ORDER_KIND = "order"


@dataclass(frozen=True)
class ProjectionItem:
    id: str
    kind: str
    source: str
    display_name: str
    display_amount: float
    display_quantity: int
    display_reference: Optional[str]
    status: str
    created_at: datetime


def approval_request_to_item(request: ApprovalRequest) -> ProjectionItem:
    if request.kind == ApprovalKind.PROCUREMENT:
        name = request.item_name
        if request.supplier:
            name = f"{request.item_name} ({request.supplier})"
        reference = request.request_number or request.item_id
    else:
        name = request.item_name
        reference = request.item_id or request.request_number

    return ProjectionItem(
        id=request.id,
        kind=request.kind.value,
        source=APPROVAL_REQUESTS_TABLE,
        display_name=name,
        display_amount=request.computed_total,
        display_quantity=request.quantity,
        display_reference=reference,
        status=request.status.value,
        created_at=request.created_at,
    )


def purchase_order_to_item(order: PurchaseOrder) -> ProjectionItem:
    return ProjectionItem(
        id=order.id,
        kind=ORDER_KIND,
        source=PURCHASE_ORDERS_TABLE,
        display_name=order.supplier_name,
        display_amount=order.total_amount,
        display_quantity=order.items_count,
        display_reference=order.order_number,
        status=order.status,
        created_at=order.created_at,
    )


def sort_items(items: Iterable[ProjectionItem]) -> List[ProjectionItem]:
    """Newest first; equal timestamps fall back to ascending id."""
    by_id = sorted(items, key=lambda item: item.id)
    return sorted(by_id, key=lambda item: item.created_at, reverse=True)


def pending_for_manager(request: ApprovalRequest) -> bool:
    return request.status == ApprovalStatus.PENDING and not request.manager_approved


def pending_for_project_manager(request: ApprovalRequest) -> bool:
    return (
        request.status == ApprovalStatus.PENDING
        and request.manager_approved
        and not request.project_manager_approved
    )


@dataclass(frozen=True)
class DashboardView:
    include_orders: bool
    request_filter: Callable[[ApprovalRequest, Optional[str]], bool]


def _all_requests(request: ApprovalRequest, actor_id: Optional[str]) -> bool:
    return True


def _own_requests(request: ApprovalRequest, actor_id: Optional[str]) -> bool:
    return request.requested_by == actor_id


def _manager_approved_requests(request: ApprovalRequest, actor_id: Optional[str]) -> bool:
    return request.manager_approved


def _procurement_requests(request: ApprovalRequest, actor_id: Optional[str]) -> bool:
    return request.kind == ApprovalKind.PROCUREMENT


DASHBOARD_VIEWS: Dict[Role, DashboardView] = {
    Role.ADMIN: DashboardView(include_orders=True, request_filter=_all_requests),
    Role.MANAGER: DashboardView(include_orders=False, request_filter=_all_requests),
    Role.PROJECT_MANAGER: DashboardView(
        include_orders=False, request_filter=_manager_approved_requests
    ),
    Role.EMPLOYEE: DashboardView(include_orders=False, request_filter=_own_requests),
    Role.PROCUREMENT: DashboardView(include_orders=True, request_filter=_procurement_requests),
}


def visible_to(request: ApprovalRequest, role: Role, actor_id: Optional[str]) -> bool:
    """Whether a dashboard for ``role`` shows ``request``; reads by id follow the same rule."""
    return DASHBOARD_VIEWS[role].request_filter(request, actor_id)


def build_projection(
    snapshot: DashboardSnapshot,
    role: Role = Role.ADMIN,
    actor_id: Optional[str] = None,
) -> List[ProjectionItem]:
    view = DASHBOARD_VIEWS[role]
    items = [
        approval_request_to_item(request)
        for request in snapshot.approvals.records.values()
        if visible_to(request, role, actor_id)
    ]
    if view.include_orders:
        items.extend(purchase_order_to_item(order) for order in snapshot.orders.records.values())
    return sort_items(items)
