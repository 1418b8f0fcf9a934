import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class Role(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    PROJECT_MANAGER = "project_manager"
    EMPLOYEE = "employee"
    PROCUREMENT = "procurement"


class ApprovalKind(str, enum.Enum):
    INVENTORY = "inventory"
    PROCUREMENT = "procurement"


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalStage(str, enum.Enum):
    MANAGER = "manager"
    PROJECT_MANAGER = "project_manager"


class Priority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


@dataclass(frozen=True)
class Actor:
    id: str
    name: str
    role: str


@dataclass(frozen=True)
class ApprovalRequest:
    id: str
    kind: ApprovalKind
    requested_by: str
    item_name: str
    quantity: int
    unit_price: float
    status: ApprovalStatus
    created_at: datetime
    updated_at: datetime
    request_number: Optional[str] = None
    requested_by_name: Optional[str] = None
    item_id: Optional[str] = None
    description: Optional[str] = None
    reason: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    supplier: Optional[str] = None
    category: Optional[str] = None
    manager_approved: bool = False
    manager_approved_by: Optional[str] = None
    manager_approved_at: Optional[datetime] = None
    project_manager_approved: bool = False
    project_manager_approved_by: Optional[str] = None
    project_manager_approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_stage: Optional[ApprovalStage] = None
    rejection_reason: Optional[str] = None

    @property
    def computed_total(self) -> float:
        return self.quantity * self.unit_price

    @property
    def is_terminal(self) -> bool:
        return self.status in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED)


@dataclass(frozen=True)
class ApprovalSubmission:
    kind: str
    item_name: str
    quantity: int
    unit_price: float
    item_id: Optional[str] = None
    description: Optional[str] = None
    reason: Optional[str] = None
    priority: str = Priority.MEDIUM.value
    supplier: Optional[str] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class PurchaseOrder:
    id: str
    order_number: Optional[str]
    supplier_name: str
    items_count: int
    total_amount: float
    status: str
    created_at: datetime
    updated_at: datetime
    approval_request_id: Optional[str] = None


@dataclass(frozen=True)
class AuditEntry:
    id: str
    entity_type: str
    entity_id: str
    action: str
    user_id: str
    user_name: str
    user_role: str
    description: str
    timestamp: datetime
    changes: Optional[str] = None


@dataclass(frozen=True)
class ApprovalFilters:
    requested_by: Optional[str] = None
    status: Optional[ApprovalStatus] = None
    kind: Optional[ApprovalKind] = None
    manager_approved: Optional[bool] = None
    project_manager_approved: Optional[bool] = None
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True)
class ApprovalStats:
    pending_for_me: int
    total_requests: int
    approved_requests: int
    rejected_requests: int
