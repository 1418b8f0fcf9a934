from typing import AsyncIterator, Mapping, Optional, Protocol, Sequence

from app.approvals.domain.change_events import ChangeEvent
from app.approvals.domain.models import (
    ApprovalFilters,
    ApprovalRequest,
    AuditEntry,
    PurchaseOrder,
)


class ApprovalRepository(Protocol):
    async def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        ...

    async def get_next_request_number(self) -> tuple[str, int]:
        ...

    async def add_request(self, request: ApprovalRequest, request_seq: int) -> None:
        ...

    async def compare_and_set(
        self, request: ApprovalRequest, expected: Mapping[str, object]
    ) -> bool:
        """Write ``request`` only if the stored row matches ``expected``."""
        ...

    async def add_audit_entry(self, entry: AuditEntry) -> None:
        ...

    async def list_requests(self, filters: ApprovalFilters) -> Sequence[ApprovalRequest]:
        ...

    async def count_requests(self, filters: ApprovalFilters) -> int:
        ...

    async def commit(self) -> None:
        ...

    async def rollback(self) -> None:
        ...


class SnapshotSource(Protocol):
    async def load_approval_requests(self) -> Sequence[ApprovalRequest]:
        ...

    async def load_purchase_orders(self) -> Sequence[PurchaseOrder]:
        ...


class ChangeSubscription(Protocol):
    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        ...

    async def __anext__(self) -> ChangeEvent:
        ...

    async def close(self) -> None:
        ...


class ChangeFeed(Protocol):
    async def subscribe(self) -> ChangeSubscription:
        ...
