import logging
from typing import Mapping, Optional, Sequence

from sqlalchemy import and_, desc, func, select, update
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.approvals.application.ports import ApprovalRepository, SnapshotSource
from app.approvals.domain.errors import StoreUnavailable
from app.approvals.domain.models import (
    ApprovalFilters,
    ApprovalKind,
    ApprovalRequest,
    ApprovalStage,
    ApprovalStatus,
    AuditEntry,
    Priority,
    PurchaseOrder,
)
from database import (
    ApprovalRequest as ApprovalRequestModel,
    AuditLog,
    PurchaseOrder as PurchaseOrderModel,
)

logger = logging.getLogger(__name__)

REQUEST_NUMBER_PREFIX = "APR-"

# Columns a transition may write; ``computed_total`` is never stored.
MUTABLE_COLUMNS = (
    "status",
    "manager_approved",
    "manager_approved_by",
    "manager_approved_at",
    "project_manager_approved",
    "project_manager_approved_by",
    "project_manager_approved_at",
    "rejected_by",
    "rejected_at",
    "rejection_stage",
    "rejection_reason",
    "updated_at",
)


def _store_error(e: Exception) -> StoreUnavailable:
    logger.error(f"Approval store error: {e}")
    return StoreUnavailable("Approval store is unavailable, please try again later")


def to_domain(row: ApprovalRequestModel) -> ApprovalRequest:
    return ApprovalRequest(
        id=row.id,
        request_number=row.request_number,
        kind=ApprovalKind(row.kind),
        requested_by=row.requested_by,
        requested_by_name=row.requested_by_name,
        item_id=row.item_id,
        item_name=row.item_name,
        description=row.description,
        reason=row.reason,
        priority=Priority(row.priority or Priority.MEDIUM.value),
        supplier=row.supplier,
        category=row.category,
        quantity=row.quantity,
        unit_price=row.unit_price,
        status=ApprovalStatus(row.status),
        manager_approved=row.manager_approved,
        manager_approved_by=row.manager_approved_by,
        manager_approved_at=row.manager_approved_at,
        project_manager_approved=row.project_manager_approved,
        project_manager_approved_by=row.project_manager_approved_by,
        project_manager_approved_at=row.project_manager_approved_at,
        rejected_by=row.rejected_by,
        rejected_at=row.rejected_at,
        rejection_stage=ApprovalStage(row.rejection_stage) if row.rejection_stage else None,
        rejection_reason=row.rejection_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def order_to_domain(row: PurchaseOrderModel) -> PurchaseOrder:
    return PurchaseOrder(
        id=row.id,
        order_number=row.order_number,
        supplier_name=row.supplier_name,
        items_count=row.items_count or 0,
        total_amount=row.total_amount or 0,
        status=row.status,
        approval_request_id=row.approval_request_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _column_value(request: ApprovalRequest, column: str):
    value = getattr(request, column)
    if isinstance(value, (ApprovalStatus, ApprovalStage)):
        return value.value
    return value


class SqlAlchemyApprovalRepository(ApprovalRepository):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        try:
            result = await self._session.execute(
                select(ApprovalRequestModel).where(ApprovalRequestModel.id == request_id)
            )
        except (OperationalError, DBAPIError, OSError) as e:
            raise _store_error(e)
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return to_domain(row)

    async def get_next_request_number(self) -> tuple[str, int]:
        try:
            result = await self._session.execute(
                select(func.max(ApprovalRequestModel.request_seq))
            )
        except (OperationalError, DBAPIError, OSError) as e:
            raise _store_error(e)
        max_seq = result.scalar() or 0
        next_seq = max_seq + 1
        return f"{REQUEST_NUMBER_PREFIX}{next_seq}", next_seq

    async def add_request(self, request: ApprovalRequest, request_seq: int) -> None:
        new_request = ApprovalRequestModel(
            id=request.id,
            request_number=request.request_number,
            request_seq=request_seq,
            kind=request.kind.value,
            requested_by=request.requested_by,
            requested_by_name=request.requested_by_name,
            item_id=request.item_id,
            item_name=request.item_name,
            description=request.description,
            reason=request.reason,
            priority=request.priority.value,
            supplier=request.supplier,
            category=request.category,
            quantity=request.quantity,
            unit_price=request.unit_price,
            status=request.status.value,
            manager_approved=request.manager_approved,
            project_manager_approved=request.project_manager_approved,
            created_at=request.created_at,
            updated_at=request.updated_at,
        )
        self._session.add(new_request)

    async def compare_and_set(
        self, request: ApprovalRequest, expected: Mapping[str, object]
    ) -> bool:
        conditions = [ApprovalRequestModel.id == request.id]
        for column, value in expected.items():
            conditions.append(getattr(ApprovalRequestModel, column) == value)

        statement = (
            update(ApprovalRequestModel)
            .where(and_(*conditions))
            .values({column: _column_value(request, column) for column in MUTABLE_COLUMNS})
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self._session.execute(statement)
        except (OperationalError, DBAPIError, OSError) as e:
            raise _store_error(e)
        return result.rowcount == 1

    async def add_audit_entry(self, entry: AuditEntry) -> None:
        audit_log = AuditLog(
            id=entry.id,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            action=entry.action,
            changes=entry.changes,
            user_id=entry.user_id,
            user_name=entry.user_name,
            user_role=entry.user_role,
            description=entry.description,
            timestamp=entry.timestamp,
        )
        self._session.add(audit_log)

    def _filtered(self, query, filters: ApprovalFilters):
        if filters.requested_by:
            query = query.where(ApprovalRequestModel.requested_by == filters.requested_by)
        if filters.status:
            query = query.where(ApprovalRequestModel.status == filters.status.value)
        if filters.kind:
            query = query.where(ApprovalRequestModel.kind == filters.kind.value)
        if filters.manager_approved is not None:
            query = query.where(ApprovalRequestModel.manager_approved == filters.manager_approved)
        if filters.project_manager_approved is not None:
            query = query.where(
                ApprovalRequestModel.project_manager_approved == filters.project_manager_approved
            )
        return query

    async def list_requests(self, filters: ApprovalFilters) -> Sequence[ApprovalRequest]:
        query = self._filtered(select(ApprovalRequestModel), filters)
        query = query.order_by(desc(ApprovalRequestModel.created_at), ApprovalRequestModel.id)
        query = query.limit(filters.limit).offset(filters.offset)

        try:
            result = await self._session.execute(query)
        except (OperationalError, DBAPIError, OSError) as e:
            raise _store_error(e)
        return [to_domain(row) for row in result.scalars().all()]

    async def count_requests(self, filters: ApprovalFilters) -> int:
        query = self._filtered(
            select(func.count()).select_from(ApprovalRequestModel), filters
        )
        try:
            result = await self._session.execute(query)
        except (OperationalError, DBAPIError, OSError) as e:
            raise _store_error(e)
        return result.scalar() or 0

    async def commit(self) -> None:
        try:
            await self._session.commit()
        except (OperationalError, DBAPIError, OSError) as e:
            raise _store_error(e)

    async def rollback(self) -> None:
        await self._session.rollback()


class SqlAlchemySnapshotSource(SnapshotSource):
    """Full-table reads used for the initial load and after every reconnect."""

    def __init__(self, session_maker: async_sessionmaker) -> None:
        self._session_maker = session_maker

    async def load_approval_requests(self) -> Sequence[ApprovalRequest]:
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(ApprovalRequestModel).order_by(desc(ApprovalRequestModel.created_at))
                )
                return [to_domain(row) for row in result.scalars().all()]
        except (OperationalError, DBAPIError, OSError) as e:
            raise _store_error(e)

    async def load_purchase_orders(self) -> Sequence[PurchaseOrder]:
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(PurchaseOrderModel).order_by(desc(PurchaseOrderModel.created_at))
                )
                return [order_to_domain(row) for row in result.scalars().all()]
        except (OperationalError, DBAPIError, OSError) as e:
            raise _store_error(e)
