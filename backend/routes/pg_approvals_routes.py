"""
PostgreSQL Approval Routes - two-stage approvals and the live dashboard
"""
from fastapi import APIRouter, HTTPException, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel
from typing import Optional
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession
import asyncio
import uuid
import logging

from database import get_postgres_session, get_session_maker, postgres_settings
from app.approvals.application.dashboard_sync import DashboardSync
from app.approvals.application.use_cases import (
    ApproveAsManagerUseCase,
    ApproveAsProjectManagerUseCase,
    GetApprovalRequestUseCase,
    GetApprovalStatsUseCase,
    ListApprovalRequestsQuery,
    ListApprovalRequestsUseCase,
    RejectApprovalRequestUseCase,
    SubmitApprovalRequestUseCase,
)
from app.approvals.domain.errors import (
    DomainError,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    Stale,
    StoreUnavailable,
    ValidationError,
)
from app.approvals.domain.events import is_addressed_to
from app.approvals.domain.models import Actor, ApprovalSubmission, Role
from app.approvals.infrastructure.pg_change_feed import PgChangeFeed
from app.approvals.infrastructure.sqlalchemy_repository import (
    SqlAlchemyApprovalRepository,
    SqlAlchemySnapshotSource,
)
from app.approvals.presentation.response_mapper import (
    approval_request_to_response,
    dashboard_update_to_response,
    projection_item_to_response,
    stats_to_response,
)

logger = logging.getLogger(__name__)

# Create router
pg_approvals_router = APIRouter(prefix="/api/pg", tags=["PostgreSQL Approvals"])

# Import auth dependency
from routes.pg_auth_routes import actor_from_token, get_current_actor


# ==================== PYDANTIC MODELS ====================

class ApprovalRequestCreate(BaseModel):
    kind: str
    item_name: str
    quantity: int
    unit_price: float
    item_id: Optional[str] = None
    description: Optional[str] = None
    reason: Optional[str] = None
    priority: str = "medium"
    supplier: Optional[str] = None
    category: Optional[str] = None


class RejectApprovalData(BaseModel):
    reason: Optional[str] = None


# ==================== HELPER FUNCTIONS ====================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def to_http_error(exc: DomainError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=exc.message)
    if isinstance(exc, PermissionDenied):
        return HTTPException(status_code=403, detail=exc.message)
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, Stale):
        current = approval_request_to_response(exc.current) if exc.current else None
        return HTTPException(status_code=409, detail={"message": exc.message, "current": current})
    if isinstance(exc, InvalidTransition):
        return HTTPException(status_code=409, detail=exc.message)
    if isinstance(exc, StoreUnavailable):
        return HTTPException(status_code=503, detail=exc.message)
    return HTTPException(status_code=500, detail=exc.message)


def change_feed() -> PgChangeFeed:
    return PgChangeFeed(postgres_settings.listen_dsn, postgres_settings.change_feed_channel)


def dashboard_sync_for(current_user: Actor) -> DashboardSync:
    return DashboardSync(
        source=SqlAlchemySnapshotSource(get_session_maker()),
        feed=change_feed(),
        role=Role(current_user.role),
        actor_id=current_user.id,
        reconnect_delay=postgres_settings.change_feed_reconnect_delay,
    )


# ==================== APPROVAL ROUTES ====================

@pg_approvals_router.post("/approvals")
async def submit_approval_request(
    request_data: ApprovalRequestCreate,
    current_user: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_postgres_session)
):
    """Submit a new inventory or procurement request for approval"""
    use_case = SubmitApprovalRequestUseCase(
        repository=SqlAlchemyApprovalRepository(session),
        id_generator=new_id,
        clock=utcnow,
    )
    payload = ApprovalSubmission(
        kind=request_data.kind,
        item_name=request_data.item_name,
        quantity=request_data.quantity,
        unit_price=request_data.unit_price,
        item_id=request_data.item_id,
        description=request_data.description,
        reason=request_data.reason,
        priority=request_data.priority,
        supplier=request_data.supplier,
        category=request_data.category,
    )

    try:
        request = await use_case.execute(payload, current_user)
    except DomainError as exc:
        raise to_http_error(exc)

    return approval_request_to_response(request)


@pg_approvals_router.get("/approvals")
async def list_approval_requests(
    status_filter: Optional[str] = Query(None, alias="status"),
    kind: Optional[str] = None,
    queue: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    current_user: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_postgres_session)
):
    """List approval requests visible to the caller"""
    use_case = ListApprovalRequestsUseCase(
        SqlAlchemyApprovalRepository(session),
        max_limit=postgres_settings.approvals_max_list_limit,
    )
    query = ListApprovalRequestsQuery(
        status=status_filter,
        kind=kind,
        queue=queue,
        limit=limit,
        offset=offset,
    )

    try:
        requests = await use_case.execute(query, current_user)
    except DomainError as exc:
        raise to_http_error(exc)

    return [approval_request_to_response(request) for request in requests]


@pg_approvals_router.get("/approvals/stats")
async def get_approval_stats(
    current_user: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_postgres_session)
):
    """Counts for the caller's dashboard badges"""
    use_case = GetApprovalStatsUseCase(SqlAlchemyApprovalRepository(session))
    try:
        stats = await use_case.execute(current_user)
    except DomainError as exc:
        raise to_http_error(exc)
    return stats_to_response(stats)


@pg_approvals_router.get("/approvals/{request_id}")
async def get_approval_request(
    request_id: str,
    current_user: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_postgres_session)
):
    use_case = GetApprovalRequestUseCase(SqlAlchemyApprovalRepository(session))
    try:
        request = await use_case.execute(request_id, current_user)
    except DomainError as exc:
        raise to_http_error(exc)
    return approval_request_to_response(request)


@pg_approvals_router.post("/approvals/{request_id}/manager-approve")
async def manager_approve(
    request_id: str,
    current_user: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_postgres_session)
):
    """First-stage approval - manager only"""
    use_case = ApproveAsManagerUseCase(
        repository=SqlAlchemyApprovalRepository(session),
        id_generator=new_id,
        clock=utcnow,
    )
    try:
        request = await use_case.execute(request_id, current_user)
    except DomainError as exc:
        raise to_http_error(exc)
    return approval_request_to_response(request)


@pg_approvals_router.post("/approvals/{request_id}/project-manager-approve")
async def project_manager_approve(
    request_id: str,
    current_user: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_postgres_session)
):
    """Final approval - project manager only, after the manager"""
    use_case = ApproveAsProjectManagerUseCase(
        repository=SqlAlchemyApprovalRepository(session),
        id_generator=new_id,
        clock=utcnow,
    )
    try:
        request = await use_case.execute(request_id, current_user)
    except DomainError as exc:
        raise to_http_error(exc)
    return approval_request_to_response(request)


@pg_approvals_router.post("/approvals/{request_id}/reject")
async def reject_approval_request(
    request_id: str,
    reject_data: Optional[RejectApprovalData] = None,
    current_user: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_postgres_session)
):
    """Reject at the caller's stage - manager or project manager"""
    use_case = RejectApprovalRequestUseCase(
        repository=SqlAlchemyApprovalRepository(session),
        id_generator=new_id,
        clock=utcnow,
    )
    reason = reject_data.reason if reject_data else None
    try:
        request = await use_case.execute(request_id, current_user, reason=reason)
    except DomainError as exc:
        raise to_http_error(exc)
    return approval_request_to_response(request)


# ==================== DASHBOARD ROUTES ====================

@pg_approvals_router.get("/dashboard/projection")
async def get_dashboard_projection(current_user: Actor = Depends(get_current_actor)):
    """One-shot projection for the caller's role"""
    sync = dashboard_sync_for(current_user)
    try:
        await sync.load_snapshot()
    except DomainError as exc:
        raise to_http_error(exc)
    return [projection_item_to_response(item) for item in sync.projection()]


async def _send_updates(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        message = await outbox.get()
        await websocket.send_json(message)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@pg_approvals_router.websocket("/ws/dashboard")
async def dashboard_socket(websocket: WebSocket, token: str = Query(...)):
    """Stream projections and notifications from a per-connection sync loop"""
    try:
        current_user = actor_from_token(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    role = Role(current_user.role)
    sync = dashboard_sync_for(current_user)
    outbox: asyncio.Queue = asyncio.Queue()

    def on_change(items, notifications):
        visible = [event for event in notifications if is_addressed_to(event, role, current_user.id)]
        outbox.put_nowait(dashboard_update_to_response(items, visible, sync.degraded))

    sync.add_listener(on_change)
    tasks = {
        asyncio.create_task(sync.run()),
        asyncio.create_task(_send_updates(websocket, outbox)),
        asyncio.create_task(_wait_for_disconnect(websocket)),
    }
    logger.info(f"Dashboard socket opened for {current_user.id} ({role.value})")

    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"Dashboard socket task failed: {task.exception()}")
    finally:
        sync.remove_listener(on_change)
        await sync.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Dashboard socket closed for {current_user.id}")
