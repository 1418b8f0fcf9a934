import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Sequence

from app.approvals.application.ports import ApprovalRepository
from app.approvals.domain import state_machine
from app.approvals.domain.errors import NotFound, PermissionDenied, Stale, ValidationError
from app.approvals.domain.models import (
    Actor,
    ApprovalFilters,
    ApprovalKind,
    ApprovalRequest,
    ApprovalStage,
    ApprovalStats,
    ApprovalStatus,
    ApprovalSubmission,
    AuditEntry,
    Role,
)
from app.approvals.domain.projection import visible_to

logger = logging.getLogger(__name__)


IdGenerator = Callable[[], str]
Clock = Callable[[], datetime]

QUEUE_PENDING_MANAGER = "pending_manager"
QUEUE_PENDING_PROJECT_MANAGER = "pending_project_manager"
QUEUE_MINE = "mine"
QUEUES = (QUEUE_PENDING_MANAGER, QUEUE_PENDING_PROJECT_MANAGER, QUEUE_MINE)


@dataclass(frozen=True)
class ListApprovalRequestsQuery:
    status: Optional[str] = None
    kind: Optional[str] = None
    queue: Optional[str] = None
    limit: int = 50
    offset: int = 0


def _audit_entry(
    entry_id: str,
    request: ApprovalRequest,
    action: str,
    actor: Actor,
    description: str,
    changes: Optional[dict] = None,
) -> AuditEntry:
    return AuditEntry(
        id=entry_id,
        entity_type="approval_request",
        entity_id=request.id,
        action=action,
        user_id=actor.id,
        user_name=actor.name,
        user_role=actor.role,
        description=description,
        timestamp=request.updated_at,
        changes=json.dumps(changes) if changes else None,
    )


class SubmitApprovalRequestUseCase:
    def __init__(
        self,
        repository: ApprovalRepository,
        id_generator: IdGenerator,
        clock: Clock,
    ) -> None:
        self._repository = repository
        self._id_generator = id_generator
        self._clock = clock

    async def execute(
        self,
        payload: ApprovalSubmission,
        current_user: Actor,
    ) -> ApprovalRequest:
        state_machine.validate_submission(payload)

        request_number, request_seq = await self._repository.get_next_request_number()
        transition = state_machine.submit(
            current_user,
            payload,
            request_id=self._id_generator(),
            now=self._clock(),
            request_number=request_number,
        )
        request = transition.after

        await self._repository.add_request(request, request_seq)
        await self._repository.add_audit_entry(
            _audit_entry(
                self._id_generator(),
                request,
                "submit",
                current_user,
                f"Submitted {request.kind.value} request {request_number}",
            )
        )
        await self._repository.commit()

        logger.info(f"Approval request {request.id} submitted by {current_user.id}")
        return request


class _TransitionUseCase:
    required_role: Optional[Role] = None

    def __init__(
        self,
        repository: ApprovalRepository,
        id_generator: IdGenerator,
        clock: Clock,
    ) -> None:
        self._repository = repository
        self._id_generator = id_generator
        self._clock = clock

    def _check_role(self, current_user: Actor) -> None:
        if self.required_role is not None and current_user.role != self.required_role.value:
            raise PermissionDenied(
                f"Only the {self.required_role.value} role may perform this action"
            )

    async def _load(self, request_id: str) -> ApprovalRequest:
        request = await self._repository.get_request(request_id)
        if request is None:
            raise NotFound("Approval request not found")
        return request

    async def _commit_transition(
        self,
        transition: state_machine.Transition,
        action: str,
        current_user: Actor,
        description: str,
        changes: dict,
    ) -> ApprovalRequest:
        written = await self._repository.compare_and_set(transition.after, transition.expected)
        if not written:
            await self._repository.rollback()
            current = await self._repository.get_request(transition.after.id)
            logger.warning(
                f"Stale {action} on approval request {transition.after.id} by {current_user.id}"
            )
            raise Stale("Request was changed by another user, reload and try again", current)

        await self._repository.add_audit_entry(
            _audit_entry(
                self._id_generator(),
                transition.after,
                action,
                current_user,
                description,
                changes,
            )
        )
        await self._repository.commit()
        return transition.after


class ApproveAsManagerUseCase(_TransitionUseCase):
    required_role = Role.MANAGER

    async def execute(self, request_id: str, current_user: Actor) -> ApprovalRequest:
        self._check_role(current_user)
        request = await self._load(request_id)
        transition = state_machine.approve_as_manager(request, current_user, self._clock())
        return await self._commit_transition(
            transition,
            "manager_approve",
            current_user,
            f"Manager approval for request {request.request_number or request.id}",
            {"manager_approved": [False, True]},
        )


class ApproveAsProjectManagerUseCase(_TransitionUseCase):
    required_role = Role.PROJECT_MANAGER

    async def execute(self, request_id: str, current_user: Actor) -> ApprovalRequest:
        self._check_role(current_user)
        request = await self._load(request_id)
        transition = state_machine.approve_as_project_manager(
            request, current_user, self._clock()
        )
        return await self._commit_transition(
            transition,
            "project_manager_approve",
            current_user,
            f"Final approval for request {request.request_number or request.id}",
            {
                "project_manager_approved": [False, True],
                "status": [request.status.value, transition.after.status.value],
            },
        )


class RejectApprovalRequestUseCase(_TransitionUseCase):
    STAGE_BY_ROLE = {
        Role.MANAGER.value: ApprovalStage.MANAGER,
        Role.PROJECT_MANAGER.value: ApprovalStage.PROJECT_MANAGER,
    }

    async def execute(
        self,
        request_id: str,
        current_user: Actor,
        reason: Optional[str] = None,
    ) -> ApprovalRequest:
        stage = self.STAGE_BY_ROLE.get(current_user.role)
        if stage is None:
            raise PermissionDenied("Only managers and project managers may reject requests")

        request = await self._load(request_id)
        transition = state_machine.reject(
            request, current_user, stage, self._clock(), reason=reason
        )
        return await self._commit_transition(
            transition,
            "reject",
            current_user,
            f"Rejected request {request.request_number or request.id} at {stage.value} stage",
            {"status": [request.status.value, ApprovalStatus.REJECTED.value], "reason": reason},
        )


class GetApprovalRequestUseCase:
    def __init__(self, repository: ApprovalRepository) -> None:
        self._repository = repository

    async def execute(self, request_id: str, current_user: Actor) -> ApprovalRequest:
        request = await self._repository.get_request(request_id)
        if request is None:
            raise NotFound("Approval request not found")
        if not visible_to(request, Role(current_user.role), current_user.id):
            raise PermissionDenied("You are not allowed to view this request")
        return request


class ListApprovalRequestsUseCase:
    def __init__(
        self,
        repository: ApprovalRepository,
        max_limit: int = 200,
    ) -> None:
        self._repository = repository
        self._max_limit = max_limit

    async def execute(
        self,
        query: ListApprovalRequestsQuery,
        current_user: Actor,
    ) -> Sequence[ApprovalRequest]:
        try:
            status = ApprovalStatus(query.status) if query.status else None
            kind = ApprovalKind(query.kind) if query.kind else None
        except ValueError as e:
            raise ValidationError(str(e))
        if query.queue is not None and query.queue not in QUEUES:
            raise ValidationError(f"Unknown queue: {query.queue}")

        limit = max(1, min(query.limit, self._max_limit))
        offset = max(0, query.offset)
        requested_by = None
        manager_approved = None
        project_manager_approved = None

        if query.queue == QUEUE_PENDING_MANAGER:
            status = ApprovalStatus.PENDING
            manager_approved = False
        elif query.queue == QUEUE_PENDING_PROJECT_MANAGER:
            status = ApprovalStatus.PENDING
            manager_approved = True
            project_manager_approved = False
        elif query.queue == QUEUE_MINE:
            requested_by = current_user.id

        # Same visibility as the role's dashboard.
        role = Role(current_user.role)
        if role == Role.EMPLOYEE:
            requested_by = current_user.id
        elif role == Role.PROCUREMENT:
            if kind not in (None, ApprovalKind.PROCUREMENT):
                raise PermissionDenied("Procurement only sees procurement requests")
            kind = ApprovalKind.PROCUREMENT
        elif role == Role.PROJECT_MANAGER:
            if manager_approved is False:
                raise PermissionDenied("Project managers only see manager-approved requests")
            manager_approved = True

        filters = ApprovalFilters(
            requested_by=requested_by,
            status=status,
            kind=kind,
            manager_approved=manager_approved,
            project_manager_approved=project_manager_approved,
            limit=limit,
            offset=offset,
        )
        return await self._repository.list_requests(filters)


class GetApprovalStatsUseCase:
    def __init__(self, repository: ApprovalRepository) -> None:
        self._repository = repository

    async def execute(self, current_user: Actor) -> ApprovalStats:
        pending_for_me = 0
        if current_user.role == Role.MANAGER.value:
            pending_for_me = await self._repository.count_requests(
                ApprovalFilters(status=ApprovalStatus.PENDING, manager_approved=False)
            )
        elif current_user.role == Role.PROJECT_MANAGER.value:
            pending_for_me = await self._repository.count_requests(
                ApprovalFilters(
                    status=ApprovalStatus.PENDING,
                    manager_approved=True,
                    project_manager_approved=False,
                )
            )

        own = ApprovalFilters(requested_by=current_user.id)
        return ApprovalStats(
            pending_for_me=pending_for_me,
            total_requests=await self._repository.count_requests(own),
            approved_requests=await self._repository.count_requests(
                ApprovalFilters(requested_by=current_user.id, status=ApprovalStatus.APPROVED)
            ),
            rejected_requests=await self._repository.count_requests(
                ApprovalFilters(requested_by=current_user.id, status=ApprovalStatus.REJECTED)
            ),
        )
