import asyncio
from datetime import timedelta

import pytest

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
    InvalidTransition,
    NotFound,
    PermissionDenied,
    Stale,
    StoreUnavailable,
    ValidationError,
)
from app.approvals.domain.models import (
    ApprovalFilters,
    ApprovalKind,
    ApprovalStage,
    ApprovalStatus,
    ApprovalSubmission,
)
from tests.factories import T0, at, make_request


class FakeApprovalRepository:
    def __init__(self) -> None:
        self.requests = {}
        self.audit_entries = []
        self.commits = 0
        self.rollbacks = 0
        self.next_seq = 1
        self.last_filters = None
        self.count_result = 0
        self.unavailable = False

    async def get_request(self, request_id):
        # Yield so concurrent callers both read before either writes.
        await asyncio.sleep(0)
        return self.requests.get(request_id)

    async def get_next_request_number(self):
        return f"APR-{self.next_seq}", self.next_seq

    async def add_request(self, request, request_seq):
        self.requests[request.id] = request
        self.next_seq = request_seq + 1

    async def compare_and_set(self, request, expected):
        if self.unavailable:
            raise StoreUnavailable("Approval store is unavailable, please try again later")
        stored = self.requests.get(request.id)
        if stored is None:
            return False
        for column, value in expected.items():
            current = getattr(stored, column)
            if getattr(current, "value", current) != value:
                return False
        self.requests[request.id] = request
        return True

    async def add_audit_entry(self, entry):
        self.audit_entries.append(entry)

    async def list_requests(self, filters):
        self.last_filters = filters
        return list(self.requests.values())

    async def count_requests(self, filters):
        return self.count_result

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1


def run(coro):
    return asyncio.run(coro)


def ids():
    counter = iter(range(1, 1000))
    return lambda: f"id-{next(counter)}"


def ticking_clock(start=T0):
    state = {"now": start}

    def clock():
        state["now"] = state["now"] + timedelta(seconds=1)
        return state["now"]

    return clock


def seeded_repo(**overrides):
    repo = FakeApprovalRepository()
    request = make_request(**overrides)
    repo.requests[request.id] = request
    return repo


def transition(use_case_class, repo):
    return use_case_class(repository=repo, id_generator=ids(), clock=ticking_clock())


def test_submit_persists_request_and_audit_entry(employee):
    repo = FakeApprovalRepository()
    use_case = SubmitApprovalRequestUseCase(
        repository=repo, id_generator=ids(), clock=lambda: T0
    )
    payload = ApprovalSubmission(kind="inventory", item_name="Cement", quantity=100, unit_price=50)

    request = run(use_case.execute(payload, employee))

    assert request.status == ApprovalStatus.PENDING
    assert request.computed_total == 5000
    assert request.request_number == "APR-1"
    assert repo.requests[request.id] == request
    assert repo.audit_entries[0].action == "submit"
    assert repo.commits == 1


def test_submit_rejects_bad_payload_without_writing(employee):
    repo = FakeApprovalRepository()
    use_case = SubmitApprovalRequestUseCase(
        repository=repo, id_generator=ids(), clock=lambda: T0
    )
    payload = ApprovalSubmission(kind="inventory", item_name="Cement", quantity=0, unit_price=50)

    with pytest.raises(ValidationError):
        run(use_case.execute(payload, employee))

    assert repo.requests == {}
    assert repo.commits == 0


def test_two_stage_happy_path(manager, project_manager):
    repo = seeded_repo()

    after_manager = run(transition(ApproveAsManagerUseCase, repo).execute("req-1", manager))
    assert after_manager.manager_approved is True
    assert after_manager.status == ApprovalStatus.PENDING

    final = run(
        transition(ApproveAsProjectManagerUseCase, repo).execute("req-1", project_manager)
    )
    assert final.status == ApprovalStatus.APPROVED
    assert repo.requests["req-1"] == final
    assert [entry.action for entry in repo.audit_entries] == [
        "manager_approve",
        "project_manager_approve",
    ]


def test_concurrent_manager_approvals_one_wins(manager, second_manager):
    repo = seeded_repo()

    async def race():
        return await asyncio.gather(
            transition(ApproveAsManagerUseCase, repo).execute("req-1", manager),
            transition(ApproveAsManagerUseCase, repo).execute("req-1", second_manager),
            return_exceptions=True,
        )

    results = run(race())

    stale = [result for result in results if isinstance(result, Stale)]
    won = [result for result in results if not isinstance(result, Exception)]
    assert len(won) == 1
    assert len(stale) == 1
    assert stale[0].current == repo.requests["req-1"]
    assert repo.requests["req-1"].manager_approved_by == won[0].manager_approved_by
    assert repo.rollbacks == 1
    assert len(repo.audit_entries) == 1


def test_project_manager_before_manager_is_invalid(project_manager):
    repo = seeded_repo()
    before = repo.requests["req-1"]

    with pytest.raises(InvalidTransition):
        run(transition(ApproveAsProjectManagerUseCase, repo).execute("req-1", project_manager))

    assert repo.requests["req-1"] == before
    assert repo.commits == 0


def test_approval_requires_matching_role(employee, project_manager):
    repo = seeded_repo()

    with pytest.raises(PermissionDenied):
        run(transition(ApproveAsManagerUseCase, repo).execute("req-1", employee))
    with pytest.raises(PermissionDenied):
        run(transition(ApproveAsManagerUseCase, repo).execute("req-1", project_manager))


def test_missing_request_is_not_found(manager):
    with pytest.raises(NotFound):
        run(transition(ApproveAsManagerUseCase, FakeApprovalRepository()).execute("nope", manager))


def test_reject_takes_stage_from_role(project_manager, manager):
    repo = seeded_repo(
        manager_approved=True, manager_approved_by=manager.id, manager_approved_at=at(1),
        updated_at=at(1),
    )

    rejected = run(
        transition(RejectApprovalRequestUseCase, repo).execute(
            "req-1", project_manager, reason="Over budget"
        )
    )

    assert rejected.status == ApprovalStatus.REJECTED
    assert rejected.rejection_stage == ApprovalStage.PROJECT_MANAGER
    assert rejected.manager_approved is True


def test_reject_denied_for_employee(employee):
    with pytest.raises(PermissionDenied):
        run(transition(RejectApprovalRequestUseCase, seeded_repo()).execute("req-1", employee))


def test_store_failure_surfaces_as_unavailable(manager):
    repo = seeded_repo()
    repo.unavailable = True
    before = repo.requests["req-1"]

    with pytest.raises(StoreUnavailable):
        run(transition(ApproveAsManagerUseCase, repo).execute("req-1", manager))

    assert repo.requests["req-1"] == before
    assert repo.commits == 0


def test_employee_cannot_read_someone_elses_request(employee):
    repo = seeded_repo(requested_by="emp-2")

    with pytest.raises(PermissionDenied):
        run(GetApprovalRequestUseCase(repo).execute("req-1", employee))


def test_procurement_reads_procurement_requests_from_anyone(procurement):
    repo = seeded_repo(requested_by="emp-2", kind=ApprovalKind.PROCUREMENT)

    request = run(GetApprovalRequestUseCase(repo).execute("req-1", procurement))

    assert request.requested_by == "emp-2"


def test_procurement_cannot_read_inventory_requests(procurement):
    repo = seeded_repo(requested_by="proc-1", kind=ApprovalKind.INVENTORY)

    with pytest.raises(PermissionDenied):
        run(GetApprovalRequestUseCase(repo).execute("req-1", procurement))


def test_project_manager_cannot_read_request_before_manager_approval(project_manager):
    repo = seeded_repo()

    with pytest.raises(PermissionDenied):
        run(GetApprovalRequestUseCase(repo).execute("req-1", project_manager))


def test_list_scopes_employee_and_clamps_limit(employee):
    repo = FakeApprovalRepository()
    use_case = ListApprovalRequestsUseCase(repo, max_limit=100)

    run(use_case.execute(ListApprovalRequestsQuery(limit=500, offset=-3), employee))

    assert repo.last_filters == ApprovalFilters(requested_by="emp-1", limit=100, offset=0)


def test_list_for_procurement_matches_its_dashboard(procurement):
    repo = FakeApprovalRepository()

    run(ListApprovalRequestsUseCase(repo).execute(ListApprovalRequestsQuery(), procurement))

    assert repo.last_filters.kind == ApprovalKind.PROCUREMENT
    assert repo.last_filters.requested_by is None


def test_list_for_procurement_rejects_inventory_kind(procurement):
    query = ListApprovalRequestsQuery(kind="inventory")

    with pytest.raises(PermissionDenied):
        run(ListApprovalRequestsUseCase(FakeApprovalRepository()).execute(query, procurement))


def test_list_for_project_manager_only_manager_approved(project_manager):
    repo = FakeApprovalRepository()
    use_case = ListApprovalRequestsUseCase(repo)

    run(use_case.execute(ListApprovalRequestsQuery(), project_manager))

    assert repo.last_filters.manager_approved is True
    with pytest.raises(PermissionDenied):
        run(use_case.execute(ListApprovalRequestsQuery(queue="pending_manager"), project_manager))


def test_list_project_manager_queue(project_manager):
    repo = FakeApprovalRepository()
    use_case = ListApprovalRequestsUseCase(repo)

    run(use_case.execute(ListApprovalRequestsQuery(queue="pending_project_manager"), project_manager))

    assert repo.last_filters.status == ApprovalStatus.PENDING
    assert repo.last_filters.manager_approved is True
    assert repo.last_filters.project_manager_approved is False


@pytest.mark.parametrize(
    "query",
    [
        ListApprovalRequestsQuery(status="archived"),
        ListApprovalRequestsQuery(kind="loan"),
        ListApprovalRequestsQuery(queue="everything"),
    ],
)
def test_list_rejects_unknown_filters(manager, query):
    with pytest.raises(ValidationError):
        run(ListApprovalRequestsUseCase(FakeApprovalRepository()).execute(query, manager))


def test_stats_counts_pending_for_manager(manager):
    repo = FakeApprovalRepository()
    repo.count_result = 4

    stats = run(GetApprovalStatsUseCase(repo).execute(manager))

    assert stats.pending_for_me == 4
    assert stats.total_requests == 4
