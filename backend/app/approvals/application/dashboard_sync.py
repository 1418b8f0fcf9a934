"""
Per-dashboard synchronization loop.

Each dashboard session owns one ``DashboardSync``. It subscribes to the change
feed first, so live events queue up while the full snapshot is loading, then
applies them through the reconciliation engine. When the feed drops, the sync
goes degraded: listeners get one frame with ``degraded`` set, then events are
not applied and notifications are suppressed until a reconnect completes a
fresh full load. A listener that raises is logged and does not stop the loop.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from app.approvals.application.ports import ChangeFeed, ChangeSubscription, SnapshotSource
from app.approvals.domain.change_events import (
    APPROVAL_REQUESTS_TABLE,
    ChangeEvent,
    ChangeOperation,
)
from app.approvals.domain.errors import StoreUnavailable, TransportDisconnected
from app.approvals.domain.events import DomainEvent
from app.approvals.domain.models import ApprovalRequest, Role
from app.approvals.domain.projection import ProjectionItem, build_projection
from app.approvals.domain.reconciliation import DashboardSnapshot, Snapshot, reconcile

logger = logging.getLogger(__name__)

Listener = Callable[[List[ProjectionItem], Sequence[DomainEvent]], None]
Sleep = Callable[[float], Awaitable[None]]


class DashboardSync:
    def __init__(
        self,
        source: SnapshotSource,
        feed: ChangeFeed,
        role: Role = Role.ADMIN,
        actor_id: Optional[str] = None,
        reconnect_delay: float = 2.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._source = source
        self._feed = feed
        self._role = role
        self._actor_id = actor_id
        self._reconnect_delay = reconnect_delay
        self._sleep = sleep
        self._snapshot = DashboardSnapshot()
        self._degraded = True
        self._stopped = False
        self._subscription: Optional[ChangeSubscription] = None
        self._listeners: List[Listener] = []

    @property
    def snapshot(self) -> DashboardSnapshot:
        return self._snapshot

    @property
    def degraded(self) -> bool:
        return self._degraded

    def get_all(self) -> List[ApprovalRequest]:
        return self._snapshot.approvals.get_all()

    def get_by_id(self, request_id: str) -> Optional[ApprovalRequest]:
        return self._snapshot.approvals.get_by_id(request_id)

    def projection(self) -> List[ProjectionItem]:
        return build_projection(self._snapshot, self._role, self._actor_id)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _publish(self, notifications: Sequence[DomainEvent]) -> None:
        projection = self.projection()
        for listener in list(self._listeners):
            try:
                listener(projection, notifications)
            except Exception:
                logger.exception(f"Dashboard listener {listener!r} failed")

    async def load_snapshot(self) -> None:
        """Replace local state with a full read of the store."""
        requests = await self._source.load_approval_requests()
        orders = await self._source.load_purchase_orders()
        self._snapshot = DashboardSnapshot(
            approvals=Snapshot.from_records(requests),
            orders=Snapshot.from_records(orders),
        )
        self._degraded = False
        logger.info(
            f"Dashboard snapshot loaded: {len(requests)} requests, {len(orders)} orders"
        )
        self._publish(())

    def apply(self, event: ChangeEvent) -> Sequence[DomainEvent]:
        if self._degraded:
            logger.debug(f"Dropping {event.operation.value} on {event.table} while degraded")
            return ()

        result = reconcile(self._snapshot, event)
        if not result.applied:
            return ()
        self._snapshot = result.snapshot
        self._publish(result.notifications)
        return result.notifications

    def apply_confirmed(self, request: ApprovalRequest) -> Sequence[DomainEvent]:
        """Fold in a record the store has confirmed; the matching feed event becomes a no-op."""
        event = ChangeEvent(
            table=APPROVAL_REQUESTS_TABLE,
            operation=ChangeOperation.UPDATE,
            after=request,
        )
        return self.apply(event)

    def _enter_degraded(self, reason: str) -> None:
        if self._degraded:
            return
        logger.warning(f"Dashboard sync degraded: {reason}")
        self._degraded = True
        self._publish(())

    async def _close_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    async def run(self) -> None:
        """Apply change events until ``stop`` is called, resyncing after disconnects."""
        try:
            while not self._stopped:
                try:
                    self._subscription = await self._feed.subscribe()
                    if self._stopped:
                        break
                    await self.load_snapshot()
                    if self._stopped:
                        break
                    async for event in self._subscription:
                        self.apply(event)
                    break
                except TransportDisconnected as e:
                    self._enter_degraded(e.message)
                except StoreUnavailable as e:
                    self._enter_degraded(e.message)

                await self._close_subscription()
                if self._stopped:
                    break
                await self._sleep(self._reconnect_delay)
        finally:
            await self._close_subscription()

    async def stop(self) -> None:
        self._stopped = True
        await self._close_subscription()
