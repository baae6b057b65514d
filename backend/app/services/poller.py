from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from backend.app.models import PollResult
from backend.app.observability import MetricsRegistry
from backend.app.persistence import PersistenceError
from backend.app.services.provider import ProviderClient, ProviderIOError
from backend.app.services.reconciliation import OwnerResolutionError, ReconciliationEngine
from backend.app.store import CampaignStateStore

logger = logging.getLogger("campaign_minutes.poller")

Sleep = Callable[[float], Awaitable[None]]


class BatchPoller:
    """
    Bounded polling loop for one provider batch.

    Each iteration fetches a snapshot, reconciles it and stops as soon as the
    provider reports a terminal status. Transient failures use up an
    iteration rather than ending the loop. After ``max_iterations`` the loop
    gives up and leaves the cleanup sweeper to settle anything left over.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        provider: ProviderClient,
        state_store: CampaignStateStore,
        *,
        interval_seconds: float = 10.0,
        max_iterations: int = 100,
        sleep: Sleep = asyncio.sleep,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.engine = engine
        self.provider = provider
        self.state_store = state_store
        self.interval_seconds = interval_seconds
        self.max_iterations = max(1, max_iterations)
        self.sleep = sleep
        self.metrics = metrics

    def _owner_for(self, batch_id: str, user_id: Optional[str]) -> str:
        batch = self.state_store.find_batch_call(batch_id)
        if batch:
            return batch.user_id
        if not user_id:
            raise OwnerResolutionError(f"unknown batch and no owner given: {batch_id}")
        self.state_store.create_batch_call(batch_id=batch_id, user_id=user_id, campaign_id=None)
        return user_id

    async def run(self, batch_id: str, user_id: Optional[str] = None) -> PollResult:
        owner = await asyncio.to_thread(self._owner_for, batch_id, user_id)
        errors = 0
        last_status: Optional[str] = None
        logger.info("poll_started batch_id=%s user_id=%s", batch_id, owner)

        for iteration in range(1, self.max_iterations + 1):
            try:
                snapshot = await asyncio.to_thread(self.provider.get_batch, batch_id)
                last_status = snapshot.status
                outcome = await asyncio.to_thread(
                    self.engine.reconcile_batch_snapshot, snapshot, owner
                )
            except (ProviderIOError, PersistenceError) as exc:
                errors += 1
                logger.warning(
                    "poll_iteration_failed batch_id=%s iteration=%s error=%s",
                    batch_id,
                    iteration,
                    exc,
                )
            else:
                logger.info(
                    "poll_iteration batch_id=%s iteration=%s status=%s recipients=%s",
                    batch_id,
                    iteration,
                    snapshot.status,
                    outcome.recipients_processed,
                )
                transition = outcome.batch.transition
                if outcome.batch.is_terminal:
                    logger.info(
                        "poll_finished batch_id=%s iterations=%s transition=%s",
                        batch_id,
                        iteration,
                        transition.value,
                    )
                    return PollResult(
                        batch_id=batch_id,
                        completed=True,
                        timed_out=False,
                        iterations=iteration,
                        errors=errors,
                        last_status=last_status,
                        transition=transition,
                    )
            if iteration < self.max_iterations:
                await self.sleep(self.interval_seconds)

        if self.metrics is not None:
            self.metrics.increment("poll_timeouts")
        logger.warning(
            "poll_timed_out batch_id=%s iterations=%s last_status=%s",
            batch_id,
            self.max_iterations,
            last_status,
        )
        return PollResult(
            batch_id=batch_id,
            completed=False,
            timed_out=True,
            iterations=self.max_iterations,
            errors=errors,
            last_status=last_status,
        )


class PollerRegistry:
    """One background polling task per batch within this process."""

    def __init__(self, poller_factory: Callable[[], BatchPoller]) -> None:
        self._poller_factory = poller_factory
        self._tasks: dict[str, asyncio.Task] = {}

    def is_running(self, batch_id: str) -> bool:
        task = self._tasks.get(batch_id)
        return task is not None and not task.done()

    def start(self, batch_id: str, user_id: Optional[str] = None) -> bool:
        if self.is_running(batch_id):
            return False
        task = asyncio.get_running_loop().create_task(
            self._poller_factory().run(batch_id, user_id),
            name=f"poll-{batch_id}",
        )
        self._tasks[batch_id] = task
        task.add_done_callback(lambda finished: self._finished(batch_id, finished))
        return True

    def _finished(self, batch_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(batch_id) is task:
            del self._tasks[batch_id]
        if task.cancelled():
            logger.info("poll_cancelled batch_id=%s", batch_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("poll_crashed batch_id=%s error=%s", batch_id, exc)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
