"""
Job handle.

Caller-facing wrapper around one sequencer run.
"""

import asyncio
import inspect
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Set

from shared.config import settings
from shared.errors import ConfigError
from shared.logging import get_logger
from shared.models.job import Job
from shared.models.progress import ProgressEvent
from orchestrator.progress.channel import ProgressSubscription

if TYPE_CHECKING:
    from orchestrator.sequencer import JobRun, StageSequencer

logger = get_logger("job_handle")

ProgressCallback = Callable[[ProgressEvent], Any]


class JobHandle:
    """Start, observe and cancel one job."""

    def __init__(self, sequencer: "StageSequencer", run: "JobRun", close_grace: Optional[float] = None):
        self._sequencer = sequencer
        self._run = run
        self._close_grace = settings.progress_close_grace if close_grace is None else close_grace
        self._task: Optional[asyncio.Task] = None
        self._subscriptions: List[ProgressSubscription] = []
        self._listeners: Set[asyncio.Task] = set()

    @property
    def job_id(self) -> str:
        return self._run.job.id

    def start(self) -> asyncio.Task:
        """Start the run. Calling again returns the existing task."""
        if self._task is None:
            loop = asyncio.get_running_loop()
            self._task = loop.create_task(self._sequencer.execute(self._run), name=f"job-{self.job_id}")
            self._task.add_done_callback(self._on_finished)
        return self._task

    def cancel(self) -> bool:
        """
        Request cooperative cancellation.

        Takes effect at the next stage boundary or retry; an in-flight stage
        call runs to completion and its result is discarded.

        Returns:
            False if the job had already reached a terminal status
        """
        if self._run.job.is_terminal:
            return False
        if not self._run.cancel_requested:
            self._run.cancel_requested = True
            logger.info("Cancellation requested", extra={"job_id": self.job_id})
        return True

    def status(self) -> Job:
        """Snapshot of the job."""
        return self._run.job.snapshot()

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def exception(self) -> Optional[BaseException]:
        """Error that failed the job, or None (also None for cancelled jobs)."""
        return self._run.error

    async def wait(self) -> Job:
        """Wait for a terminal status and return the final snapshot."""
        await self.start()
        return self.status()

    def on_progress(self, callback: ProgressCallback) -> ProgressSubscription:
        """
        Deliver progress events for this job to callback.

        The callback may be sync or async and runs in its own task, so a
        slow callback never holds up stage execution.

        Returns:
            The underlying subscription (aclose() to stop early)
        """
        channel = self._sequencer.progress_channel
        if channel is None:
            raise ConfigError("No progress channel configured for this sequencer", job_id=self.job_id)

        subscription = channel.subscribe(self.job_id)
        self._subscriptions.append(subscription)

        task = asyncio.get_running_loop().create_task(self._deliver(subscription, callback))
        self._listeners.add(task)
        task.add_done_callback(self._listeners.discard)

        if self.done():
            self._schedule_close()
        return subscription

    async def _deliver(self, subscription: ProgressSubscription, callback: ProgressCallback) -> None:
        async with subscription:
            async for event in subscription:
                try:
                    result = callback(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error("Progress callback failed", exc_info=e, extra={"job_id": self.job_id})

    def _on_finished(self, task: asyncio.Task) -> None:
        if self._subscriptions:
            self._schedule_close()

    def _schedule_close(self) -> None:
        task = asyncio.get_running_loop().create_task(self._close_subscriptions())
        self._listeners.add(task)
        task.add_done_callback(self._listeners.discard)

    async def _close_subscriptions(self) -> None:
        # Give in-flight terminal events time to arrive before closing
        await asyncio.sleep(self._close_grace)
        for subscription in list(self._subscriptions):
            if not subscription.closed:
                await subscription.aclose()
