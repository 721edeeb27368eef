"""
Progress channel.

Merges a push stream and a poll fallback into one deduplicated sequence of
ProgressEvents per subscription. Each subscription owns a small state machine:

    CONNECTING -> STREAMING   push connected
    CONNECTING -> POLLING     push failed or timed out
    STREAMING  -> POLLING     push dropped, or push silent past the staleness threshold
    POLLING    -> STREAMING   push reconnected, or poll silent past the staleness threshold
    any        -> DEGRADED    both sources failed unavailable_threshold times in a row
    DEGRADED   -> STREAMING/POLLING on the next success

The active source is push while STREAMING and poll otherwise. Events from the
inactive source are dropped unless the active source has gone stale.
"""

import asyncio
import time
from typing import Callable, Dict, List, Optional, Tuple

from shared.config import settings
from shared.errors import ProgressUnavailable
from shared.logging import get_logger
from shared.models.progress import ProgressEvent, ProgressSource, ProgressState
from orchestrator.progress.sources import PollSource, PushSource

logger = get_logger("progress.channel")

_CLOSED = object()

UnavailableCallback = Callable[[ProgressUnavailable], None]


class ProgressChannel:
    """Factory for per-job progress subscriptions sharing one source configuration."""

    def __init__(
        self,
        push_source: Optional[PushSource] = None,
        poll_source: Optional[PollSource] = None,
        connect_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        staleness_threshold: Optional[float] = None,
        unavailable_threshold: Optional[int] = None,
        reconnect_interval: Optional[float] = None,
        on_unavailable: Optional[UnavailableCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize progress channel. Unset timings come from settings.

        Args:
            push_source: Live stream source (SSE or Redis)
            poll_source: Snapshot source polled every poll_interval
            connect_timeout: Seconds allowed for the push connection to open
            poll_interval: Seconds between polls
            staleness_threshold: Silence after which the inactive source takes over
            unavailable_threshold: Consecutive failures of both sources before DEGRADED
            reconnect_interval: Seconds between push reconnect attempts
            on_unavailable: Called with ProgressUnavailable when a subscription degrades
            clock: Monotonic clock used to stamp event arrival
        """
        if push_source is None and poll_source is None:
            raise ValueError("ProgressChannel needs at least one of push_source or poll_source")

        self.push_source = push_source
        self.poll_source = poll_source
        self.connect_timeout = connect_timeout if connect_timeout is not None else settings.progress_connect_timeout
        self.poll_interval = poll_interval if poll_interval is not None else settings.progress_poll_interval
        self.staleness_threshold = (
            staleness_threshold if staleness_threshold is not None
            else self.poll_interval * settings.progress_staleness_factor
        )
        self.unavailable_threshold = (
            unavailable_threshold if unavailable_threshold is not None
            else settings.progress_unavailable_threshold
        )
        self.reconnect_interval = (
            reconnect_interval if reconnect_interval is not None else settings.progress_reconnect_interval
        )
        self.on_unavailable = on_unavailable
        self.clock = clock

    def subscribe(self, job_id: str) -> "ProgressSubscription":
        """New lazy subscription; sources start on first iteration."""
        return ProgressSubscription(self, job_id)


class ProgressSubscription:
    """
    Async iterator of ProgressEvents for one job.

    Ends after a terminal event (done or error) or aclose(). Not restartable.
    """

    def __init__(self, channel: ProgressChannel, job_id: str):
        self.channel = channel
        self.job_id = job_id
        self.state = ProgressState.CONNECTING if channel.push_source is not None else ProgressState.POLLING
        self.transitions: List[Tuple[ProgressState, ProgressState]] = []

        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self._started = False
        self._closed = False
        self._finished = False

        self._last_heard: Dict[str, float] = {}
        self._last_seen: Dict[str, Tuple[int, float]] = {}
        self._push_failures = 0
        self._poll_failures = 0

    # Iteration

    def __aiter__(self) -> "ProgressSubscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._finished or self._closed:
            raise StopAsyncIteration
        self._start()

        event = await self._queue.get()
        if event is _CLOSED:
            self._finished = True
            raise StopAsyncIteration

        if event.terminal:
            self._finished = True
            await self.aclose()
        return event

    async def __aenter__(self) -> "ProgressSubscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Stop both sources and end iteration. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        # Wake a consumer blocked on the queue
        self._queue.put_nowait(_CLOSED)
        logger.info("Progress subscription closed", extra={"job_id": self.job_id, "state": self.state.value})

    @property
    def closed(self) -> bool:
        return self._closed

    def _start(self) -> None:
        if self._started:
            return
        self._started = True

        now = self.channel.clock()
        self._last_heard = {"push": now, "poll": now}

        loop = asyncio.get_running_loop()
        if self.channel.push_source is not None:
            self._tasks.append(loop.create_task(self._push_loop(), name=f"progress-push-{self.job_id}"))
        if self.channel.poll_source is not None:
            self._tasks.append(loop.create_task(self._poll_loop(), name=f"progress-poll-{self.job_id}"))

    # Reconciliation

    def _active_source(self) -> ProgressSource:
        return "push" if self.state == ProgressState.STREAMING else "poll"

    def _accept(self, source: ProgressSource, arrival: float, event: ProgressEvent) -> bool:
        active = self._active_source()
        stale = arrival - self._last_heard.get(active, arrival) > self.channel.staleness_threshold
        self._last_heard[source] = arrival

        if source != active and not event.terminal:
            if not stale:
                return False
            logger.info(
                f"Active progress source {active} went stale, switching to {source}",
                extra={"job_id": self.job_id}
            )
            self._transition(ProgressState.STREAMING if source == "push" else ProgressState.POLLING)

        return self._advances(event)

    def _advances(self, event: ProgressEvent) -> bool:
        """Per-stage dedup on (attempt, percent). Terminal events always pass."""
        previous = self._last_seen.get(event.stage)
        current = (event.attempt, event.percent)

        if event.terminal:
            self._last_seen[event.stage] = max(previous, current) if previous else current
            return True
        if previous is not None and current <= previous:
            return False
        self._last_seen[event.stage] = current
        return True

    def _transition(self, state: ProgressState) -> None:
        if state == self.state:
            return
        self.transitions.append((self.state, state))
        logger.info(
            f"Progress subscription {self.state.value} -> {state.value}",
            extra={"job_id": self.job_id}
        )
        self.state = state

    def _enqueue(self, source: ProgressSource, payload) -> None:
        try:
            event = ProgressEvent.from_payload(self.job_id, payload, source)
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning("Skipping invalid progress payload", exc_info=e, extra={"job_id": self.job_id})
            return
        if self._accept(source, self.channel.clock(), event):
            self._queue.put_nowait(event)

    # Failure accounting

    def _source_down(self, failures: int, configured: bool) -> bool:
        return not configured or failures >= self.channel.unavailable_threshold

    def _check_degraded(self) -> None:
        push_down = self._source_down(self._push_failures, self.channel.push_source is not None)
        poll_down = self._source_down(self._poll_failures, self.channel.poll_source is not None)
        if not (push_down and poll_down) or self.state == ProgressState.DEGRADED:
            return

        self._transition(ProgressState.DEGRADED)
        warning = ProgressUnavailable(
            f"Progress unavailable for job {self.job_id}: push and poll sources are failing",
            job_id=self.job_id,
            push_failures=self._push_failures,
            poll_failures=self._poll_failures,
        )
        logger.warning(
            str(warning),
            extra={"push_failures": self._push_failures, "poll_failures": self._poll_failures}
        )
        if self.channel.on_unavailable is not None:
            try:
                self.channel.on_unavailable(warning)
            except Exception as e:
                logger.error("on_unavailable callback failed", exc_info=e, extra={"job_id": self.job_id})

    def _push_failed(self, error: Optional[BaseException]) -> None:
        self._push_failures += 1
        logger.warning(
            "Progress push source unavailable",
            extra={"job_id": self.job_id, "failures": self._push_failures, "error": str(error) if error else "closed"}
        )
        if self.state in (ProgressState.CONNECTING, ProgressState.STREAMING):
            self._transition(ProgressState.POLLING)
        self._check_degraded()

    def _poll_failed(self, error: BaseException) -> None:
        self._poll_failures += 1
        logger.warning(
            "Progress poll failed",
            extra={"job_id": self.job_id, "failures": self._poll_failures, "error": str(error)}
        )
        self._check_degraded()

    # Source loops

    async def _push_loop(self) -> None:
        channel = self.channel
        while not self._closed:
            try:
                stream = await asyncio.wait_for(channel.push_source.open(self.job_id), channel.connect_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._push_failed(e)
                await asyncio.sleep(channel.reconnect_interval)
                continue

            self._push_failures = 0
            self._last_heard["push"] = channel.clock()
            self._transition(ProgressState.STREAMING)

            error = None
            try:
                async for payload in stream:
                    self._enqueue("push", payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e
            finally:
                try:
                    await stream.aclose()
                except Exception as e:
                    logger.warning("Failed to close progress stream", exc_info=e, extra={"job_id": self.job_id})

            self._push_failed(error)
            await asyncio.sleep(channel.reconnect_interval)

    async def _poll_loop(self) -> None:
        channel = self.channel
        while not self._closed:
            try:
                payload = await channel.poll_source.fetch(self.job_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._poll_failed(e)
            else:
                self._poll_failures = 0
                if self.state == ProgressState.DEGRADED:
                    self._transition(ProgressState.POLLING)
                if payload:
                    self._enqueue("poll", payload)
            await asyncio.sleep(channel.poll_interval)
