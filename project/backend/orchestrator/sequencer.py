"""
Stage sequencer.

Runs an ordered list of stages for one job. Every attempt is guarded by a
credit reservation: committed on success, refunded on failure or
cancellation. Failed attempts are retried according to the RetryPolicy.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set
from uuid import uuid4

from shared.config import settings
from shared.credit_gate import CreditGate
from shared.errors import ErrorKind, JobCancelledError, StageTimeoutError
from shared.logging import get_logger, set_job_id
from shared.models.job import ErrorInfo, Job, StageResult, utcnow
from shared.retry import RetryPolicy
from orchestrator.job_handle import JobHandle
from orchestrator.progress.channel import ProgressChannel
from orchestrator.progress.publisher import ProgressPublisher
from orchestrator.stage import StageSpec, estimate_cost

logger = get_logger("sequencer")

Sleep = Callable[[float], Awaitable[Any]]

# Returned by _run_stage when the job ended on that stage
_STOPPED = object()


@dataclass
class JobRun:
    """Mutable state of one job run. Owned by the sequencer task."""

    job: Job
    stages: List[StageSpec]
    initial_input: Any = None
    cancel_requested: bool = False
    error: Optional[BaseException] = None
    invoked: Set[str] = field(default_factory=set)
    # Distinguishes reservations of runs that reuse a job id
    run_id: str = field(default_factory=lambda: uuid4().hex[:12])


class StageSequencer:
    """Drive stages through the credit gate and retry policy."""

    def __init__(
        self,
        credit_gate: CreditGate,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Sleep = asyncio.sleep,
        publisher: Optional[ProgressPublisher] = None,
        progress_channel: Optional[ProgressChannel] = None,
        default_timeout: Optional[float] = None,
    ):
        """
        Initialize stage sequencer.

        Args:
            credit_gate: Credit gate guarding every stage attempt
            retry_policy: Retry policy (defaults from settings)
            sleep: Backoff sleep, overridable in tests
            publisher: Optional progress publisher for stage boundaries
            progress_channel: Channel used by JobHandle.on_progress
            default_timeout: Stage timeout when a StageSpec sets none
        """
        self.credit_gate = credit_gate
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.sleep = sleep
        self.publisher = publisher
        self.progress_channel = progress_channel
        self.default_timeout = (
            default_timeout if default_timeout is not None else float(settings.stage_timeout_seconds)
        )
        self._background_tasks: Set[asyncio.Task] = set()
        self._active_jobs: Set[str] = set()

    def run(
        self,
        stages: Sequence[StageSpec],
        account_id: str,
        initial_input: Any = None,
        job_id: Optional[str] = None,
    ) -> JobHandle:
        """
        Start a job and return its handle.

        Must be called from a running event loop.

        Args:
            stages: Ordered stage specs; names must be unique
            account_id: Account charged for every stage
            initial_input: Input of the first stage
            job_id: Job id (generated when omitted)

        Returns:
            Started JobHandle

        Raises:
            ValueError: Empty or duplicate stage list, or job_id already running here
        """
        if not stages:
            raise ValueError("A job needs at least one stage")
        names = [spec.name for spec in stages]
        if len(set(names)) != len(names):
            raise ValueError(f"Stage names must be unique: {names}")

        job = Job(id=job_id or str(uuid4()), account_id=account_id, stages=names)
        if job.id in self._active_jobs:
            raise ValueError(f"Job {job.id} is already running")
        self._active_jobs.add(job.id)

        handle = JobHandle(self, JobRun(job=job, stages=list(stages), initial_input=initial_input))
        task = handle.start()
        task.add_done_callback(lambda _: self._active_jobs.discard(job.id))
        return handle

    async def execute(self, run: JobRun) -> Job:
        """Run all stages of a job to a terminal status and return a snapshot."""
        job = run.job
        set_job_id(job.id)
        job.status = "running"
        job.started_at = utcnow()
        logger.info(
            f"Starting job with {len(run.stages)} stage(s)",
            extra={"account_id": job.account_id, "stages": ",".join(job.stages)}
        )

        stage_input = run.initial_input
        try:
            for index, spec in enumerate(run.stages):
                job.current_stage_index = index
                if run.cancel_requested:
                    self._mark_cancelled(run, spec.name)
                    break

                output = await self._run_stage(run, spec, stage_input)
                if output is _STOPPED:
                    break
                stage_input = output
                job.current_stage_index = index + 1
            else:
                job.status = "succeeded"
                job.finished_at = utcnow()
                logger.info("Job succeeded", extra={"account_id": job.account_id})
                self._publish(job, job.stages[-1], 100, "Completed", done=True)

        except asyncio.CancelledError:
            # Task cancelled from outside (e.g. shutdown); credits are released below
            self._mark_cancelled(run, job.current_stage)
            raise
        except Exception as e:
            run.error = e
            job.status = "failed"
            job.error = ErrorInfo.from_exception(e, kind=ErrorKind.UNKNOWN)
            job.active_stage = None
            job.finished_at = utcnow()
            logger.error("Job failed with unexpected error", exc_info=e)
            self._publish(job, job.current_stage, 0, "Failed", error=str(e))
        finally:
            await self._release_outstanding(job)

        return job.snapshot()

    async def _run_stage(self, run: JobRun, spec: StageSpec, stage_input: Any) -> Any:
        """Attempt one stage until success, terminal failure, or cancellation."""
        job = run.job
        attempt = 1

        while True:
            if attempt > 1 and run.cancel_requested:
                self._mark_cancelled(run, spec.name)
                return _STOPPED

            job.active_stage = StageResult(stage=spec.name, status="running", attempt=attempt, started_at=utcnow())
            reservation_id = None
            executed = False

            try:
                amount = await estimate_cost(spec, stage_input)
                reservation_id = await self.credit_gate.reserve(
                    job.account_id,
                    spec.name,
                    amount,
                    job_id=job.id,
                    idempotency_key=f"{job.id}:{run.run_id}:{spec.name}:{attempt}",
                )
                self._publish(job, spec.name, 0, f"Starting {spec.name}", attempt=attempt)

                executed = True
                run.invoked.add(spec.name)
                output = await self._execute_with_timeout(spec, stage_input)

            except Exception as e:
                if reservation_id is not None:
                    await self.credit_gate.refund(reservation_id)

                if executed and run.cancel_requested:
                    logger.info(
                        f"Discarding failed attempt of stage {spec.name} after cancellation",
                        extra={"stage": spec.name, "attempt": attempt, "error": str(e)}
                    )
                    self._mark_cancelled(run, spec.name)
                    return _STOPPED

                decision = self.retry_policy.should_retry(e, attempt)
                if decision.retry:
                    logger.warning(
                        f"Stage {spec.name} attempt {attempt}/{self.retry_policy.max_attempts} failed, "
                        f"retrying in {decision.delay}s",
                        extra={"stage": spec.name, "attempt": attempt, "kind": decision.kind.value, "error": str(e)}
                    )
                    await self.sleep(decision.delay)
                    attempt += 1
                    continue

                self._mark_failed(run, spec.name, attempt, e, decision.kind)
                return _STOPPED

            if run.cancel_requested:
                # Result arrived after cancel(): discard it and release the hold
                await self.credit_gate.refund(reservation_id)
                logger.info(
                    f"Discarding result of stage {spec.name} after cancellation",
                    extra={"stage": spec.name, "attempt": attempt}
                )
                self._mark_cancelled(run, spec.name)
                return _STOPPED

            await self.credit_gate.commit(reservation_id)
            result = job.active_stage.model_copy(update={
                "status": "succeeded",
                "finished_at": utcnow(),
                "output": output,
            })
            job.results.append(result)
            job.active_stage = None

            logger.info(
                f"Stage {spec.name} succeeded",
                extra={"stage": spec.name, "attempt": attempt}
            )
            self._publish(job, spec.name, 100, f"Completed {spec.name}", attempt=attempt)
            return output

    async def _execute_with_timeout(self, spec: StageSpec, stage_input: Any) -> Any:
        timeout = spec.timeout if spec.timeout is not None else self.default_timeout
        try:
            return await asyncio.wait_for(spec.executor.execute(stage_input), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise StageTimeoutError(
                f"Stage {spec.name} timed out after {timeout}s",
                stage=spec.name,
            ) from e

    def _mark_failed(self, run: JobRun, stage: str, attempt: int, error: Exception, kind: ErrorKind) -> None:
        job = run.job
        info = ErrorInfo.from_exception(error, kind=kind)

        # A stage that never reached execute (e.g. no credits for attempt 1) has no result
        if stage in run.invoked:
            job.results.append(job.active_stage.model_copy(update={
                "status": "failed",
                "attempt": attempt,
                "finished_at": utcnow(),
                "error": info,
            }))
        job.active_stage = None

        run.error = error
        job.status = "failed"
        job.error = info
        job.finished_at = utcnow()

        logger.error(
            f"Stage {stage} failed, aborting job",
            extra={"stage": stage, "attempt": attempt, "kind": kind.value, "error": str(error)}
        )
        self._publish(job, stage, 0, f"Failed at {stage}", attempt=attempt, error=str(error))

    def _mark_cancelled(self, run: JobRun, stage: Optional[str]) -> None:
        job = run.job
        job.active_stage = None
        job.status = "cancelled"
        # Recorded for callers; not a failure, so run.error stays None
        job.error = ErrorInfo.from_exception(JobCancelledError(job_id=job.id), kind=ErrorKind.CANCELLED)
        job.finished_at = utcnow()
        logger.info("Job cancelled", extra={"stage": stage or ""})
        self._publish(job, stage, 0, "Cancelled", error="cancelled")

    async def _release_outstanding(self, job: Job) -> None:
        try:
            await self.credit_gate.refund_outstanding(job.id)
        except Exception as e:
            logger.error("Failed to refund outstanding reservations", exc_info=e)
        self.credit_gate.forget(job.id)

    def _publish(
        self,
        job: Job,
        stage: Optional[str],
        percent: float,
        message: str,
        attempt: int = 1,
        done: bool = False,
        error: Optional[str] = None,
    ) -> None:
        """Fire-and-forget progress update; never blocks a stage."""
        if self.publisher is None:
            return
        task = asyncio.get_running_loop().create_task(
            self.publisher.publish(
                job.id, stage, percent, message=message, attempt=attempt, done=done, error=error
            )
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
