"""
Stage executor contract.

A stage is any object with an `execute(input)` coroutine and an
`estimate_cost(input)` method. The sequencer never looks inside the input or
output payloads; it only forwards them.
"""

import inspect
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from shared.credit_gate import Amount, to_amount


@runtime_checkable
class StageExecutor(Protocol):
    """Capability implemented by every stage kind."""

    async def execute(self, stage_input: Any) -> Any:
        """Run the stage. Raises a StageError subclass on failure."""
        ...

    def estimate_cost(self, stage_input: Any) -> Amount:
        """Credits the next attempt will cost. May also be a coroutine."""
        ...


@dataclass
class StageSpec:
    """
    One named stage in a job.

    Args:
        name: Stage name, unique within a job
        executor: StageExecutor implementation
        timeout: Seconds before an attempt is abandoned (None uses settings.stage_timeout_seconds)
    """

    name: str
    executor: StageExecutor
    timeout: Optional[float] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Stage name cannot be empty")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"Stage timeout must be positive, got {self.timeout}")


async def estimate_cost(spec: StageSpec, stage_input: Any):
    """Call the executor's estimate, awaiting it when it is a coroutine."""
    estimate = spec.executor.estimate_cost(stage_input)
    if inspect.isawaitable(estimate):
        estimate = await estimate
    return to_amount(estimate)
