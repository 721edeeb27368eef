"""
Pipeline orchestrator.

Sequences remote stages under credit reservations and retries, and exposes
each run through a JobHandle.
"""

from orchestrator.job_handle import JobHandle
from orchestrator.sequencer import JobRun, StageSequencer
from orchestrator.stage import StageExecutor, StageSpec

__all__ = ["JobHandle", "JobRun", "StageSequencer", "StageExecutor", "StageSpec"]
