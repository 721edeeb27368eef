"""
Data models for the pipeline orchestration engine.

This module exports all Pydantic models used across the orchestrator and stages.
"""

from .job import Job, StageResult, ErrorInfo, JobStatus, StageStatus, TERMINAL_JOB_STATUSES
from .progress import ProgressEvent, ProgressState, ProgressSource
from .credits import Account, CreditLedgerEntry, LedgerState

__all__ = [
    # Job models
    "Job",
    "StageResult",
    "ErrorInfo",
    "JobStatus",
    "StageStatus",
    "TERMINAL_JOB_STATUSES",
    # Progress models
    "ProgressEvent",
    "ProgressState",
    "ProgressSource",
    # Credit models
    "Account",
    "CreditLedgerEntry",
    "LedgerState",
]
