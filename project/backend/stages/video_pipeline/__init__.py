"""
Video pipeline stages.

HTTP executors for upload, narrate, align, compose, render and polish.
"""

from stages.video_pipeline.costs import STAGE_COSTS, narration_cost, stage_cost
from stages.video_pipeline.executor import STAGE_DEFINITIONS, RemoteStageExecutor, StageDefinition
from stages.video_pipeline.pipeline import VIDEO_PIPELINE_STAGES, build_video_pipeline

__all__ = [
    "STAGE_COSTS",
    "STAGE_DEFINITIONS",
    "VIDEO_PIPELINE_STAGES",
    "RemoteStageExecutor",
    "StageDefinition",
    "build_video_pipeline",
    "narration_cost",
    "stage_cost",
]
