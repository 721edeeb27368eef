"""
Video pipeline assembly.
"""

from typing import Dict, List, Optional, Sequence

import httpx

from shared.config import settings
from shared.errors import ConfigError
from orchestrator.stage import StageSpec
from stages.video_pipeline.executor import STAGE_DEFINITIONS, RemoteStageExecutor

# Order in which the stages consume each other's output
VIDEO_PIPELINE_STAGES = ("upload", "narrate", "align", "compose", "render", "polish")


def build_video_pipeline(
    stages: Optional[Sequence[str]] = None,
    service_urls: Optional[Dict[str, str]] = None,
    client: Optional[httpx.AsyncClient] = None,
    auth_token: Optional[str] = None,
    timeout: Optional[float] = None,
) -> List[StageSpec]:
    """
    Build StageSpecs for the video pipeline.

    Args:
        stages: Stage names to include, in pipeline order (default: all six).
            A subset lets a caller resume from a failed stage with the
            previous run's context as initial input.
        service_urls: Base URL per stage (default: settings.stage_service_urls)
        client: Shared httpx client for all stages
        auth_token: Bearer token (default: settings.stage_auth_token)
        timeout: Stage timeout in seconds (default: settings.stage_timeout_seconds)

    Returns:
        Ordered StageSpecs ready for StageSequencer.run
    """
    names = list(stages) if stages is not None else list(VIDEO_PIPELINE_STAGES)
    unknown = [name for name in names if name not in STAGE_DEFINITIONS]
    if unknown:
        raise ConfigError(f"Unknown video pipeline stage(s): {', '.join(unknown)}")

    order = [name for name in VIDEO_PIPELINE_STAGES if name in names]
    if order != names:
        raise ConfigError(f"Stages must follow pipeline order {VIDEO_PIPELINE_STAGES}, got {names}")

    urls = {**settings.stage_service_urls, **(service_urls or {})}
    token = auth_token if auth_token is not None else settings.stage_auth_token
    stage_timeout = timeout if timeout is not None else float(settings.stage_timeout_seconds)

    specs = []
    for name in names:
        if not urls.get(name):
            raise ConfigError(f"No service URL configured for stage '{name}'")
        executor = RemoteStageExecutor(
            STAGE_DEFINITIONS[name],
            base_url=urls[name],
            client=client,
            auth_token=token,
            request_timeout=stage_timeout,
        )
        specs.append(StageSpec(name=name, executor=executor, timeout=stage_timeout))
    return specs
