"""
Remote stage executor.

Every video pipeline stage is a JSON POST to its own service. The stages only
differ in path, request fields and the response field they return, so one
executor class is driven by a table of StageDefinitions.

The stage input and output is a context dict. Each stage adds its result under
its own key and forwards everything else unchanged:

    project_id, job_id, user_id, narration_script, emotion, voice_id,
    images [{data, file_name}], scenes, aspect_ratio
    -> image_paths, audio_path, srt_path, music_path, video_url, polished_url
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import httpx

from shared.errors import (
    InsufficientCreditsError,
    StageTimeoutError,
    TransientNetworkError,
    ValidationError,
)
from shared.logging import get_job_id, get_logger
from stages.video_pipeline.costs import stage_cost

logger = get_logger("stages.video_pipeline")

Context = Dict[str, Any]
RequestBuilder = Callable[[Mapping[str, Any], Optional[str]], List[Dict[str, Any]]]

# Status codes worth retrying; every other 4xx is terminal
RETRYABLE_STATUS_CODES = frozenset({408, 429})


@dataclass(frozen=True)
class StageDefinition:
    """
    One stage kind.

    Args:
        name: Stage name
        path: Service path the request is POSTed to
        requires: Context keys that must be present
        build_requests: Builds one payload per request from the context and job id
        response_field: Response body field carrying the result
        output_key: Context key the result is stored under
        many: Store a list of results (one per request) instead of a single value
    """

    name: str
    path: str
    requires: Tuple[str, ...]
    build_requests: RequestBuilder
    response_field: str
    output_key: str
    many: bool = False


def _upload_requests(context: Mapping[str, Any], job_id: Optional[str]) -> List[Dict[str, Any]]:
    return [
        {
            "projectId": context["project_id"],
            "base64Image": image["data"],
            "fileName": image.get("file_name") or f"image-{index}.jpeg",
        }
        for index, image in enumerate(context.get("images") or [])
    ]


def _narrate_requests(context, job_id):
    payload = {
        "projectId": context["project_id"],
        "narrationScript": context["narration_script"],
        "jobId": job_id,
    }
    if context.get("emotion"):
        payload["emotion"] = context["emotion"]
    if context.get("voice_id"):
        payload["voiceId"] = context["voice_id"]
    return [payload]


def _align_requests(context, job_id):
    return [{"projectId": context["project_id"], "gsAudioPath": context["audio_path"], "jobId": job_id}]


def _compose_requests(context, job_id):
    return [{"projectId": context["project_id"], "narrationScript": context["narration_script"], "jobId": job_id}]


def _render_requests(context, job_id):
    payload = {
        "projectId": context["project_id"],
        "scenes": context["scenes"],
        "gsAudioPath": context.get("audio_path"),
        "srtPath": context.get("srt_path"),
        "gsMusicPath": context.get("music_path"),
        "jobId": job_id,
    }
    if context.get("aspect_ratio"):
        payload["aspectRatio"] = context["aspect_ratio"]
    return [payload]


def _polish_requests(context, job_id):
    payload = {"projectId": context["project_id"], "videoUrl": context["video_url"]}
    if context.get("user_id"):
        payload["userId"] = context["user_id"]
    return [payload]


STAGE_DEFINITIONS: Dict[str, StageDefinition] = {
    definition.name: definition
    for definition in (
        StageDefinition("upload", "/upload-image", ("project_id",), _upload_requests,
                        "gsPath", "image_paths", many=True),
        StageDefinition("narrate", "/narrate", ("project_id", "narration_script"), _narrate_requests,
                        "gsAudioPath", "audio_path"),
        StageDefinition("align", "/align", ("project_id", "audio_path"), _align_requests,
                        "srtPath", "srt_path"),
        StageDefinition("compose", "/compose-music", ("project_id", "narration_script"), _compose_requests,
                        "gsMusicPath", "music_path"),
        StageDefinition("render", "/render", ("project_id", "scenes"), _render_requests,
                        "videoUrl", "video_url"),
        StageDefinition("polish", "/polish", ("project_id", "video_url"), _polish_requests,
                        "polishedUrl", "polished_url"),
    )
}


class RemoteStageExecutor:
    """Execute one stage kind against its HTTP service."""

    def __init__(
        self,
        definition: StageDefinition,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        auth_token: Optional[str] = None,
        request_timeout: float = 600.0,
    ):
        """
        Initialize remote stage executor.

        Args:
            definition: Stage kind to execute
            base_url: Service base URL (path is appended)
            client: Shared httpx client; a short-lived one is used per call when None
            auth_token: Bearer token sent to the service
            request_timeout: Per-request timeout in seconds
        """
        self.definition = definition
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.auth_token = auth_token
        self.request_timeout = request_timeout

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.definition.path}"

    def estimate_cost(self, context: Mapping[str, Any]) -> int:
        return stage_cost(self.definition.name, context)

    async def execute(self, context: Mapping[str, Any]) -> Context:
        """
        Run the stage and return the context extended with its result.

        Raises:
            ValidationError: Missing input, 4xx response or missing response field
            InsufficientCreditsError: Service answered 402
            TransientNetworkError: Connection failure, 408/429 or 5xx
            StageTimeoutError: Request timed out
        """
        if not isinstance(context, Mapping):
            raise ValidationError(f"Stage {self.name} expects a context dict, got {type(context).__name__}")

        missing = [key for key in self.definition.requires if not context.get(key)]
        if missing:
            raise ValidationError(
                f"Stage {self.name} is missing required input: {', '.join(missing)}",
                stage=self.name,
            )

        job_id = context.get("job_id") or get_job_id()
        values = []
        for payload in self.definition.build_requests(context, job_id):
            values.append(await self._call(payload, job_id))

        result = values if self.definition.many else values[0]
        logger.info(
            f"Stage {self.name} returned {self.definition.response_field}",
            extra={"stage": self.name, "requests": len(values)}
        )
        return {**context, self.definition.output_key: result}

    async def _call(self, payload: Dict[str, Any], job_id: Optional[str]) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        try:
            if self.client is not None:
                response = await self.client.post(self.url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.request_timeout) as client:
                    response = await client.post(self.url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"Timeout calling {self.url}", extra={"stage": self.name})
            raise StageTimeoutError(f"Timeout calling stage {self.name}: {str(e)}", job_id=job_id, stage=self.name) from e
        except httpx.RequestError as e:
            logger.warning(f"Network error calling {self.url}: {str(e)}", extra={"stage": self.name})
            raise TransientNetworkError(
                f"Network error calling stage {self.name}: {str(e)}", job_id=job_id, stage=self.name
            ) from e

        self._raise_for_status(response, job_id)

        try:
            body = response.json()
        except ValueError as e:
            raise ValidationError(
                f"Stage {self.name} returned a non-JSON response", job_id=job_id, stage=self.name
            ) from e

        value = body.get(self.definition.response_field) if isinstance(body, dict) else None
        if not value:
            raise ValidationError(
                f"Stage {self.name} response is missing {self.definition.response_field}",
                job_id=job_id,
                stage=self.name,
            )
        return value

    def _raise_for_status(self, response: httpx.Response, job_id: Optional[str]) -> None:
        status = response.status_code
        if status < 400:
            return

        message = self._error_message(response)
        extra = {"stage": self.name, "status_code": status}

        if status == 402:
            body = self._json_body(response)
            logger.warning(f"Stage {self.name} rejected for insufficient credits", extra=extra)
            raise InsufficientCreditsError(
                f"Insufficient credits for stage {self.name}: {message}",
                attempted=Decimal(str(body.get("required", 0))),
                available=Decimal(str(body.get("available", 0))),
                job_id=job_id,
                stage=self.name,
            )
        if status >= 500 or status in RETRYABLE_STATUS_CODES:
            logger.warning(f"Stage {self.name} returned HTTP {status}", extra=extra)
            raise TransientNetworkError(
                f"HTTP {status} from stage {self.name}: {message}", job_id=job_id, stage=self.name
            )

        logger.error(f"Stage {self.name} returned HTTP {status}", extra=extra)
        raise ValidationError(f"HTTP {status} from stage {self.name}: {message}", job_id=job_id, stage=self.name)

    @staticmethod
    def _json_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _error_message(self, response: httpx.Response) -> str:
        body = self._json_body(response)
        return str(body.get("error") or body.get("message") or response.reason_phrase or "request failed")
