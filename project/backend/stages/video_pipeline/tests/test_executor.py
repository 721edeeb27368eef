"""
Tests for the remote stage executor.
"""

from decimal import Decimal

import httpx
import pytest

from shared.errors import (
    ErrorKind,
    InsufficientCreditsError,
    StageTimeoutError,
    TransientNetworkError,
    ValidationError,
)
from stages.video_pipeline.executor import STAGE_DEFINITIONS, RemoteStageExecutor


def _executor(stage, client, **kwargs):
    return RemoteStageExecutor(STAGE_DEFINITIONS[stage], "http://stages.test", client=client, **kwargs)


@pytest.mark.asyncio
async def test_narrate_request_and_output(mock_services, recorded_requests, sample_context):
    """Test narrate posts the script and stores gsAudioPath as audio_path."""
    client = mock_services({"/narrate": {"gsAudioPath": "gs://bucket/proj-1/narration.mp3"}})
    executor = _executor("narrate", client, auth_token="secret")

    output = await executor.execute(sample_context)

    assert output["audio_path"] == "gs://bucket/proj-1/narration.mp3"
    assert output["project_id"] == "proj-1"
    path, body, headers = recorded_requests[0]
    assert path == "/narrate"
    assert body == {
        "projectId": "proj-1",
        "narrationScript": sample_context["narration_script"],
        "jobId": "job-1",
        "emotion": "calm",
        "voiceId": "voice-1",
    }
    assert headers["authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_upload_collects_one_path_per_image(mock_services, recorded_requests, sample_context):
    """Test upload sends each image and returns a list of paths."""
    def upload(request):
        index = "0" if b"scene-0-0" in request.content else "1"
        return httpx.Response(200, json={"gsPath": f"gs://bucket/proj-1/scene-{index}.jpeg"})

    client = mock_services({"/upload-image": upload})

    output = await _executor("upload", client).execute(sample_context)

    assert output["image_paths"] == ["gs://bucket/proj-1/scene-0.jpeg", "gs://bucket/proj-1/scene-1.jpeg"]
    assert [body["fileName"] for _, body, _ in recorded_requests] == ["scene-0-0.jpeg", "scene-1-0.jpeg"]


@pytest.mark.asyncio
async def test_render_forwards_prior_outputs(mock_services, recorded_requests, sample_context):
    """Test render receives audio, captions and music from earlier stages."""
    client = mock_services({"/render": {"videoUrl": "https://cdn.test/proj-1.mp4"}})
    context = {**sample_context, "audio_path": "gs://a.mp3", "srt_path": "gs://a.srt", "music_path": "gs://m.mp3"}

    output = await _executor("render", client).execute(context)

    assert output["video_url"] == "https://cdn.test/proj-1.mp4"
    _, body, _ = recorded_requests[0]
    assert body["gsAudioPath"] == "gs://a.mp3"
    assert body["srtPath"] == "gs://a.srt"
    assert body["gsMusicPath"] == "gs://m.mp3"
    assert body["aspectRatio"] == "9:16"
    assert body["scenes"] == sample_context["scenes"]


@pytest.mark.asyncio
async def test_missing_input_is_validation_error(mock_services, sample_context):
    """Test align without audio_path fails before any request."""
    client = mock_services({})

    with pytest.raises(ValidationError, match="audio_path"):
        await _executor("align", client).execute(sample_context)


@pytest.mark.asyncio
async def test_missing_response_field(mock_services, sample_context):
    client = mock_services({"/compose-music": {"cached": True}})

    with pytest.raises(ValidationError, match="gsMusicPath"):
        await _executor("compose", client).execute(sample_context)


@pytest.mark.asyncio
async def test_402_maps_to_insufficient_credits(mock_services, sample_context):
    """Test the service's own credit check surfaces required and available."""
    client = mock_services({"/polish": (402, {"error": "Insufficient credits", "required": 10, "available": 3})})
    context = {**sample_context, "video_url": "https://cdn.test/proj-1.mp4"}

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await _executor("polish", client).execute(context)

    assert exc_info.value.attempted == Decimal("10")
    assert exc_info.value.available == Decimal("3")
    assert exc_info.value.stage == "polish"


@pytest.mark.parametrize("status,error_type", [
    (500, TransientNetworkError),
    (503, TransientNetworkError),
    (429, TransientNetworkError),
    (408, TransientNetworkError),
    (400, ValidationError),
    (404, ValidationError),
])
@pytest.mark.asyncio
async def test_status_mapping(mock_services, sample_context, status, error_type):
    client = mock_services({"/narrate": (status, {"error": "nope"})})

    with pytest.raises(error_type) as exc_info:
        await _executor("narrate", client).execute(sample_context)

    assert "nope" in str(exc_info.value)


@pytest.mark.asyncio
async def test_timeout_maps_to_stage_timeout(sample_context):
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    with pytest.raises(StageTimeoutError) as exc_info:
        await _executor("narrate", client).execute(sample_context)

    assert exc_info.value.kind == ErrorKind.TIMEOUT
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_connection_error_is_transient(sample_context):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    with pytest.raises(TransientNetworkError):
        await _executor("narrate", client).execute(sample_context)


@pytest.mark.asyncio
async def test_non_json_response(sample_context):
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="ok")))

    with pytest.raises(ValidationError, match="non-JSON"):
        await _executor("narrate", client).execute(sample_context)


def test_estimate_cost(sample_context):
    """Test cost estimates per stage kind."""
    client = None
    assert _executor("upload", client).estimate_cost(sample_context) == 0
    assert _executor("narrate", client).estimate_cost(sample_context) == 2
    assert _executor("render", client).estimate_cost(sample_context) == 5
    assert _executor("polish", client).estimate_cost(sample_context) == 10
