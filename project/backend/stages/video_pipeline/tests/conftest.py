"""
Pytest fixtures for video pipeline stage tests.
"""

import json

import httpx
import pytest


@pytest.fixture
def sample_context():
    """Context as supplied by the caller for a full pipeline run."""
    return {
        "project_id": "proj-1",
        "job_id": "job-1",
        "user_id": "user-1",
        "narration_script": "A fox crosses a snowy field at dawn. " * 5,
        "emotion": "calm",
        "voice_id": "voice-1",
        "images": [
            {"data": "data:image/jpeg;base64,AAAA", "file_name": "scene-0-0.jpeg"},
            {"data": "data:image/jpeg;base64,BBBB", "file_name": "scene-1-0.jpeg"},
        ],
        "scenes": [
            {"narration": "A fox crosses a snowy field.", "imageCount": 1},
            {"narration": "The sun rises.", "imageCount": 1},
        ],
        "aspect_ratio": "9:16",
    }


@pytest.fixture
def recorded_requests():
    return []


@pytest.fixture
def mock_services(recorded_requests):
    """
    Factory for an httpx client backed by canned responses per path.

    Each value is either a dict (200 JSON), a (status, body) tuple, or a
    callable taking the request.
    """
    def _client(routes):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content) if request.content else None
            recorded_requests.append((request.url.path, body, request.headers))
            route = routes[request.url.path]
            if callable(route):
                return route(request)
            if isinstance(route, tuple):
                status, payload = route
                return httpx.Response(status, json=payload)
            return httpx.Response(200, json=route)

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _client
