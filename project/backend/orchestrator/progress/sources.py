"""
Progress sources.

Push sources open a live stream of raw progress payloads; poll sources return
the latest stored snapshot. Both hand back plain dicts and leave normalization
to the channel.
"""

import json
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Protocol

import httpx

from shared.database import DatabaseClient, get_db
from shared.errors import TransientNetworkError
from shared.logging import get_logger
from shared.redis_client import RedisClient

logger = get_logger("progress.sources")


def progress_channel_name(job_id: str) -> str:
    """Redis pub/sub channel carrying a job's progress."""
    return f"job_progress:{job_id}"


class PushStream(Protocol):
    def __aiter__(self) -> AsyncIterator[Mapping[str, Any]]:
        ...

    async def aclose(self) -> None:
        ...


class PushSource(Protocol):
    async def open(self, job_id: str) -> PushStream:
        """Connect and return the live stream. Raises if the connection fails."""
        ...


class PollSource(Protocol):
    async def fetch(self, job_id: str) -> Optional[Mapping[str, Any]]:
        """Latest snapshot for the job, or None if none was written yet."""
        ...


class SSEStream:
    """Server-sent events body yielding decoded `data:` payloads."""

    def __init__(self, response: httpx.Response, client: Optional[httpx.AsyncClient] = None):
        self._response = response
        self._owned_client = client

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._events()

    async def _events(self) -> AsyncIterator[Dict[str, Any]]:
        data_lines = []
        async for line in self._response.aiter_lines():
            if not line:
                # Blank line dispatches the buffered event
                if data_lines:
                    payload = self._decode("\n".join(data_lines))
                    data_lines = []
                    if payload is not None:
                        yield payload
                continue
            if line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if field == "data":
                data_lines.append(value[1:] if value.startswith(" ") else value)

        if data_lines:
            payload = self._decode("\n".join(data_lines))
            if payload is not None:
                yield payload

    def _decode(self, data: str) -> Optional[Dict[str, Any]]:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed progress event", extra={"data": data[:200]})
            return None
        return payload if isinstance(payload, dict) else None

    async def aclose(self) -> None:
        await self._response.aclose()
        if self._owned_client is not None:
            await self._owned_client.aclose()


class SSEPushSource:
    """
    Push source reading `GET {endpoint}?jobId=...` as text/event-stream.

    Args:
        endpoint: Progress stream URL (e.g. https://render.example.com/progress-stream)
        client: Shared httpx client; a private one is created per stream when None
        headers: Extra request headers (auth)
    """

    def __init__(
        self,
        endpoint: str,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.endpoint = endpoint
        self.client = client
        self.headers = headers or {}

    async def open(self, job_id: str) -> SSEStream:
        owned = None
        client = self.client
        if client is None:
            # Streams are long-lived: only the connect phase is bounded
            owned = client = httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=None))

        request = client.build_request(
            "GET",
            self.endpoint,
            params={"jobId": job_id},
            headers={"Accept": "text/event-stream", "Cache-Control": "no-cache", **self.headers},
        )
        try:
            response = await client.send(request, stream=True)
        except Exception:
            if owned is not None:
                await owned.aclose()
            raise

        if response.status_code != 200:
            await response.aclose()
            if owned is not None:
                await owned.aclose()
            raise TransientNetworkError(
                f"Progress stream returned HTTP {response.status_code}",
                job_id=job_id,
            )

        logger.info("Progress stream connected", extra={"job_id": job_id, "endpoint": self.endpoint})
        return SSEStream(response, owned)


class RedisStream:
    """Pub/sub subscription yielding decoded JSON messages."""

    def __init__(self, pubsub: Any, channel: str):
        self._pubsub = pubsub
        self._channel = channel

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._events()

    async def _events(self) -> AsyncIterator[Dict[str, Any]]:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            data = message.get("data")
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            try:
                payload = json.loads(data)
            except (TypeError, json.JSONDecodeError):
                logger.warning("Skipping malformed progress message", extra={"channel": self._channel})
                continue
            if isinstance(payload, dict):
                yield payload

    async def aclose(self) -> None:
        await self._pubsub.unsubscribe(self._channel)
        await self._pubsub.aclose()


class RedisPushSource:
    """Push source subscribed to the job's Redis pub/sub channel."""

    def __init__(self, redis_client: RedisClient):
        self.redis_client = redis_client

    async def open(self, job_id: str) -> RedisStream:
        channel = progress_channel_name(job_id)
        pubsub = self.redis_client.pubsub()
        await pubsub.subscribe(channel)
        return RedisStream(pubsub, channel)


class DatabasePollSource:
    """Poll source reading the job_progress row for a job."""

    def __init__(self, db: Optional[DatabaseClient] = None, table: str = "job_progress"):
        self._db = db
        self.table = table

    @property
    def db(self) -> DatabaseClient:
        if self._db is None:
            self._db = get_db()
        return self._db

    async def fetch(self, job_id: str) -> Optional[Dict[str, Any]]:
        # One attempt per poll; the poll interval is the retry
        result = await self.db.table(self.table).select("*").eq("job_id", job_id).limit(1).execute(max_attempts=1)
        if not result.data:
            return None
        return result.data[0]
