"""
Progress publisher.

Producer side of the progress channel: pushes snapshots to Redis pub/sub for
live subscribers and persists them to the job_progress table for pollers.
"""

import asyncio
import time
from typing import Any, Callable, Dict, Optional

from shared.config import settings
from shared.database import DatabaseClient
from shared.logging import get_logger
from shared.models.job import utcnow
from shared.redis_client import RedisClient
from orchestrator.progress.sources import progress_channel_name

logger = get_logger("progress.publisher")


class ProgressPublisher:
    """Publish job progress to the push and poll stores."""

    def __init__(
        self,
        redis_client: Optional[RedisClient] = None,
        db: Optional[DatabaseClient] = None,
        table: str = "job_progress",
        persist_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize progress publisher.

        Args:
            redis_client: Redis client for live pub/sub (skipped if None)
            db: Database client for the poll table (skipped if None)
            table: Poll table name
            persist_interval: Minimum seconds between row writes per job; done/error always write
            clock: Monotonic clock, overridable in tests
        """
        self.redis_client = redis_client
        self.db = db
        self.table = table
        self.persist_interval = (
            settings.progress_persist_interval if persist_interval is None else persist_interval
        )
        self._clock = clock
        self._snapshots: Dict[str, Dict[str, Any]] = {}
        self._last_persist: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_manager = asyncio.Lock()

    def snapshot(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Last published payload for a job, if it is still active."""
        payload = self._snapshots.get(job_id)
        return dict(payload) if payload else None

    async def publish(
        self,
        job_id: str,
        stage: Optional[str],
        percent: float,
        message: str = "",
        eta_seconds: Optional[float] = None,
        attempt: int = 1,
        done: bool = False,
        error: Optional[str] = None,
        per_scene: Optional[Dict[str, float]] = None,
    ) -> Dict[str, Any]:
        """
        Merge an update into the job's snapshot and publish it.

        Per-scene progress is merged with the previous snapshot while the
        stage stays the same. Failures are logged and never raised.

        Returns:
            The published payload
        """
        # Serialized per job so writes land in publish order
        lock = await self._get_lock(job_id)
        async with lock:
            previous = self._snapshots.get(job_id, {})
            stage = stage or previous.get("stage", "")

            scenes: Dict[str, float] = {}
            if previous.get("stage") == stage:
                scenes.update(previous.get("perScene", {}))
            for scene, value in (per_scene or {}).items():
                scenes[str(scene)] = max(0.0, min(100.0, float(value)))

            payload = {
                "jobId": job_id,
                "stage": stage,
                "progress": max(0.0, min(100.0, float(percent))),
                "message": message,
                "etaSeconds": eta_seconds,
                "attempt": attempt,
                "done": done,
                "error": error,
                "perScene": scenes,
                "updatedAt": utcnow().isoformat(),
            }
            terminal = done or error is not None

            if terminal:
                self._snapshots.pop(job_id, None)
            else:
                self._snapshots[job_id] = payload

            if self.redis_client is not None:
                try:
                    await self.redis_client.publish(progress_channel_name(job_id), payload)
                except Exception as e:
                    logger.warning("Failed to publish progress event", exc_info=e, extra={"job_id": job_id})

            if self.db is not None and (terminal or self._persist_due(job_id)):
                await self._persist(job_id, payload)

            if terminal:
                self._last_persist.pop(job_id, None)

        if terminal:
            self._locks.pop(job_id, None)
        return payload

    async def _get_lock(self, job_id: str) -> asyncio.Lock:
        """Get or create the publish lock for a job."""
        async with self._lock_manager:
            if job_id not in self._locks:
                self._locks[job_id] = asyncio.Lock()
            return self._locks[job_id]

    def _persist_due(self, job_id: str) -> bool:
        last = self._last_persist.get(job_id)
        return last is None or self._clock() - last >= self.persist_interval

    async def _persist(self, job_id: str, payload: Dict[str, Any]) -> None:
        row = {
            "job_id": job_id,
            "stage": payload["stage"],
            "progress": payload["progress"],
            "message": payload["message"],
            "eta_seconds": payload["etaSeconds"],
            "attempt": payload["attempt"],
            "done": payload["done"],
            "error": payload["error"],
            "per_scene": payload["perScene"],
            "updated_at": payload["updatedAt"],
        }
        try:
            await self.db.table(self.table).upsert(row).execute(max_attempts=1)
            self._last_persist[job_id] = self._clock()
        except Exception as e:
            logger.warning("Failed to persist progress snapshot", exc_info=e, extra={"job_id": job_id})
