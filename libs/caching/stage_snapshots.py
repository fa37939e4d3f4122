"""
Stage snapshots: intermediate pipeline outputs kept in Redis.

Each session has one hash, ``pipeline:{session_id}:stages``, with one JSON
field per completed stage. When a later stage fails, the last successful
stage's output is still readable here. Writes are best-effort: a Redis
failure is logged and never interrupts the pipeline.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 86400


class StageSnapshotStore:
    """
    Persists the output of each completed stage for a session.

    Usage:
        store = StageSnapshotStore(redis_client)
        await store.save(session_id, "domain_analysis", analysis.model_dump())
        latest = await store.load_latest(session_id)
    """

    def __init__(self, redis_client, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(session_id: str) -> str:
        return f"pipeline:{session_id}:stages"

    async def save(self, session_id: str, stage: str, payload: Dict[str, Any], kind: str = "ok") -> bool:
        """
        Store one stage's output, replacing any earlier output for that stage.

        Args:
            session_id: Session identifier
            stage: Stage name
            payload: JSON-serializable stage output
            kind: Result kind ("ok" or "fallback")

        Returns:
            True if written, False if Redis rejected the write.
        """
        key = self._key(session_id)
        record = {
            "stage": stage,
            "kind": kind,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "payload": payload,
        }
        try:
            await self.redis.hset(key, stage, json.dumps(record, default=str))
            await self.redis.hset(key, "_latest", stage)
            await self.redis.expire(key, self.ttl_seconds)
        except redis.RedisError as e:
            logger.warning("Stage snapshot write failed", session_id=session_id, stage=stage, error=str(e))
            return False

        logger.debug("Stage snapshot saved", session_id=session_id, stage=stage, kind=kind)
        return True

    async def load(self, session_id: str, stage: str) -> Optional[Dict[str, Any]]:
        """Return the stored record for one stage, or None."""
        try:
            raw = await self.redis.hget(self._key(session_id), stage)
        except redis.RedisError as e:
            logger.warning("Stage snapshot read failed", session_id=session_id, stage=stage, error=str(e))
            return None
        return json.loads(raw) if raw else None

    async def load_all(self, session_id: str) -> Dict[str, Dict[str, Any]]:
        """Return every stored stage record keyed by stage name."""
        try:
            raw = await self.redis.hgetall(self._key(session_id))
        except redis.RedisError as e:
            logger.warning("Stage snapshot read failed", session_id=session_id, error=str(e))
            return {}
        return {stage: json.loads(value) for stage, value in raw.items() if stage != "_latest"}

    async def load_latest(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Return the record of the most recently completed stage."""
        try:
            stage = await self.redis.hget(self._key(session_id), "_latest")
        except redis.RedisError as e:
            logger.warning("Stage snapshot read failed", session_id=session_id, error=str(e))
            return None
        if not stage:
            return None
        return await self.load(session_id, stage)

    async def clear(self, session_id: str) -> None:
        try:
            await self.redis.delete(self._key(session_id))
        except redis.RedisError as e:
            logger.warning("Stage snapshot clear failed", session_id=session_id, error=str(e))
