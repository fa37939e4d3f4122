"""
Redis-backed caching for pipeline runs.

- Redis client management (singleton, graceful degradation)
- Stage snapshots: last successful output of each pipeline stage
"""

from libs.caching.redis_client import get_redis_client
from libs.caching.stage_snapshots import StageSnapshotStore

__all__ = ["get_redis_client", "StageSnapshotStore"]
