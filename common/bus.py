# common/bus.py
from __future__ import annotations
import json
from typing import Any, Dict
from redis import asyncio as aioredis
from common.logging import get_logger, redact_url

log = get_logger("bus")

class EventBus:
    """Publishes pipeline events to Redis streams. Notifications only, nothing is read back."""

    def __init__(self, redis_url: str, maxlen: int = 10000):
        self._redis_url = redis_url
        self._maxlen = maxlen
        self._redis = None

    @property
    def connected(self) -> bool:
        return self._redis is not None

    async def connect(self):
        if self._redis is None:
            log.info(f"Connecting to Redis: {redact_url(self._redis_url)}")
            r = aioredis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
            # quick ping
            try:
                pong = await r.ping()
                log.info(f"Redis ping: {pong}")
            except Exception as e:
                log.error(f"Redis connection failed: {e}")
                await r.close()
                raise
            self._redis = r
        return self

    async def close(self):
        if self._redis is not None:
            log.info("Closing Redis connection")
            await self._redis.close()
            self._redis = None

    async def xadd_json(self, stream: str, payload: Dict[str, Any]) -> str:
        assert self._redis is not None, "Call connect() first"
        data = {"json": json.dumps(payload, separators=(",", ":"), ensure_ascii=False)}
        msg_id = await self._redis.xadd(stream, data, maxlen=self._maxlen, approximate=True)
        log.debug(f"XADD stream={stream} id={msg_id}")
        return msg_id
