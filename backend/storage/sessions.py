# storage/sessions.py
# ============================================================================
# STOREFRONT — SESSION LOOKUP
# ============================================================================
# Sessions are issued by the auth front-end; this service only resolves a
# bearer token to a Caller. Redis holds ``session:<token>`` as JSON
# {"userId": ..., "isAdmin": ..., "email": ..., "name": ...}.
# ============================================================================

import json
import os
from abc import ABC, abstractmethod
from typing import Dict, Optional

import redis.asyncio as redis
import structlog

from schemas.domain import Caller

logger = structlog.get_logger(component="session_store")


class SessionConfig:
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")
    KEY_PREFIX = os.getenv("SESSION_KEY_PREFIX", "session:")


class ISessionStore(ABC):

    @abstractmethod
    async def get_caller(self, token: str) -> Optional[Caller]:
        pass

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass


class InMemorySessionStore(ISessionStore):
    """Token → Caller map for tests and local runs"""

    def __init__(self):
        self._sessions: Dict[str, Caller] = {}

    def add(self, token: str, caller: Caller) -> None:
        self._sessions[token] = caller

    async def get_caller(self, token: str) -> Optional[Caller]:
        return self._sessions.get(token)


class RedisSessionStore(ISessionStore):
    """Session lookup backed by Redis"""

    def __init__(self, url: str = None, key_prefix: str = None):
        self._url = url or SessionConfig.REDIS_URL
        self._prefix = key_prefix or SessionConfig.KEY_PREFIX
        self._redis: Optional[redis.Redis] = None

    async def initialize(self) -> None:
        self._redis = redis.from_url(self._url, decode_responses=True)
        await self._redis.ping()
        logger.info("redis_connected")

    async def get_caller(self, token: str) -> Optional[Caller]:
        if not self._redis:
            return None

        data = await self._redis.get(f"{self._prefix}{token}")
        if not data:
            return None

        try:
            return Caller.model_validate(json.loads(data))
        except ValueError as e:
            logger.warning("session_malformed", error=str(e))
            return None

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None
