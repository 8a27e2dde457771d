import json
from abc import ABC, abstractmethod
from typing import List

import redis.asyncio as redis_async

from shopchat.logging_config import get_logger

logger = get_logger("history_service")

CHAT_KEY_PREFIX = "chat"
USERS_KEY = "users"


def _trim(messages: List[dict], max_messages: int) -> List[dict]:
    if not isinstance(messages, list):
        return []
    return messages[-max_messages:] if max_messages > 0 else []


class HistoryStore(ABC):
    """Conversation history and the registry of known conversation keys."""

    @abstractmethod
    async def get(self, key: str) -> List[dict]:
        ...

    @abstractmethod
    async def set(self, key: str, messages: List[dict]) -> None:
        ...

    @abstractmethod
    async def add_user(self, key: str) -> bool:
        ...

    @abstractmethod
    async def list_users(self) -> List[str]:
        ...

    @abstractmethod
    async def clear_users(self) -> int:
        ...

    async def aclose(self) -> None:
        return None


class RedisHistoryStore(HistoryStore):
    def __init__(self, client, ttl_seconds: int = 86400, max_messages: int = 10):
        self._redis = client
        self._ttl_seconds = ttl_seconds
        self._max_messages = max_messages

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = 86400, max_messages: int = 10) -> "RedisHistoryStore":
        client = redis_async.from_url(redis_url, decode_responses=True)
        return cls(client, ttl_seconds=ttl_seconds, max_messages=max_messages)

    @staticmethod
    def _key(key: str) -> str:
        return f"{CHAT_KEY_PREFIX}:{key}"

    async def get(self, key: str) -> List[dict]:
        if not key:
            return []
        raw = await self._redis.get(self._key(key))
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Corrupt chat history dropped", extra={"context": {"conversation_key": key}})
            return []
        return data if isinstance(data, list) else []

    async def set(self, key: str, messages: List[dict]) -> None:
        if not key:
            return
        trimmed = _trim(messages, self._max_messages)
        await self._redis.setex(self._key(key), self._ttl_seconds, json.dumps(trimmed, ensure_ascii=False))

    async def add_user(self, key: str) -> bool:
        if not key:
            return False
        return bool(await self._redis.sadd(USERS_KEY, key))

    async def list_users(self) -> List[str]:
        members = await self._redis.smembers(USERS_KEY)
        return sorted(members)

    async def clear_users(self) -> int:
        return int(await self._redis.delete(USERS_KEY))

    async def aclose(self) -> None:
        await self._redis.aclose()


class InMemoryHistoryStore(HistoryStore):
    """Process-local store for development and tests; no TTL."""

    def __init__(self, max_messages: int = 10):
        self._max_messages = max_messages
        self._history: dict[str, List[dict]] = {}
        self._users: set[str] = set()

    async def get(self, key: str) -> List[dict]:
        return [dict(m) for m in self._history.get(key, [])]

    async def set(self, key: str, messages: List[dict]) -> None:
        if not key:
            return
        self._history[key] = [dict(m) for m in _trim(messages, self._max_messages)]

    async def add_user(self, key: str) -> bool:
        if not key or key in self._users:
            return False
        self._users.add(key)
        return True

    async def list_users(self) -> List[str]:
        return sorted(self._users)

    async def clear_users(self) -> int:
        existed = 1 if self._users else 0
        self._users.clear()
        return existed
