from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from redis import asyncio as redis_async

from .models import ConversationTurn

logger = logging.getLogger("shopchat.history")

REDIS_KEY_PREFIX = "chat:"


class ConversationStore:
    """Interface for bounded, expiring per-user conversation history."""

    async def get(self, user_id: str) -> List[ConversationTurn]:
        raise NotImplementedError

    async def append(self, user_id: str, new_turns: Iterable[ConversationTurn]) -> None:
        raise NotImplementedError

    async def clear(self, user_id: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


@dataclass
class _HistoryEntry:
    turns: List[ConversationTurn] = field(default_factory=list)
    expires_at: float = 0.0


class InMemoryConversationStore(ConversationStore):
    """Process-local history store used when no Redis URL is configured."""

    def __init__(
        self,
        max_turns: int,
        ttl_seconds: float,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        """Purpose: Initialize the in-memory history store.
        Inputs/Outputs: Inputs are the retained turn count, TTL and optional clock.
        Side Effects / State: Creates an empty user -> history cache.
        Dependencies: None beyond the ConversationTurn model.
        Failure Modes: None at init.
        If Removed: The service has no history without Redis.
        Testing Notes: Inject a fake clock to exercise expiry deterministically.
        """
        # Keep limits and an injectable clock for expiry checks.
        self._max_turns = max_turns
        self._ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: Dict[str, _HistoryEntry] = {}

    async def get(self, user_id: str) -> List[ConversationTurn]:
        """Purpose: Return a user's recent turns, dropping the entry once expired.
        Inputs/Outputs: Input is user_id; output is an ordered list (copy).
        Side Effects / State: Deletes an expired entry lazily.
        Dependencies: Uses the injected clock.
        Failure Modes: Unknown or expired users return an empty list.
        If Removed: The orchestrator cannot include history in prompts.
        Testing Notes: Advance the clock past the TTL and expect [].
        """
        # Lazy expiry keeps the store free of background tasks.
        entry = self._entries.get(user_id)
        if entry is None:
            return []
        if self._clock() >= entry.expires_at:
            self._entries.pop(user_id, None)
            return []
        return list(entry.turns)

    async def append(self, user_id: str, new_turns: Iterable[ConversationTurn]) -> None:
        """Purpose: Append turns, keep only the last N and reset the expiry.
        Inputs/Outputs: Inputs are user_id and turns; no return value.
        Side Effects / State: Replaces the user's entry (last write wins) and drops
            every other user's expired entry.
        Dependencies: Calls get() so an expired history restarts from empty.
        Failure Modes: None.
        If Removed: Conversation memory is never recorded.
        Testing Notes: Append more than N turns and verify only the tail remains.
        """
        # Read, extend, truncate, then write back in one step.
        self._purge_expired()
        turns = await self.get(user_id)
        turns.extend(new_turns)
        if self._max_turns > 0:
            turns = turns[-self._max_turns :]
        self._entries[user_id] = _HistoryEntry(turns=turns, expires_at=self._clock() + self._ttl_seconds)

    async def clear(self, user_id: str) -> None:
        self._entries.pop(user_id, None)

    def held_users(self) -> int:
        return len(self._entries)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            del self._entries[key]


class RedisConversationStore(ConversationStore):
    """Redis-backed history: one JSON list per user under chat:{user_id} with SETEX."""

    def __init__(self, client: redis_async.Redis, max_turns: int, ttl_seconds: int) -> None:
        self._client = client
        self._max_turns = max_turns
        self._ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, max_turns: int, ttl_seconds: int) -> "RedisConversationStore":
        client = redis_async.from_url(url, decode_responses=True)
        return cls(client, max_turns=max_turns, ttl_seconds=ttl_seconds)

    async def get(self, user_id: str) -> List[ConversationTurn]:
        """Purpose: Load and validate a user's history from Redis.
        Inputs/Outputs: Input is user_id; output is a list of ConversationTurn.
        Side Effects / State: One GET round trip.
        Dependencies: redis.asyncio client and ConversationTurn validation.
        Failure Modes: Corrupt JSON is logged and treated as empty history;
            connection errors propagate to the caller.
        If Removed: Redis deployments lose conversation memory.
        Testing Notes: Store invalid JSON under the key and expect [].
        """
        # Missing keys mean absent or expired history.
        raw = await self._client.get(REDIS_KEY_PREFIX + user_id)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("history key=%s%s holds invalid JSON, ignoring", REDIS_KEY_PREFIX, user_id)
            return []
        if not isinstance(data, list):
            return []
        turns: List[ConversationTurn] = []
        for item in data:
            if isinstance(item, dict) and item.get("role") in {"user", "assistant"}:
                turns.append(ConversationTurn(role=item["role"], content=str(item.get("content", ""))))
        return turns

    async def append(self, user_id: str, new_turns: Iterable[ConversationTurn]) -> None:
        # Write the truncated list back with a fresh TTL.
        turns = await self.get(user_id)
        turns.extend(new_turns)
        if self._max_turns > 0:
            turns = turns[-self._max_turns :]
        payload = json.dumps([turn.model_dump() for turn in turns], ensure_ascii=False)
        await self._client.setex(REDIS_KEY_PREFIX + user_id, self._ttl_seconds, payload)

    async def clear(self, user_id: str) -> None:
        await self._client.delete(REDIS_KEY_PREFIX + user_id)

    async def close(self) -> None:
        await self._client.aclose()


def build_conversation_store(redis_url: str, max_turns: int, ttl_seconds: int) -> ConversationStore:
    """Pick the Redis backend when a URL is configured, otherwise keep history in memory."""
    if redis_url:
        logger.info("history backend=redis turns=%d ttl=%ds", max_turns, ttl_seconds)
        return RedisConversationStore.from_url(redis_url, max_turns=max_turns, ttl_seconds=ttl_seconds)
    logger.info("history backend=memory turns=%d ttl=%ds", max_turns, ttl_seconds)
    return InMemoryConversationStore(max_turns=max_turns, ttl_seconds=ttl_seconds)
