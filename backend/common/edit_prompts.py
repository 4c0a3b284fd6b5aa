"""In-memory registry of edit prompts waiting for a reply.

When the owner presses "Edit", the bot sends a prompt message. The owner's
reply to that message carries the revision instruction. Entries are keyed by
(chat_id, prompt_message_id) and expire after a TTL; the registry is also
capped so abandoned prompts cannot grow it without bound.
"""
import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class PendingEdit:
    session_id: int
    user_id: int
    created_at: float


class EditPromptTracker:
    def __init__(self, ttl_seconds: int, max_entries: int, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Tuple[int, int], PendingEdit]" = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: PendingEdit, now: float) -> bool:
        return now - entry.created_at > self.ttl_seconds

    def _evict(self, now: float) -> None:
        stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in stale:
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            key, _ = self._entries.popitem(last=False)
            logger.info("Dropped edit prompt %s: registry full", key)

    async def track(self, chat_id: int, prompt_message_id: int, session_id: int, user_id: int) -> None:
        async with self._lock:
            now = self._clock()
            key = (chat_id, prompt_message_id)
            self._entries.pop(key, None)
            self._entries[key] = PendingEdit(session_id=session_id, user_id=user_id, created_at=now)
            self._evict(now)

    async def peek(self, chat_id: int, prompt_message_id: int) -> Optional[PendingEdit]:
        async with self._lock:
            now = self._clock()
            entry = self._entries.get((chat_id, prompt_message_id))
            if entry is None:
                return None
            if self._expired(entry, now):
                del self._entries[(chat_id, prompt_message_id)]
                return None
            return entry

    async def resolve(self, chat_id: int, prompt_message_id: int, user_id: int) -> Optional[PendingEdit]:
        """Consume the prompt if it is live and was issued to this user."""
        async with self._lock:
            now = self._clock()
            key = (chat_id, prompt_message_id)
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, now):
                del self._entries[key]
                return None
            if entry.user_id != user_id:
                return None
            del self._entries[key]
            return entry

    async def discard_session(self, session_id: int) -> int:
        async with self._lock:
            keys = [key for key, entry in self._entries.items() if entry.session_id == session_id]
            for key in keys:
                del self._entries[key]
            return len(keys)
