"""Per-conversation state: message history, topic cache and turn locks.

Both stores keep data in process memory by default (bounded by
``MAX_CONVERSATIONS`` with an idle TTL) and switch to Redis when
``REDIS_URL`` is configured.
"""

from __future__ import annotations

import os
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from langchain_community.chat_message_histories import ChatMessageHistory

from infra import get_redis, rdel, rget_json, rpush_json, rset_json, rtail_json

MAX_CONVERSATIONS = int(os.getenv("MAX_CONVERSATIONS", "1000"))
CONVERSATION_TTL_SECONDS = int(os.getenv("CONVERSATION_TTL_SECONDS", "86400"))
TOPIC_CACHE_TTL_SECONDS = int(os.getenv("TOPIC_CACHE_TTL_SECONDS", "3600"))

ROLES = ("user", "assistant")


@dataclass(frozen=True)
class ConversationEntry:
    role: str
    content: str

    def as_message(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


def _now() -> float:
    return time.time()


class _BoundedTTLMap:
    """LRU-ordered dict whose entries also expire after an idle TTL."""

    def __init__(self, max_entries: int, ttl_s: int):
        self.max_entries = max_entries
        self.ttl_s = ttl_s
        self._items: "OrderedDict[str, tuple]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str):
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            expires_at, value = item
            if self.ttl_s > 0 and expires_at <= _now():
                self._items.pop(key, None)
                return None
            self._items.move_to_end(key)
            return value

    def put(self, key: str, value) -> None:
        with self._lock:
            self._items[key] = (_now() + self.ttl_s, value)
            self._items.move_to_end(key)
            while self.max_entries > 0 and len(self._items) > self.max_entries:
                self._items.popitem(last=False)

    def touch(self, key: str) -> None:
        with self._lock:
            item = self._items.get(key)
            if item is not None:
                self._items[key] = (_now() + self.ttl_s, item[1])
                self._items.move_to_end(key)

    def pop(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


# ------------------------------------------------------------
# Turn locks
# ------------------------------------------------------------
class KeyedLock:
    """One mutex per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}  # key -> [lock, refcount]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            slot = self._locks.setdefault(key, [threading.Lock(), 0])
            slot[1] += 1
        slot[0].acquire()
        try:
            yield
        finally:
            slot[0].release()
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# ------------------------------------------------------------
# Conversation history
# ------------------------------------------------------------
def _history_key(conversation_id: str) -> str:
    return f"hist:{conversation_id}"


class ConversationStore:
    """Append-only message log per conversation id."""

    def __init__(
        self,
        max_conversations: int = MAX_CONVERSATIONS,
        ttl_s: int = CONVERSATION_TTL_SECONDS,
        use_redis: Optional[bool] = None,
    ):
        self.ttl_s = ttl_s
        self._use_redis = use_redis
        self._histories = _BoundedTTLMap(max_conversations, ttl_s)
        self._locks = KeyedLock()

    def _redis_enabled(self) -> bool:
        if self._use_redis is None:
            return get_redis() is not None
        return self._use_redis and get_redis() is not None

    def lock(self, conversation_id: str):
        return self._locks.hold(conversation_id)

    def append(self, conversation_id: str, role: str, content: str) -> None:
        if role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}, got {role!r}")
        content = content or ""

        if self._redis_enabled():
            rpush_json(_history_key(conversation_id), {"role": role, "content": content}, ttl_s=self.ttl_s)
            return

        history = self._histories.get(conversation_id)
        if history is None:
            history = ChatMessageHistory()
            self._histories.put(conversation_id, history)
        else:
            self._histories.touch(conversation_id)
        if role == "user":
            history.add_user_message(content)
        else:
            history.add_ai_message(content)

    def recent(self, conversation_id: str, k: int) -> List[ConversationEntry]:
        """Latest ``k`` entries, oldest first."""
        if k <= 0:
            return []

        if self._redis_enabled():
            return [
                ConversationEntry(role=m.get("role", ""), content=m.get("content", ""))
                for m in rtail_json(_history_key(conversation_id), k)
                if isinstance(m, dict)
            ]

        history = self._histories.get(conversation_id)
        if history is None:
            return []
        return [
            ConversationEntry(role="user" if msg.type == "human" else "assistant", content=str(msg.content))
            for msg in history.messages[-k:]
        ]

    def reset(self, conversation_id: str) -> None:
        rdel(_history_key(conversation_id))
        self._histories.pop(conversation_id)


# ------------------------------------------------------------
# Topic cache
# ------------------------------------------------------------
def _topic_key(conversation_id: str) -> str:
    return f"topic:{conversation_id}"


@dataclass(frozen=True)
class TopicCacheEntry:
    tables: tuple


class TopicCache:
    """Last resolved relevant-table set per conversation."""

    def __init__(
        self,
        max_conversations: int = MAX_CONVERSATIONS,
        ttl_s: int = TOPIC_CACHE_TTL_SECONDS,
        use_redis: Optional[bool] = None,
    ):
        self.ttl_s = ttl_s
        self._use_redis = use_redis
        self._entries = _BoundedTTLMap(max_conversations, ttl_s)

    def _redis_enabled(self) -> bool:
        if self._use_redis is None:
            return get_redis() is not None
        return self._use_redis and get_redis() is not None

    def get(self, conversation_id: str) -> Optional[TopicCacheEntry]:
        if self._redis_enabled():
            obj = rget_json(_topic_key(conversation_id))
            if isinstance(obj, dict) and isinstance(obj.get("tables"), list):
                return TopicCacheEntry(tables=tuple(obj["tables"]))
            return None
        return self._entries.get(conversation_id)

    def set(self, conversation_id: str, tables: List[str]) -> None:
        entry = TopicCacheEntry(tables=tuple(dict.fromkeys(tables)))
        if self._redis_enabled():
            rset_json(_topic_key(conversation_id), {"tables": list(entry.tables)}, ttl_s=self.ttl_s)
            return
        self._entries.put(conversation_id, entry)

    def clear(self, conversation_id: str) -> None:
        rdel(_topic_key(conversation_id))
        self._entries.pop(conversation_id)
