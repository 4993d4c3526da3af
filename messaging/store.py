"""
Conversation Store - Rolling Conversation History

This module keeps a bounded, time-limited transcript per conversation.
The downstream generator reads it as context; the pipeline appends to it
on every flushed user turn and every generated reply.

Key Features:
- Count cap per conversation (oldest entries dropped first)
- TTL expiry, applied on every read and by the periodic sweep
- Empty conversations are deleted by the sweep
- Runtime-adjustable limits

State lives in memory only and is lost on restart.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass

log = logging.getLogger(__name__)

VALID_ROLES = ("user", "assistant")


@dataclass
class HistoryEntry:
    """One turn in a conversation transcript."""
    role: str  # "user" or "assistant"
    content: str
    recorded_at: float

    def to_api(self) -> Dict[str, str]:
        """Convert to API format (role + content only)."""
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, timestamp included."""
        return {
            "role": self.role,
            "content": self.content,
            "recorded_at": self.recorded_at
        }


class ConversationStore:
    """
    In-memory rolling history for every conversation.

    Structure:
        conversation_id -> [HistoryEntry, ...] (insertion order = chronological)

    Example:
        store = ConversationStore(max_history=20, history_ttl_ms=36000000)
        store.append("chat-1", "user", "Hello!")
        store.append("chat-1", "assistant", "Hi!")
        history = store.get_history("chat-1")
    """

    def __init__(
        self,
        max_history: int = 20,
        history_ttl_ms: int = 36000000,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the conversation store.

        Args:
            max_history: Maximum entries kept per conversation
            history_ttl_ms: Age after which an entry is dropped
            clock: Time source in seconds
        """
        self._max_history = max_history
        self._ttl = history_ttl_ms / 1000.0
        self._clock = clock
        self._data: Dict[str, List[HistoryEntry]] = {}

    @property
    def max_history(self) -> int:
        return self._max_history

    @property
    def history_ttl_ms(self) -> int:
        return int(self._ttl * 1000)

    @property
    def active_conversations(self) -> int:
        return len(self._data)

    def _prune_expired(self, entries: List[HistoryEntry], now: float) -> List[HistoryEntry]:
        """Return the entries still younger than the TTL."""
        return [entry for entry in entries if now - entry.recorded_at < self._ttl]

    def get_history(self, conversation_id: str) -> List[Dict[str, str]]:
        """
        Get conversation history in API format.

        Expired entries are pruned first; at most max_history of the newest
        entries are returned, oldest first.

        Args:
            conversation_id: Conversation ID

        Returns:
            List of messages in API format (role + content)
        """
        entries = self._data.get(conversation_id)
        if not entries:
            return []

        entries = self._prune_expired(entries, self._clock())
        if not entries:
            del self._data[conversation_id]
            return []
        self._data[conversation_id] = entries

        return [entry.to_api() for entry in entries[-self._max_history:]]

    def append(self, conversation_id: str, role: str, content: str) -> None:
        """
        Add a turn to a conversation.

        Args:
            conversation_id: Conversation ID
            role: "user" or "assistant"
            content: Message content

        Raises:
            ValueError: If the role is unknown
        """
        if role not in VALID_ROLES:
            raise ValueError(f"Unknown history role: {role!r}")

        entries = self._data.setdefault(conversation_id, [])
        entries.append(HistoryEntry(role=role, content=content, recorded_at=self._clock()))

        overflow = len(entries) - self._max_history
        if overflow > 0:
            del entries[:overflow]

    def get_detail(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        """
        Get the full transcript of a conversation with timestamps.

        Returns:
            Dictionary with entries and count, or None if there is no history
        """
        self.get_history(conversation_id)
        entries = self._data.get(conversation_id)
        if not entries:
            return None

        return {
            "conversation_id": conversation_id,
            "messages": [entry.to_dict() for entry in entries[-self._max_history:]],
            "message_count": min(len(entries), self._max_history)
        }

    def sweep(self) -> int:
        """
        Drop expired entries everywhere and delete emptied conversations.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        removed = 0

        for conversation_id in list(self._data):
            entries = self._data[conversation_id]
            kept = self._prune_expired(entries, now)
            removed += len(entries) - len(kept)

            if kept:
                self._data[conversation_id] = kept
            else:
                del self._data[conversation_id]

        if removed:
            log.debug("Swept %d expired history entries", removed)
        return removed

    def clear(self, conversation_id: Optional[str] = None) -> int:
        """
        Clear history for one conversation, or for all of them.

        Returns:
            Number of entries removed
        """
        if conversation_id is not None:
            entries = self._data.pop(conversation_id, [])
            if entries:
                log.info("Cleared %d history entries for conversation %s", len(entries), conversation_id)
            return len(entries)

        count = sum(len(entries) for entries in self._data.values())
        self._data.clear()
        log.info("Cleared all conversation history (%d entries)", count)
        return count

    def update_limits(
        self,
        max_history: Optional[int] = None,
        history_ttl_ms: Optional[int] = None
    ) -> None:
        """Change the count cap and/or TTL. Applies from the next read or append."""
        if max_history is not None:
            if max_history < 1:
                raise ValueError("max_history must be at least 1")
            self._max_history = max_history
        if history_ttl_ms is not None:
            if history_ttl_ms <= 0:
                raise ValueError("history_ttl_ms must be positive")
            self._ttl = history_ttl_ms / 1000.0

        log.info(
            "History limits updated: max_history=%d, ttl=%.0fs",
            self._max_history, self._ttl
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get conversation statistics."""
        return {
            "active_conversations": len(self._data),
            "total_entries": sum(len(entries) for entries in self._data.values()),
            "max_history": self._max_history,
            "ttl_minutes": self._ttl / 60
        }
