"""
Dedup Guards - Redelivery and Echo Protection

Two independent guards sit in front of the message buffer:

- DedupGuard: drops platform redeliveries of a message ID already handled.
- LoopGuard: drops inbound messages whose text matches something the bot
  itself just sent into the same conversation. The platform's self flag is
  not always reliable, so this is a second line of defence.

Both keep plain in-memory maps. Expired entries are evicted lazily on lookup
and by the periodic sweep (see messaging.timing.SweepTimer).
"""

import logging
import time
from typing import Any, Callable, Dict, Tuple

from messaging.fingerprint import fingerprint

log = logging.getLogger(__name__)

Clock = Callable[[], float]

# Fraction of records dropped when the dedup map hits its capacity
EMERGENCY_EVICT_RATIO = 0.2


class DedupGuard:
    """
    Tracks recently handled inbound message IDs.

    Example:
        guard = DedupGuard(window_ms=300000)
        if not guard.is_duplicate(message_id):
            guard.mark_processed(message_id)
    """

    def __init__(
        self,
        window_ms: int = 300000,
        max_entries: int = 10000,
        clock: Clock = time.time
    ):
        """
        Initialize the dedup guard.

        Args:
            window_ms: How long a message ID counts as handled
            max_entries: Capacity before the oldest records are evicted
            clock: Time source in seconds
        """
        self._window = window_ms / 1000.0
        self._max_entries = max_entries
        self._clock = clock
        self._processed: Dict[str, float] = {}

        log.debug(
            "DedupGuard initialized (window=%.0fs, max_entries=%d)",
            self._window, max_entries
        )

    @property
    def window_seconds(self) -> float:
        return self._window

    def is_duplicate(self, message_id: str) -> bool:
        """
        Check whether a message ID was already handled inside the window.

        A record older than the window is evicted and the message is
        treated as fresh.
        """
        first_seen = self._processed.get(message_id)
        if first_seen is None:
            return False

        if self._clock() - first_seen >= self._window:
            del self._processed[message_id]
            return False

        return True

    def mark_processed(self, message_id: str) -> None:
        """Record a message ID as handled now."""
        if message_id not in self._processed and len(self._processed) >= self._max_entries:
            self._evict_oldest()

        self._processed[message_id] = self._clock()

    def _evict_oldest(self) -> None:
        """Drop the oldest 20% of records to make room."""
        ordered = sorted(self._processed.items(), key=lambda item: item[1])
        evict_count = max(1, int(len(ordered) * EMERGENCY_EVICT_RATIO))

        for message_id, _ in ordered[:evict_count]:
            del self._processed[message_id]

        log.warning(
            "Dedup cache reached capacity (%d), evicted %d oldest record(s)",
            self._max_entries, evict_count
        )

    def sweep(self) -> int:
        """
        Remove every expired record.

        Returns:
            Number of records removed
        """
        now = self._clock()
        expired = [
            message_id for message_id, first_seen in self._processed.items()
            if now - first_seen >= self._window
        ]
        for message_id in expired:
            del self._processed[message_id]

        if expired:
            log.debug("Swept %d expired dedup record(s)", len(expired))
        return len(expired)

    def clear(self) -> int:
        """Forget every record. Returns how many were dropped."""
        count = len(self._processed)
        self._processed.clear()
        return count

    def __len__(self) -> int:
        return len(self._processed)

    def get_stats(self) -> Dict[str, Any]:
        """Get dedup statistics."""
        return {
            "tracked": len(self._processed),
            "max_entries": self._max_entries,
            "utilization_percent": len(self._processed) / self._max_entries * 100,
            "window_seconds": self._window
        }


class LoopGuard:
    """
    Tracks (conversation, content fingerprint) pairs the bot just sent.

    The lockout window is short (seconds): it only has to outlive the
    platform echoing an outbound send back as an inbound event.
    """

    def __init__(self, window_ms: int = 10000, clock: Clock = time.time):
        self._window = window_ms / 1000.0
        self._clock = clock
        self._sent: Dict[Tuple[str, str], float] = {}

    @property
    def window_seconds(self) -> float:
        return self._window

    @staticmethod
    def _key(conversation_id: str, text: str) -> Tuple[str, str]:
        return (conversation_id, fingerprint(text))

    def is_echo(self, conversation_id: str, text: str) -> bool:
        """Check whether the text was sent into the conversation inside the window."""
        key = self._key(conversation_id, text)
        sent_at = self._sent.get(key)
        if sent_at is None:
            return False

        if self._clock() - sent_at >= self._window:
            del self._sent[key]
            return False

        return True

    def mark_sent(self, conversation_id: str, text: str) -> None:
        """Remember that the bot sent this text into the conversation."""
        self._sent[self._key(conversation_id, text)] = self._clock()

    def sweep(self) -> int:
        """Remove expired fingerprints. Returns the count removed."""
        now = self._clock()
        expired = [key for key, sent_at in self._sent.items() if now - sent_at >= self._window]
        for key in expired:
            del self._sent[key]
        return len(expired)

    def clear(self) -> int:
        count = len(self._sent)
        self._sent.clear()
        return count

    def __len__(self) -> int:
        return len(self._sent)

    def get_stats(self) -> Dict[str, Any]:
        """Get loop guard statistics."""
        return {
            "tracked": len(self._sent),
            "window_seconds": self._window
        }
