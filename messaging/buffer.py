"""
Message Buffer - Per-Conversation Aggregation

This module absorbs bursts of messages from the same conversation into a
single downstream turn, so users can send multi-part thoughts before the
bot answers and the expensive generator is called less often.

Each conversation is in one of two states:

    IDLE --first message--> COLLECTING   (batch created, window timer armed)
    COLLECTING --message--> COLLECTING   (appended; size cap flushes at once)
    COLLECTING --timer/cap--> IDLE       (batch removed, then flushed)

The window is measured from the first message of the batch and is not
extended by later messages. A batch is always removed from the live map and
its timer cancelled before the flush handler runs, so a message arriving
during a flush starts a fresh batch.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field

from messaging.intake import InboundMessage

log = logging.getLogger(__name__)

FlushHandler = Callable[[InboundMessage], None]


class BatchState(Enum):
    """Aggregation state of a conversation."""
    IDLE = "idle"
    COLLECTING = "collecting"


@dataclass
class MergeBatch:
    """In-flight aggregation window for one conversation."""
    conversation_id: str
    window_started_at: float
    messages: List[InboundMessage] = field(default_factory=list)
    timer: Optional[asyncio.TimerHandle] = None

    def add_message(self, message: InboundMessage) -> None:
        self.messages.append(message)

    def get_count(self) -> int:
        return len(self.messages)

    def get_formatted_content(self) -> str:
        """Get all message texts joined in arrival order."""
        return "\n".join(msg.text for msg in self.messages)

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def to_message(self) -> InboundMessage:
        """
        Collapse the batch into one logical message.

        A single message passes through unchanged.
        """
        if len(self.messages) == 1:
            return self.messages[0]

        return InboundMessage(
            conversation_id=self.conversation_id,
            message_id=f"batch_{self.conversation_id}_{int(self.window_started_at * 1000)}",
            text=self.get_formatted_content(),
            arrival_time=self.messages[-1].arrival_time,
            sender_is_self=False,
            source_message_ids=tuple(msg.message_id for msg in self.messages)
        )


class MessageBuffer:
    """
    Debounced batcher keyed by conversation.

    Timers run on the current asyncio event loop, so add_message() must be
    called from inside a running loop.

    Example:
        buffer = MessageBuffer(on_flush=handle_turn, merge_window_ms=1000)
        buffer.add_message(inbound)
        ...
        buffer.clear_all()  # on shutdown
    """

    def __init__(
        self,
        on_flush: FlushHandler,
        merge_window_ms: int = 1000,
        max_merged_messages: int = 3,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the message buffer.

        Args:
            on_flush: Called with the (possibly merged) message of each flushed batch
            merge_window_ms: Window length measured from the first message
            max_merged_messages: Batch size that triggers an immediate flush
            clock: Time source in seconds (for window_started_at)
        """
        self._on_flush = on_flush
        self._window = merge_window_ms / 1000.0
        self._max_messages = max_merged_messages
        self._clock = clock
        self._batches: Dict[str, MergeBatch] = {}

        log.debug(
            "MessageBuffer initialized (window=%.2fs, max_merged=%d)",
            self._window, max_merged_messages
        )

    @property
    def merge_window_ms(self) -> int:
        return int(self._window * 1000)

    @property
    def max_merged_messages(self) -> int:
        return self._max_messages

    def state_of(self, conversation_id: str) -> BatchState:
        """Get the aggregation state of a conversation."""
        if conversation_id in self._batches:
            return BatchState.COLLECTING
        return BatchState.IDLE

    def add_message(self, message: InboundMessage) -> BatchState:
        """
        Add an accepted message to its conversation's batch.

        Args:
            message: Message that passed the guards

        Returns:
            State of the conversation after the message was handled
        """
        conversation_id = message.conversation_id
        batch = self._batches.get(conversation_id)

        if batch is None:
            batch = MergeBatch(conversation_id=conversation_id, window_started_at=self._clock())
            self._batches[conversation_id] = batch
            batch.add_message(message)

            if batch.get_count() >= self._max_messages:
                self._flush_now(conversation_id, "size")
                return BatchState.IDLE

            loop = asyncio.get_running_loop()
            batch.timer = loop.call_later(self._window, self._on_timer, batch)
            return BatchState.COLLECTING

        batch.add_message(message)
        log.debug(
            "Conversation %s batch now holds %d message(s)",
            conversation_id, batch.get_count()
        )

        if batch.get_count() >= self._max_messages:
            self._flush_now(conversation_id, "size")
            return BatchState.IDLE

        return BatchState.COLLECTING

    def _on_timer(self, batch: MergeBatch) -> None:
        """Window elapsed for a batch."""
        conversation_id = batch.conversation_id
        if self._batches.get(conversation_id) is not batch:
            # Batch was already flushed by the size cap or cleared
            return

        del self._batches[conversation_id]
        batch.timer = None
        self._flush(batch, "window")

    def _flush_now(self, conversation_id: str, reason: str) -> None:
        """Remove the live batch, cancel its timer, then flush it."""
        batch = self._batches.pop(conversation_id)
        batch.cancel_timer()
        self._flush(batch, reason)

    def _flush(self, batch: MergeBatch, reason: str) -> None:
        """Hand a detached batch to the flush handler."""
        log.debug(
            "Flushing %d message(s) for conversation %s (%s)",
            batch.get_count(), batch.conversation_id, reason
        )
        try:
            self._on_flush(batch.to_message())
        except Exception:
            log.exception("Flush handler failed for conversation %s", batch.conversation_id)

    def clear_all(self) -> int:
        """
        Cancel every pending timer, then drop all batches.

        Returns:
            Number of messages discarded
        """
        batches = list(self._batches.values())
        for batch in batches:
            batch.cancel_timer()

        self._batches.clear()
        dropped = sum(batch.get_count() for batch in batches)
        if dropped:
            log.info("Discarded %d pending message(s) from %d batch(es)", dropped, len(batches))
        return dropped

    def queue_depths(self) -> Dict[str, int]:
        """Get the number of pending messages per collecting conversation."""
        return {
            conversation_id: batch.get_count()
            for conversation_id, batch in self._batches.items()
        }

    def update_settings(
        self,
        merge_window_ms: Optional[int] = None,
        max_merged_messages: Optional[int] = None
    ) -> None:
        """
        Change aggregation settings.

        Batches already collecting keep their armed timer; the new values
        apply to messages added from now on.
        """
        if merge_window_ms is not None:
            if merge_window_ms < 0:
                raise ValueError("merge_window_ms must not be negative")
            self._window = merge_window_ms / 1000.0
        if max_merged_messages is not None:
            if max_merged_messages < 1:
                raise ValueError("max_merged_messages must be at least 1")
            self._max_messages = max_merged_messages

        log.info(
            "Aggregation settings updated: window=%dms, max_merged=%d",
            self.merge_window_ms, self._max_messages
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get buffer statistics."""
        return {
            "collecting_conversations": len(self._batches),
            "total_messages": sum(batch.get_count() for batch in self._batches.values()),
            "merge_window_ms": self.merge_window_ms,
            "max_merged_messages": self._max_messages
        }
