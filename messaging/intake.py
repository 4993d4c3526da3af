"""
Message Intake - Inbound Message Model and Discord Adapter

Converts platform events into InboundMessage objects and rejects payloads
the pipeline cannot key on. Everything after intake works on InboundMessage
only, never on discord objects.
"""

import logging
import time
from typing import Any, Optional, Tuple
from dataclasses import dataclass

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class InboundMessage:
    """One platform-delivered chat event (or a merged batch of them)."""
    conversation_id: str
    message_id: str
    text: str
    arrival_time: float
    sender_is_self: bool = False
    # IDs of the original messages when this is a merged batch
    source_message_ids: Tuple[str, ...] = ()

    @property
    def is_merged(self) -> bool:
        return len(self.source_message_ids) > 1


class MessageIntake:
    """
    Validates inbound events and builds InboundMessage objects.

    Example:
        intake = MessageIntake()
        inbound = intake.from_discord(discord_message, bot_user_id)
        if inbound:
            pipeline.handle_inbound(inbound)
    """

    def validate(self, message: InboundMessage) -> Optional[str]:
        """
        Check that a message carries the identifiers the pipeline keys on.

        Args:
            message: Message to check

        Returns:
            Rejection reason, or None if the message is usable
        """
        if not message.conversation_id:
            return "missing-conversation-id"
        if not message.message_id:
            return "missing-message-id"
        if message.text is None:
            return "missing-text"
        return None

    def _is_self_message(self, message: Any, bot_user_id: Optional[int]) -> bool:
        """Check if the event was produced by the bot itself (or a webhook it owns)."""
        author = getattr(message, "author", None)
        if author is not None and bot_user_id is not None and author.id == bot_user_id:
            return True
        return getattr(message, "webhook_id", None) is not None

    def from_discord(self, message: Any, bot_user_id: Optional[int]) -> Optional[InboundMessage]:
        """
        Build an InboundMessage from a discord.Message.

        Args:
            message: Discord message
            bot_user_id: Bot's user ID

        Returns:
            InboundMessage, or None if the payload is malformed
        """
        channel_id = getattr(getattr(message, "channel", None), "id", None)
        message_id = getattr(message, "id", None)

        created_at = getattr(message, "created_at", None)
        arrival_time = created_at.timestamp() if created_at is not None else time.time()

        inbound = InboundMessage(
            conversation_id=str(channel_id) if channel_id is not None else "",
            message_id=str(message_id) if message_id is not None else "",
            text=getattr(message, "content", None) or "",  # Empty string for non-text payloads
            arrival_time=arrival_time,
            sender_is_self=self._is_self_message(message, bot_user_id)
        )

        reason = self.validate(inbound)
        if reason:
            log.warning("Dropping malformed inbound event %s: %s", message_id, reason)
            return None

        return inbound
