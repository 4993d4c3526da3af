"""
Message Sender - Discord Reply Delivery

Delivers generated replies to the Discord channel a conversation belongs to.
Long replies are split to fit Discord's 2000 character limit.
"""

import asyncio
import logging
from typing import Any, List, Optional

import discord

log = logging.getLogger(__name__)

DISCORD_MESSAGE_LIMIT = 2000


def split_message(text: str, limit: int = DISCORD_MESSAGE_LIMIT) -> List[str]:
    """
    Split text into chunks that fit the message limit.

    Breaks on the last newline inside a chunk when there is one, otherwise
    cuts at the limit.
    """
    if len(text) <= limit:
        return [text]

    chunks = []
    remaining = text
    while len(remaining) > limit:
        cut = remaining.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(remaining[:cut])
        remaining = remaining[cut:].lstrip("\n")
    if remaining:
        chunks.append(remaining)
    return chunks


class DiscordSender:
    """
    Sends replies as the bot user.

    Example:
        sender = DiscordSender(bot)
        ok = await sender.send("123456789", "Hello!")
    """

    def __init__(self, client: Any):
        """
        Args:
            client: discord.Client used to resolve channels
        """
        self.client = client

    async def _resolve_channel(self, conversation_id: str) -> Optional[Any]:
        try:
            channel_id = int(conversation_id)
        except ValueError:
            log.error("Conversation ID %r is not a Discord channel ID", conversation_id)
            return None

        channel = self.client.get_channel(channel_id)
        if channel is not None:
            return channel

        try:
            return await self.client.fetch_channel(channel_id)
        except discord.NotFound:
            log.error("Channel %s not found", conversation_id)
        except discord.Forbidden:
            log.error("No permission to access channel %s", conversation_id)
        except discord.HTTPException as e:
            log.error("Failed to fetch channel %s: %s", conversation_id, e)
        return None

    async def send(self, conversation_id: str, text: str) -> bool:
        """
        Send a reply to the conversation's channel.

        Returns:
            True if every chunk was delivered
        """
        channel = await self._resolve_channel(conversation_id)
        if channel is None:
            return False

        for chunk in split_message(text):
            try:
                await channel.send(chunk)
            except discord.Forbidden:
                log.error("No permission to send messages in channel %s", conversation_id)
                return False
            except discord.HTTPException as e:
                log.error("Error sending reply to channel %s: %s", conversation_id, e)
                return False
            # Yield control to event loop to prevent heartbeat blocking
            await asyncio.sleep(0)

        return True
