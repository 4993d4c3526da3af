"""
Base AI Client

This module provides an abstract base class for reply generators. The
pipeline only depends on this interface; provider clients implement it.

Classes:
    - GenerationError: Raised when a provider fails to produce a reply
    - BaseAIClient: Abstract base class for AI clients
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import logging


log = logging.getLogger(__name__)


class GenerationError(Exception):
    """
    A provider call failed.

    Attributes:
        error_type: Provider exception class name (e.g., "RateLimitError")
        friendly_message: Short user-facing description
    """

    def __init__(self, error_type: str, message: str, friendly_message: str = "Reply generation failed"):
        super().__init__(f"{error_type}: {message}")
        self.error_type = error_type
        self.friendly_message = friendly_message


class BaseAIClient(ABC):
    """
    Abstract base class for reply generators.

    To add a new provider:
    1. Create a new class that inherits from BaseAIClient
    2. Set the provider_name class attribute
    3. Implement generate()

    Example:
        >>> class EchoClient(BaseAIClient):
        ...     provider_name = "Echo"
        ...
        ...     async def generate(self, conversation_id, text, history):
        ...         return text
    """

    # Provider name (must be set by subclass)
    provider_name: Optional[str] = None

    def __init__(self):
        """Initialize the base client."""
        if self.provider_name is None:
            raise NotImplementedError(
                f"{self.__class__.__name__} must set provider_name class attribute"
            )

    @abstractmethod
    async def generate(
        self,
        conversation_id: str,
        text: str,
        history: List[Dict[str, str]]
    ) -> str:
        """
        Generate a reply for one (possibly merged) user turn.

        Args:
            conversation_id: Conversation the turn belongs to
            text: User turn content
            history: Earlier turns in API format, oldest first

        Returns:
            Reply text (empty string means "nothing to say")

        Raises:
            GenerationError: If the provider call fails
        """
        pass

    def build_messages(
        self,
        text: str,
        history: List[Dict[str, str]],
        system_message: Optional[str] = None
    ) -> List[Dict[str, str]]:
        """Assemble the chat message list: system prompt, history, current turn."""
        messages: List[Dict[str, str]] = []
        if system_message:
            messages.append({"role": "system", "content": system_message})
        messages.extend(history)
        messages.append({"role": "user", "content": text})
        return messages
