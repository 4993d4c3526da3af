"""
AI Module - Reply Generators

Usage:
    from AI import OpenAIClient

    client = OpenAIClient.from_config(config["OpenAI"])
    reply = await client.generate(conversation_id, text, history)
"""

from AI.base_client import BaseAIClient, GenerationError
from AI.openai_client import OpenAIClient

__all__ = [
    'BaseAIClient',
    'GenerationError',
    'OpenAIClient',
]
