import asyncio
import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, APIError, APIConnectionError, RateLimitError, APITimeoutError

from AI.base_client import BaseAIClient, GenerationError

log = logging.getLogger(__name__)

# Errors worth another attempt; everything else fails fast
RETRYABLE_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError)


class OpenAIClient(BaseAIClient):
    """OpenAI-compatible chat completions client used as the reply generator."""

    provider_name = "OpenAI"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        system_message: Optional[str] = None,
        timeout: float = 60.0,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        max_retries: int = 2,
        base_delay: float = 2.0,
        client: Optional[AsyncOpenAI] = None
    ):
        super().__init__()
        self.model = model
        self.system_message = system_message
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay

        if client is None:
            # Retries are handled by _create_with_retry
            client_kwargs: Dict[str, Any] = {"api_key": api_key, "timeout": timeout, "max_retries": 0}
            if base_url:
                client_kwargs["base_url"] = base_url
            client = AsyncOpenAI(**client_kwargs)
        self._client = client

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'OpenAIClient':
        """Create from the "OpenAI" section of config.yml."""
        return cls(
            api_key=config.get("api_key"),
            model=config.get("model", "gpt-4o-mini"),
            base_url=config.get("base_url"),
            system_message=config.get("system_message"),
            timeout=config.get("timeout", 60.0),
            max_tokens=config.get("max_tokens", 1000),
            temperature=config.get("temperature", 0.7),
            max_retries=config.get("max_retries", 2),
        )

    async def _create_with_retry(self, api_params: Dict[str, Any]):
        """Call the API, retrying transient failures with exponential backoff."""
        for attempt in range(self.max_retries):
            try:
                return await self._client.chat.completions.create(**api_params)
            except RETRYABLE_ERRORS as e:
                if attempt == self.max_retries - 1:
                    raise
                delay = self.base_delay * (2 ** attempt)
                log.warning(
                    "Attempt %d/%d failed (%s), retrying in %.1fs",
                    attempt + 1, self.max_retries, type(e).__name__, delay
                )
                await asyncio.sleep(delay)

    async def generate(
        self,
        conversation_id: str,
        text: str,
        history: List[Dict[str, str]]
    ) -> str:
        """Generate a reply from the chat completions API."""
        api_params = {
            "model": self.model,
            "messages": self.build_messages(text, history, self.system_message),
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }

        try:
            response = await self._create_with_retry(api_params)
        except (APIConnectionError, APITimeoutError) as e:
            log.error("Connection error for conversation %s: %s", conversation_id, e)
            raise GenerationError(type(e).__name__, str(e), "Could not reach the AI service") from e
        except RateLimitError as e:
            log.error("Rate limit error for conversation %s: %s", conversation_id, e)
            raise GenerationError(type(e).__name__, str(e), "The AI service is busy") from e
        except APIError as e:
            log.error("API error for conversation %s: %s", conversation_id, e)
            raise GenerationError(type(e).__name__, str(e)) from e

        if not response.choices:
            log.warning("Received no choices from API for conversation %s", conversation_id)
            return ""

        ai_response = response.choices[0].message.content or ""
        if ai_response.isspace():
            log.warning("Received empty response from API for conversation %s", conversation_id)
            return ""

        return ai_response

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        try:
            await self._client.close()
        except Exception as e:
            log.error("Error closing client session: %s", e)
