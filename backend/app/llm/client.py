"""Anthropic client wrapper with retry logic."""

import asyncio
import logging
from typing import Any

import anthropic

from app.errors import ErrorCode, ProviderError

logger = logging.getLogger(__name__)

# Default retry configuration
MAX_RETRIES = 3
RETRY_DELAY = 1.0  # seconds
RETRY_MULTIPLIER = 2.0

DEFAULT_MAX_TOKENS = 4096


class LLMClient:
    """Wrapper around the Anthropic Messages API with retry logic."""

    def __init__(self, api_key: str, timeout: float | None = None):
        """Initialize the client.

        Args:
            api_key: Anthropic API key resolved for the calling user
            timeout: Per-request timeout in seconds; the SDK default when None
        """
        if not api_key:
            raise ValueError("Anthropic API key required.")
        self.api_key = api_key
        if timeout is None:
            self._client = anthropic.Anthropic(api_key=api_key)
        else:
            self._client = anthropic.Anthropic(api_key=api_key, timeout=timeout)

    async def create_message(
        self,
        model: str,
        messages: list[dict[str, str]],
        system: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float | None = None,
        top_p: float | None = None,
    ) -> anthropic.types.Message:
        """Send a conversation to Claude.

        Raises:
            ProviderError: If the call fails after retries
        """
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": messages,
        }
        if system:
            kwargs["system"] = system
        if temperature is not None:
            kwargs["temperature"] = temperature
        if top_p is not None:
            kwargs["top_p"] = top_p

        try:
            return await self._call_with_retry(kwargs)
        except anthropic.APITimeoutError as e:
            raise ProviderError("Anthropic request timed out", code=ErrorCode.TIMEOUT) from e
        except anthropic.RateLimitError as e:
            raise ProviderError(
                str(e.message), status_code=429, code=ErrorCode.RATE_LIMITED
            ) from e
        except anthropic.APIStatusError as e:
            raise ProviderError(str(e.message), status_code=e.status_code) from e
        except anthropic.APIError as e:
            raise ProviderError(f"Anthropic request failed: {e}") from e

    async def _call_with_retry(self, kwargs: dict[str, Any]) -> anthropic.types.Message:
        """Call Claude API with exponential backoff retry.

        Raises:
            anthropic.APIError: If all retries fail
        """
        last_error: Exception | None = None
        delay = RETRY_DELAY

        for attempt in range(MAX_RETRIES):
            try:
                # Run sync client in thread pool
                loop = asyncio.get_running_loop()
                return await loop.run_in_executor(
                    None, lambda: self._client.messages.create(**kwargs)
                )

            except anthropic.RateLimitError as e:
                last_error = e
                logger.warning(
                    f"Rate limited (attempt {attempt + 1}/{MAX_RETRIES}), "
                    f"retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                delay *= RETRY_MULTIPLIER

            except anthropic.APIStatusError as e:
                if e.status_code >= 500:
                    last_error = e
                    logger.warning(
                        f"Server error {e.status_code} (attempt {attempt + 1}/{MAX_RETRIES}), "
                        f"retrying in {delay}s..."
                    )
                    await asyncio.sleep(delay)
                    delay *= RETRY_MULTIPLIER
                else:
                    raise

        raise last_error or RuntimeError("Unexpected retry failure")


# Clients keyed by API key and timeout (lazy initialization)
_clients: dict[tuple[str, float | None], LLMClient] = {}


def get_client(api_key: str, timeout: float | None = None) -> LLMClient:
    """Get or create the client for an API key and timeout."""
    key = (api_key, timeout)
    client = _clients.get(key)
    if client is None:
        client = LLMClient(api_key, timeout=timeout)
        _clients[key] = client
    return client
