"""HTTP client for the OpenAI Responses API."""

import logging
import re
from typing import Any

import httpx

from app.config import get_settings
from app.errors import ErrorCode, ProviderError

logger = logging.getLogger(__name__)

RETRY_AFTER_PATTERN = re.compile(r"try again in ([0-9.]+)\s*s", re.IGNORECASE)

# Provider statuses after which a response will not change
TERMINAL_RESPONSE_STATUSES = {"completed", "failed", "cancelled", "incomplete"}


def parse_retry_after(message: str | None) -> float | None:
    """Extract the retry delay from a provider rate-limit message, if present."""
    if not message:
        return None
    match = RETRY_AFTER_PATTERN.search(message)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def extract_output_text(data: dict[str, Any]) -> str:
    """Concatenate the assistant message text of a response."""
    parts: list[str] = []
    for item in data.get("output") or []:
        if item.get("type") != "message":
            continue
        for content in item.get("content") or []:
            if content.get("type") in ("output_text", "text") and content.get("text"):
                parts.append(content["text"])
    return "".join(parts)


def extract_reasoning_text(data: dict[str, Any]) -> str:
    """Concatenate reasoning summary text of a response."""
    parts: list[str] = []
    for item in data.get("output") or []:
        if item.get("type") != "reasoning":
            continue
        for block in (item.get("summary") or []) + (item.get("content") or []):
            if block.get("text"):
                parts.append(block["text"])
    return "\n".join(parts)


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or default
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return response.text or default


class OpenAIResponsesClient:
    """Thin async wrapper over /v1/responses."""

    def __init__(self, base_url: str | None = None, http_client: httpx.AsyncClient | None = None):
        settings = get_settings()
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.generation_timeout = settings.generation_timeout_seconds
        self.aux_timeout = settings.aux_timeout_seconds
        self._client = http_client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _headers(api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    async def create_response(self, api_key: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST /responses.

        Raises:
            ProviderError: TIMEOUT, RATE_LIMITED or API_CALL_FAILED
        """
        try:
            response = await self._http().post(
                f"{self.base_url}/responses",
                json=body,
                headers=self._headers(api_key),
                timeout=self.generation_timeout,
            )
        except httpx.TimeoutException as e:
            minutes = self.generation_timeout / 60
            raise ProviderError(
                f"Request timed out after {minutes:g} minutes. The prompt may be too complex "
                "or the provider is experiencing delays.",
                code=ErrorCode.TIMEOUT,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Responses API request failed: {e}") from e

        if response.status_code >= 400:
            message = _error_message(response, "Responses API call failed")
            logger.error(f"Responses API error {response.status_code}: {message}")
            if response.status_code == 429:
                raise ProviderError(
                    message,
                    status_code=429,
                    code=ErrorCode.RATE_LIMITED,
                    retry_after=parse_retry_after(message),
                )
            raise ProviderError(message, status_code=response.status_code)

        return response.json()

    async def retrieve_response(self, api_key: str, response_id: str) -> dict[str, Any]:
        """GET /responses/{id}.

        Raises:
            ProviderError: OPENAI_API_ERROR on any failure
        """
        try:
            response = await self._http().get(
                f"{self.base_url}/responses/{response_id}",
                headers=self._headers(api_key),
                timeout=self.aux_timeout,
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"Failed to fetch response: {e}", code=ErrorCode.OPENAI_API_ERROR) from e

        if response.status_code >= 400:
            message = _error_message(response, "Failed to fetch response")
            raise ProviderError(
                message, status_code=response.status_code, code=ErrorCode.OPENAI_API_ERROR
            )
        return response.json()

    async def cancel_response(self, api_key: str, response_id: str) -> httpx.Response:
        """POST /responses/{id}/cancel, returning the raw response for classification."""
        try:
            return await self._http().post(
                f"{self.base_url}/responses/{response_id}/cancel",
                headers=self._headers(api_key),
                timeout=self.aux_timeout,
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"Cancel request failed: {e}", code=ErrorCode.CANCEL_FAILED) from e

    async def delete_response(self, api_key: str, response_id: str) -> None:
        """DELETE /responses/{id}. A response that no longer exists counts as deleted.

        Raises:
            ProviderError: On any other failure
        """
        try:
            response = await self._http().delete(
                f"{self.base_url}/responses/{response_id}",
                headers=self._headers(api_key),
                timeout=self.aux_timeout,
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"Delete request failed: {e}") from e

        if response.status_code == 404 or response.is_success:
            return
        raise ProviderError(
            _error_message(response, "Failed to delete response"), status_code=response.status_code
        )


# Global client instance (lazy initialization)
_client: OpenAIResponsesClient | None = None


def get_openai_client() -> OpenAIResponsesClient:
    """Get or create the global Responses API client."""
    global _client
    if _client is None:
        _client = OpenAIResponsesClient()
    return _client


async def close_openai_client() -> None:
    """Close the global client, if one was created."""
    global _client
    if _client is not None:
        await _client.close()
        _client = None
