"""Provider call adapter.

Turns a provider-neutral ProviderRequest into an OpenAI Responses API or
Anthropic Messages API call and normalizes the reply into a ProviderResult.
Provider failures come back as unsuccessful results carrying an error code,
never as exceptions.
"""

import logging
from typing import Any

from app.config import get_settings
from app.errors import ErrorCode, ProviderError
from app.llm import (
    OpenAIResponsesClient,
    ensure_strict_compliance,
    extract_output_text,
    extract_reasoning_text,
    get_client,
    get_openai_client,
)
from app.llm.client import DEFAULT_MAX_TOKENS
from app.models import ModelConfig, Provider, ProviderRequest, ProviderResult, Usage

logger = logging.getLogger(__name__)

# Options passed straight through to the Responses API
_PASSTHROUGH_OPTIONS = (
    "temperature",
    "top_p",
    "max_output_tokens",
    "frequency_penalty",
    "presence_penalty",
    "seed",
)

STRUCTURED_OUTPUT_NAME = "action_response"


def build_openai_request(model: ModelConfig, request: ProviderRequest) -> dict[str, Any]:
    """Build a Responses API request body."""
    body: dict[str, Any] = {
        "model": model.api_model_id,
        "input": request.input,
        "store": True,
    }
    if request.instructions:
        body["instructions"] = request.instructions
    if request.previous_response_id:
        body["previous_response_id"] = request.previous_response_id

    for key in _PASSTHROUGH_OPTIONS:
        if request.options.get(key) is not None:
            body[key] = request.options[key]
    if request.options.get("reasoning_effort"):
        body["reasoning"] = {"effort": request.options["reasoning_effort"]}

    if request.json_schema:
        body["text"] = {
            "format": {
                "type": "json_schema",
                "name": STRUCTURED_OUTPUT_NAME,
                "schema": ensure_strict_compliance(request.json_schema),
                "strict": True,
            }
        }
    if request.background:
        body["background"] = True
    return body


def build_anthropic_messages(request: ProviderRequest) -> list[dict[str, str]]:
    """Replay stored history, then append the new user turn.

    Consecutive turns with the same role are merged, since the Messages API
    requires alternating roles.
    """
    messages: list[dict[str, str]] = []
    for turn in [*request.history, None]:
        role, content = ("user", request.input) if turn is None else (turn.role, turn.content)
        if role == "system":
            continue
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += f"\n\n{content}"
        else:
            messages.append({"role": role, "content": content})
    return messages


def summarize_request(model: ModelConfig, request: ProviderRequest) -> dict[str, Any]:
    """Parameters worth echoing back to the client and storing with the result."""
    summary: dict[str, Any] = {
        "model": model.api_model_id,
        "provider": model.provider.value,
        "has_previous_response": bool(request.previous_response_id),
        "history_messages": len(request.history),
        "structured_output": bool(request.json_schema),
        "background": request.background,
    }
    summary.update({key: value for key, value in request.options.items() if value is not None})
    return summary


def _failure(error: ProviderError, request_params: dict[str, Any]) -> ProviderResult:
    return ProviderResult(
        success=False,
        status="failed",
        error=error.message,
        error_code=error.code.value,
        retry_after_s=error.retry_after,
        request_params=request_params,
    )


class ProviderAdapter:
    """Dispatches a request to the model's provider."""

    def __init__(self, openai_client: OpenAIResponsesClient | None = None):
        self._openai_client = openai_client

    @property
    def openai_client(self) -> OpenAIResponsesClient:
        return self._openai_client or get_openai_client()

    async def call(self, model: ModelConfig, api_key: str, request: ProviderRequest) -> ProviderResult:
        """Call the model and normalize the reply."""
        params = summarize_request(model, request)
        try:
            if model.provider == Provider.ANTHROPIC:
                return await self._call_anthropic(model, api_key, request, params)
            return await self._call_openai(model, api_key, request, params)
        except ProviderError as e:
            logger.warning(f"{model.provider.value} call failed ({e.code.value}): {e.message}")
            return _failure(e, params)

    async def _call_openai(
        self,
        model: ModelConfig,
        api_key: str,
        request: ProviderRequest,
        params: dict[str, Any],
    ) -> ProviderResult:
        data = await self.openai_client.create_response(api_key, build_openai_request(model, request))

        usage = data.get("usage") or {}
        status = data.get("status") or "completed"
        if status in ("failed", "cancelled"):
            error = data.get("error") or {}
            return ProviderResult(
                success=False,
                status=status,
                response_id=data.get("id"),
                error=error.get("message") or f"Response {status}",
                error_code=ErrorCode.API_CALL_FAILED.value,
                request_params=params,
            )

        return ProviderResult(
            success=True,
            response_text=extract_output_text(data),
            reasoning_text=extract_reasoning_text(data) or None,
            usage=Usage(
                prompt_tokens=usage.get("input_tokens", 0),
                completion_tokens=usage.get("output_tokens", 0),
                total_tokens=usage.get("total_tokens")
                or usage.get("input_tokens", 0) + usage.get("output_tokens", 0),
            ),
            response_id=data.get("id"),
            status=status,
            request_params=params,
        )

    async def _call_anthropic(
        self,
        model: ModelConfig,
        api_key: str,
        request: ProviderRequest,
        params: dict[str, Any],
    ) -> ProviderResult:
        client = get_client(api_key, timeout=get_settings().generation_timeout_seconds)
        max_tokens = request.options.get("max_output_tokens") or DEFAULT_MAX_TOKENS
        message = await client.create_message(
            model=model.api_model_id,
            messages=build_anthropic_messages(request),
            system=request.instructions,
            max_tokens=max_tokens,
            temperature=request.options.get("temperature"),
            top_p=request.options.get("top_p"),
        )

        text = "".join(block.text for block in message.content if getattr(block, "type", None) == "text")
        input_tokens = message.usage.input_tokens
        output_tokens = message.usage.output_tokens
        return ProviderResult(
            success=True,
            response_text=text,
            usage=Usage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
            response_id=message.id,
            status="completed",
            request_params=params,
        )


# Global adapter instance
provider_adapter = ProviderAdapter()
