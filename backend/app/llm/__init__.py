"""LLM provider clients."""

from app.llm.client import LLMClient, get_client
from app.llm.openai_responses import (
    TERMINAL_RESPONSE_STATUSES,
    OpenAIResponsesClient,
    close_openai_client,
    extract_output_text,
    extract_reasoning_text,
    get_openai_client,
    parse_retry_after,
)
from app.llm.schema import (
    DEFAULT_ACTION_SYSTEM_PROMPT,
    ensure_strict_compliance,
    format_schema_for_prompt,
)

__all__ = [
    # Anthropic client
    "get_client",
    "LLMClient",
    # OpenAI Responses client
    "OpenAIResponsesClient",
    "get_openai_client",
    "close_openai_client",
    "extract_output_text",
    "extract_reasoning_text",
    "parse_retry_after",
    "TERMINAL_RESPONSE_STATUSES",
    # Structured output
    "DEFAULT_ACTION_SYSTEM_PROMPT",
    "ensure_strict_compliance",
    "format_schema_for_prompt",
]
