"""Pydantic models for running prompts against a provider."""

from typing import Any

from pydantic import BaseModel, Field


class CurrentUser(BaseModel):
    """Caller identity forwarded by the upstream auth layer."""

    id: str
    email: str | None = None
    name: str | None = None


class RunRequest(BaseModel):
    """Request to run a prompt."""

    child_prompt_row_id: str
    user_message: str | None = None
    template_variables: dict[str, Any] = Field(default_factory=dict)
    thread_row_id: str | None = None
    trace_id: str | None = None
    model_override: str | None = None
    background: bool | None = None


class Usage(BaseModel):
    """Normalized token usage."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatMessage(BaseModel):
    role: str
    content: str


class ProviderRequest(BaseModel):
    """Provider-neutral description of one model call."""

    input: str
    instructions: str | None = None
    previous_response_id: str | None = None
    history: list[ChatMessage] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)
    json_schema: dict[str, Any] | None = None
    background: bool = False


class ProviderResult(BaseModel):
    """Normalized reply from a provider call."""

    success: bool
    response_text: str | None = None
    usage: Usage = Field(default_factory=Usage)
    response_id: str | None = None
    status: str = "completed"
    reasoning_text: str | None = None
    error: str | None = None
    error_code: str | None = None
    retry_after_s: float | None = None
    request_params: dict[str, Any] = Field(default_factory=dict)
