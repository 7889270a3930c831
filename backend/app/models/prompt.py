"""Pydantic models for the prompt tree and its configuration."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class NodeType(str, Enum):
    """Kind of prompt node."""

    STANDARD = "standard"
    ACTION = "action"  # Produces structured JSON output


class Provider(str, Enum):
    """LLM providers the run orchestrator can call."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class PromptCreate(BaseModel):
    """Request to create a prompt node."""

    prompt_name: str = Field(..., min_length=1, max_length=500)
    parent_row_id: str | None = None
    node_type: NodeType = NodeType.STANDARD
    input_admin_prompt: str | None = None
    input_user_prompt: str | None = None
    system_variables: dict[str, str] = Field(default_factory=dict)
    model: str | None = None
    temperature: float | None = None
    temperature_on: bool = False
    top_p: float | None = None
    top_p_on: bool = False
    max_tokens: int | None = None
    max_tokens_on: bool = False
    frequency_penalty: float | None = None
    frequency_penalty_on: bool = False
    presence_penalty: float | None = None
    presence_penalty_on: bool = False
    seed: int | None = None
    seed_on: bool = False
    reasoning_effort: str | None = None
    reasoning_effort_on: bool = False
    json_schema: dict[str, Any] | None = None


class PromptNode(BaseModel):
    """A node in a prompt tree."""

    row_id: str
    parent_row_id: str | None = None
    root_prompt_row_id: str | None = None
    owner_id: str
    prompt_name: str
    node_type: NodeType = NodeType.STANDARD
    input_admin_prompt: str | None = None
    input_user_prompt: str | None = None
    admin_prompt_result: str | None = None
    user_prompt_result: str | None = None
    output_response: str | None = None
    system_variables: dict[str, Any] = Field(default_factory=dict)
    model: str | None = None
    temperature: float | None = None
    temperature_on: bool = False
    top_p: float | None = None
    top_p_on: bool = False
    max_tokens: int | None = None
    max_tokens_on: bool = False
    frequency_penalty: float | None = None
    frequency_penalty_on: bool = False
    presence_penalty: float | None = None
    presence_penalty_on: bool = False
    seed: int | None = None
    seed_on: bool = False
    reasoning_effort: str | None = None
    reasoning_effort_on: bool = False
    json_schema: dict[str, Any] | None = None
    last_ai_call_metadata: dict[str, Any] | None = None
    family_version: int = 1
    is_deleted: bool = False
    created_at: str
    updated_at: str

    @property
    def effective_root_id(self) -> str:
        """Stored root pointer, or the node itself when it is a root."""
        return self.root_prompt_row_id or self.row_id


class Assistant(BaseModel):
    """Assistant configuration attached to a prompt node."""

    row_id: str
    prompt_row_id: str
    owner_id: str
    name: str
    instructions: str | None = None
    model_override: str | None = None
    temperature_override: float | None = None
    top_p_override: float | None = None
    max_tokens_override: int | None = None
    created_at: str
    updated_at: str


class PromptVariable(BaseModel):
    """User-defined template variable on a prompt."""

    row_id: str
    prompt_row_id: str
    variable_name: str
    variable_value: str | None = None
    default_value: str | None = None


class ModelConfig(BaseModel):
    """Resolved model capabilities."""

    model_config = {"protected_namespaces": ()}

    model_id: str
    model_name: str | None = None
    provider: Provider = Provider.OPENAI
    api_model_id: str
    context_window: int = 128000
    max_output_tokens: int = 4096
    token_param: str = "max_tokens"
    supports_temperature: bool = True
    supports_reasoning_effort: bool = False
    reasoning_effort_levels: list[str] = Field(default_factory=list)
    background_mode: bool = False


class CredentialWrite(BaseModel):
    """Request body for storing a credential."""

    value: str = Field(..., min_length=1)
